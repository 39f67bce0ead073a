"""Factory de sessão do SQLAlchemy 2."""
from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

def utcnow() -> datetime:
    """Agora em UTC, sem tzinfo (compatível com TIMESTAMP sem timezone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def create_session_factory(database_url: str):
    """Cria SessionFactory síncrona para SQLAlchemy 2.

    :param database_url: URL completa do banco (psycopg3 em produção, sqlite em testes).
    :return: sessionmaker configurado.
    """
    is_sqlite = database_url.startswith("sqlite")
    kwargs = {"pool_pre_ping": True, "future": True}
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(database_url, **kwargs)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
