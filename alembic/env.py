from logging.config import fileConfig
from sqlalchemy import engine_from_config, pool
from alembic import context
import os

from evowhats_relay.repo.models import Base

# Interpret the config file for Python logging.
config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Metadata dos modelos, usada pelo autogenerate.
target_metadata = Base.metadata

def run_migrations_offline():
    url = os.environ.get("EVW_DATABASE_URL")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()

def run_migrations_online():
    connectable = engine_from_config(
        {}, prefix="sqlalchemy.", poolclass=pool.NullPool, url=os.environ.get("EVW_DATABASE_URL")
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()

if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
