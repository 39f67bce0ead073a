"""Modelos SQLAlchemy: tenants, credenciais, instâncias, vínculos, contatos, conversas, mensagens e auditoria."""
from __future__ import annotations
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    String, Integer, Text, JSON, Boolean, BigInteger, TIMESTAMP, ForeignKey, UniqueConstraint, Index, text,
)
from datetime import datetime
from ..core.db import utcnow

class Base(DeclarativeBase):
    """Base declarativa."""
    pass

# Estados de conexão de uma instância
PENDING_QR = "PENDING_QR"
CONNECTED = "CONNECTED"
DISCONNECTED = "DISCONNECTED"
ERROR = "ERROR"

# Status de entrega de mensagens
RECEIVED = "received"
PENDING = "pending"
SENT = "sent"
DELIVERED = "delivered"
FAILED = "failed"
NOT_FORWARDED = "not_forwarded"

class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(120))
    webhook_secret: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)

class Credential(Base):
    __tablename__ = "credentials"
    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"))
    portal: Mapped[str] = mapped_column(String(255))  # https://<conta>.bitrix24.com.br
    access_token: Mapped[str] = mapped_column(Text)
    refresh_token: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=False))
    scope: Mapped[list] = mapped_column(JSON, default=list)
    member_id: Mapped[str | None] = mapped_column(String(64))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow, onupdate=utcnow)
    __table_args__ = (
        Index(
            "uq_credentials_active_portal", "tenant_id", "portal", unique=True,
            sqlite_where=text("active = 1"), postgresql_where=text("active"),
        ),
    )

class OAuthState(Base):
    """`state` emitido no início do fluxo OAuth; aceito uma única vez no callback."""
    __tablename__ = "oauth_states"
    state: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"))
    portal: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    consumed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=False))

class Instance(Base):
    __tablename__ = "instances"
    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"))
    label: Mapped[str] = mapped_column(String(120), unique=True)  # evo_line_<line_id>
    status: Mapped[str] = mapped_column(String(16), default=PENDING_QR)
    qr_payload: Mapped[str | None] = mapped_column(Text)
    webhook_secret: Mapped[str | None] = mapped_column(String(255))
    last_error: Mapped[str | None] = mapped_column(Text)
    last_sync_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=False))
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)

class Binding(Base):
    __tablename__ = "bindings"
    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"))
    line_id: Mapped[str] = mapped_column(String(64))
    instance_id: Mapped[int] = mapped_column(ForeignKey("instances.id", ondelete="CASCADE"), unique=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    __table_args__ = (
        UniqueConstraint("tenant_id", "line_id", name="uq_bindings_line"),
    )

class Contact(Base):
    __tablename__ = "contacts"
    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"))
    phone: Mapped[str] = mapped_column(String(32))  # E.164
    push_name: Mapped[str | None] = mapped_column(String(120))
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    __table_args__ = (
        UniqueConstraint("tenant_id", "phone", name="uq_contacts_phone"),
    )

class Conversation(Base):
    __tablename__ = "conversations"
    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"))
    instance_id: Mapped[int] = mapped_column(ForeignKey("instances.id", ondelete="CASCADE"))
    contact_id: Mapped[int] = mapped_column(ForeignKey("contacts.id", ondelete="CASCADE"))
    crm_chat_id: Mapped[str | None] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(16), default="open")  # open|closed
    assigned_agent_id: Mapped[str | None] = mapped_column(String(64))
    last_activity_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    closed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=False))
    __table_args__ = (
        Index(
            "uq_conversations_open", "tenant_id", "instance_id", "contact_id", unique=True,
            sqlite_where=text("status = 'open'"), postgresql_where=text("status = 'open'"),
        ),
    )

class Message(Base):
    __tablename__ = "messages"
    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"))
    conversation_id: Mapped[int] = mapped_column(ForeignKey("conversations.id", ondelete="CASCADE"))
    direction: Mapped[str] = mapped_column(String(8))  # in|out
    content: Mapped[str] = mapped_column(Text, default="")
    media_url: Mapped[str | None] = mapped_column(Text)
    wa_message_id: Mapped[str | None] = mapped_column(String(128), unique=True)
    crm_message_id: Mapped[str | None] = mapped_column(String(128), unique=True)
    delivery_status: Mapped[str] = mapped_column(String(16), default=RECEIVED)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow, onupdate=utcnow)

class WebhookLog(Base):
    """Registro append-only de todo payload recebido, com o veredito da assinatura."""
    __tablename__ = "webhook_log"
    id: Mapped[int] = mapped_column(primary_key=True)
    provider: Mapped[str] = mapped_column(String(16))  # evolution|bitrix
    tenant_id: Mapped[str | None] = mapped_column(String(64))
    instance_label: Mapped[str | None] = mapped_column(String(120))
    event: Mapped[str | None] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSON)
    valid_signature: Mapped[bool | None] = mapped_column(Boolean)
    verdict: Mapped[str] = mapped_column(String(32))
    trace_id: Mapped[str] = mapped_column(String(64), default="-")
    received_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=False), default=utcnow)

class RelayEvent(Base):
    __tablename__ = "relay_events"
    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64))
    conversation_id: Mapped[int | None] = mapped_column(Integer)
    kind: Mapped[str] = mapped_column(String(32))
    data: Mapped[dict] = mapped_column(JSON)
    ts: Mapped[int] = mapped_column(BigInteger)  # epoch ms
