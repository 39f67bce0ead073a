"""Migração inicial: tenants, credenciais, estados OAuth, instâncias, vínculos, conversas, mensagens e auditoria."""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(120), nullable=True),
        sa.Column("webhook_secret", sa.String(255), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=False)),
    )
    op.create_table(
        "credentials",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("portal", sa.String(255), nullable=False),
        sa.Column("access_token", sa.Text, nullable=False),
        sa.Column("refresh_token", sa.Text, nullable=True),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=False), nullable=True),
        sa.Column("scope", sa.JSON(), nullable=False),
        sa.Column("member_id", sa.String(64), nullable=True),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=False)),
    )
    op.create_index(
        "uq_credentials_active_portal", "credentials", ["tenant_id", "portal"], unique=True,
        postgresql_where=sa.text("active"), sqlite_where=sa.text("active = 1"),
    )
    op.create_table(
        "oauth_states",
        sa.Column("state", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("portal", sa.String(255), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=False)),
        sa.Column("consumed_at", sa.TIMESTAMP(timezone=False), nullable=True),
    )
    op.create_table(
        "instances",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("label", sa.String(120), nullable=False, unique=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING_QR"),
        sa.Column("qr_payload", sa.Text, nullable=True),
        sa.Column("webhook_secret", sa.String(255), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("last_sync_at", sa.TIMESTAMP(timezone=False), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=False)),
    )
    op.create_table(
        "bindings",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("line_id", sa.String(64), nullable=False),
        sa.Column("instance_id", sa.Integer, sa.ForeignKey("instances.id", ondelete="CASCADE"),
                  nullable=False, unique=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=False)),
        sa.UniqueConstraint("tenant_id", "line_id", name="uq_bindings_line"),
    )
    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("phone", sa.String(32), nullable=False),
        sa.Column("push_name", sa.String(120), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=False)),
        sa.UniqueConstraint("tenant_id", "phone", name="uq_contacts_phone"),
    )
    op.create_table(
        "conversations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("instance_id", sa.Integer, sa.ForeignKey("instances.id", ondelete="CASCADE"), nullable=False),
        sa.Column("contact_id", sa.Integer, sa.ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("crm_chat_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="open"),
        sa.Column("assigned_agent_id", sa.String(64), nullable=True),
        sa.Column("last_activity_at", sa.TIMESTAMP(timezone=False)),
        sa.Column("created_at", sa.TIMESTAMP(timezone=False)),
        sa.Column("closed_at", sa.TIMESTAMP(timezone=False), nullable=True),
    )
    op.create_index("ix_conversations_crm_chat_id", "conversations", ["crm_chat_id"])
    op.create_index(
        "uq_conversations_open", "conversations", ["tenant_id", "instance_id", "contact_id"], unique=True,
        postgresql_where=sa.text("status = 'open'"), sqlite_where=sa.text("status = 'open'"),
    )
    op.create_table(
        "messages",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("conversation_id", sa.Integer, sa.ForeignKey("conversations.id", ondelete="CASCADE"),
                  nullable=False),
        sa.Column("direction", sa.String(8), nullable=False),
        sa.Column("content", sa.Text, nullable=False, server_default=""),
        sa.Column("media_url", sa.Text, nullable=True),
        sa.Column("wa_message_id", sa.String(128), nullable=True, unique=True),
        sa.Column("crm_message_id", sa.String(128), nullable=True, unique=True),
        sa.Column("delivery_status", sa.String(16), nullable=False, server_default="received"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=False)),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=False)),
    )
    op.create_table(
        "webhook_log",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("provider", sa.String(16), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("instance_label", sa.String(120), nullable=True),
        sa.Column("event", sa.String(64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("valid_signature", sa.Boolean, nullable=True),
        sa.Column("verdict", sa.String(32), nullable=False),
        sa.Column("trace_id", sa.String(64), nullable=False, server_default="-"),
        sa.Column("received_at", sa.TIMESTAMP(timezone=False)),
    )
    op.create_table(
        "relay_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("conversation_id", sa.Integer, nullable=True),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("ts", sa.BigInteger, nullable=False),
    )

def downgrade() -> None:
    op.drop_table("relay_events")
    op.drop_table("webhook_log")
    op.drop_table("messages")
    op.drop_index("uq_conversations_open", table_name="conversations")
    op.drop_index("ix_conversations_crm_chat_id", table_name="conversations")
    op.drop_table("conversations")
    op.drop_table("contacts")
    op.drop_table("bindings")
    op.drop_table("instances")
    op.drop_table("oauth_states")
    op.drop_index("uq_credentials_active_portal", table_name="credentials")
    op.drop_table("credentials")
    op.drop_table("tenants")
