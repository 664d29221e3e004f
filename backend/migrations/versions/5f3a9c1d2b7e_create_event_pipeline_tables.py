from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "5f3a9c1d2b7e"
down_revision = None
branch_labels = None
depends_on = None

JSON_PAYLOAD = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    ]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("api_key_hash", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_tenants_api_key_hash", "tenants", ["api_key_hash"], unique=True)

    op.create_table(
        "provider_connections",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider_org_id", sa.String(length=128), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_provider_connections_tenant_id", "provider_connections", ["tenant_id"])

    op.create_table(
        "raw_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=36), sa.ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("provider_event_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("payload", JSON_PAYLOAD, nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(length=64), nullable=True),
        sa.Column("claimed_until", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_raw_events_tenant_id", "raw_events", ["tenant_id"])
    op.create_index("ix_raw_events_pending", "raw_events", ["processed_at", "received_at"])
    op.create_index("ix_raw_events_tenant_type", "raw_events", ["tenant_id", "event_type"])

    op.create_table(
        "calls",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("provider_call_id", sa.String(length=128), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=True),
        sa.Column("from_number", sa.String(length=64), nullable=True),
        sa.Column("to_number", sa.String(length=64), nullable=True),
        sa.Column("assigned_user_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("recording_url", sa.Text(), nullable=True),
        sa.Column("sanitized_payload", JSON_PAYLOAD, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "provider_call_id", name="uq_calls_tenant_provider_call"),
    )
    op.create_index("ix_calls_tenant_status", "calls", ["tenant_id", "status"])
    op.create_index("ix_calls_tenant_user", "calls", ["tenant_id", "assigned_user_id"])

    op.create_table(
        "voicemails",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("provider_call_id", sa.String(length=128), nullable=True),
        sa.Column("assigned_user_id", sa.String(length=128), nullable=False),
        sa.Column("from_number", sa.String(length=64), nullable=True),
        sa.Column("to_number", sa.String(length=64), nullable=True),
        sa.Column("recording_url", sa.Text(), nullable=False),
        sa.Column("transcript", sa.Text(), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "provider_call_id", name="uq_voicemails_tenant_provider_call"),
    )
    op.create_index(
        "ix_voicemails_dedupe",
        "voicemails",
        ["tenant_id", "assigned_user_id", "from_number", "created_at"],
    )

    op.create_table(
        "user_mappings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("provider_user_id", sa.String(length=128), nullable=False),
        sa.Column("end_user_id", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("tenant_id", "provider_user_id", name="uq_user_mappings_tenant_provider_user"),
    )
    op.create_index("ix_user_mappings_tenant_id", "user_mappings", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("ix_user_mappings_tenant_id", table_name="user_mappings")
    op.drop_table("user_mappings")
    op.drop_index("ix_voicemails_dedupe", table_name="voicemails")
    op.drop_table("voicemails")
    op.drop_index("ix_calls_tenant_user", table_name="calls")
    op.drop_index("ix_calls_tenant_status", table_name="calls")
    op.drop_table("calls")
    op.drop_index("ix_raw_events_tenant_type", table_name="raw_events")
    op.drop_index("ix_raw_events_pending", table_name="raw_events")
    op.drop_index("ix_raw_events_tenant_id", table_name="raw_events")
    op.drop_table("raw_events")
    op.drop_index("ix_provider_connections_tenant_id", table_name="provider_connections")
    op.drop_table("provider_connections")
    op.drop_index("ix_tenants_api_key_hash", table_name="tenants")
    op.drop_table("tenants")
