"""Initial schema: the shared ``records`` document table.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── records ───────────────────────────────────────────────────────
    op.create_table(
        "records",
        sa.Column("collection", sa.String(64), primary_key=True),
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "data",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_records_collection", "records", ["collection"])
    op.create_index("idx_records_updated", "records", ["collection", "updated_at"])
    # Containment lookups (status / driver_id / customer_id) on PostgreSQL
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_records_data ON records USING gin (data)"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_records_data")
    op.drop_index("idx_records_updated", table_name="records")
    op.drop_index("idx_records_collection", table_name="records")
    op.drop_table("records")
