"""Create import job, lease, template and label tables.

Revision ID: 20261017_000001
Revises: 
Create Date: 2026-10-17 00:00:01.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261017_000001"
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("import_jobs"):
        op.create_table(
            "import_jobs",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("status", sa.String(), nullable=False, server_default="pending"),
            sa.Column("platform", sa.String(), nullable=False),
            sa.Column("filename", sa.Text(), nullable=False),
            sa.Column("stage_id", sa.String(), nullable=True),
            sa.Column("mapping", _json(), nullable=True),
            sa.Column("source_label", sa.String(), nullable=True),
            sa.Column("delay_ms", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("total_rows", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("filtered_rows", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("processed_rows", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("success_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("existing_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("error_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("skipped_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("last_processed_index", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("error_details", _json(), nullable=True),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("lease_owner", sa.String(), nullable=True),
            *_timestamps(),
            sa.CheckConstraint(
                "status IN ('pending','processing','completed','error','cancelled')",
                name="ck_import_jobs_status",
            ),
        )
        op.create_index("ix_import_jobs_status", "import_jobs", ["status"])
        op.create_index("ix_import_jobs_created_at", "import_jobs", ["created_at"])

    if not inspector.has_table("import_locks"):
        import_locks = op.create_table(
            "import_locks",
            sa.Column("key", sa.String(), primary_key=True),
            sa.Column("owner", sa.String(), nullable=True),
            sa.Column("job_id", sa.String(), nullable=True),
            sa.Column("platform", sa.String(), nullable=True),
            sa.Column("filename", sa.Text(), nullable=True),
            sa.Column("status", sa.String(), nullable=False, server_default="completed"),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("acquired_at", sa.DateTime(), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        )
        # the lease is a single row that acquire updates in place
        op.bulk_insert(import_locks, [{"key": "import-csv", "status": "completed"}])

    if not inspector.has_table("integration_templates"):
        op.create_table(
            "integration_templates",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("mapping", _json(), nullable=False),
            sa.Column("stage_id", sa.String(), nullable=False),
            *_timestamps(),
        )

    if not inspector.has_table("label_templates"):
        op.create_table(
            "label_templates",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("mapping", _json(), nullable=False),
            sa.Column("logo_url", sa.Text(), nullable=True),
            *_timestamps(),
        )

    if not inspector.has_table("label_orders"):
        text_cols = [
            "email", "name", "phone", "tax_id", "product_name", "purchase_date", "zip",
            "address", "number", "complement", "neighborhood", "city", "state",
        ]
        op.create_table(
            "label_orders",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("batch_id", sa.String(), nullable=False),
            sa.Column("transaction_id", sa.String(), nullable=False),
            *[sa.Column(col, sa.Text(), nullable=False, server_default="") for col in text_cols],
            sa.Column("service_code", sa.String(), nullable=False),
            sa.Column("envios_total", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("envios_realizados", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("status", sa.String(), nullable=False, server_default="pending"),
            sa.Column("etiquetas", _json(), nullable=False),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("is_merged", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("merged_transactions", _json(), nullable=True),
            sa.Column("merged_product_names", _json(), nullable=True),
            sa.Column("merged_into", sa.String(), nullable=True),
            *_timestamps(),
            sa.CheckConstraint("envios_realizados <= envios_total", name="ck_label_orders_envios"),
            sa.CheckConstraint(
                "status IN ('pending','partial','generated','error')",
                name="ck_label_orders_status",
            ),
        )
        op.create_index("ix_label_orders_batch_id", "label_orders", ["batch_id"])
        op.create_index("ix_label_orders_transaction_id", "label_orders", ["transaction_id"])
        op.create_index("ix_label_orders_merged_into", "label_orders", ["merged_into"])

    if not inspector.has_table("label_records"):
        op.create_table(
            "label_records",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("transaction_id", sa.String(), nullable=False),
            sa.Column("etiqueta", sa.String(), nullable=False),
            sa.Column("envio_numero", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("envios_total", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("service_code", sa.String(), nullable=True),
            sa.Column("destinatario", _json(), nullable=True),
            sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        )
        op.create_index("ix_label_records_transaction", "label_records", ["transaction_id"])


def downgrade() -> None:
    op.drop_table("label_records")
    op.drop_table("label_orders")
    op.drop_table("label_templates")
    op.drop_table("integration_templates")
    op.drop_table("import_locks")
    op.drop_table("import_jobs")
