from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261017_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_user_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("logo_url", sa.Text(), nullable=True),
        sa.Column("subscription_plan", sa.String(length=20), server_default="starter", nullable=False),
        sa.Column("billing_customer_ref", sa.String(length=255), nullable=True),
        sa.Column("billing_subscription_ref", sa.String(length=255), nullable=True),
        sa.Column("documents_used_this_month", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("usage_reset_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("inbound_channel_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_companies_owner_user_id", "companies", ["owner_user_id"], unique=True)
    op.create_index("ix_companies_phone", "companies", ["phone"])
    op.create_index("ix_companies_billing_customer_ref", "companies", ["billing_customer_ref"])
    op.create_index("ix_companies_inbound_channel_id", "companies", ["inbound_channel_id"])

    op.create_table(
        "documents",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("company_id", sa.String(length=36), sa.ForeignKey("companies.id"), nullable=False),
        sa.Column("document_number", sa.String(length=64), nullable=False),
        sa.Column("document_type", sa.String(length=20), nullable=False),
        sa.Column("customer_name", sa.String(length=255), nullable=False),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("customer_phone", sa.String(length=50), nullable=True),
        sa.Column("line_items", sa.JSON(), nullable=False),
        sa.Column("subtotal", sa.BigInteger(), nullable=False),
        sa.Column("tax_rate", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("tax_amount", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("total", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=10), server_default="draft", nullable=False),
        sa.Column("source", sa.String(length=10), server_default="web", nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "company_id", "document_type", "document_number", name="uq_documents_company_type_number"
        ),
    )
    op.create_index("ix_documents_company_id", "documents", ["company_id"])
    op.create_index("ix_documents_created_at", "documents", ["created_at"])

    op.create_table(
        "inbound_messages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("company_id", sa.String(length=36), sa.ForeignKey("companies.id"), nullable=True),
        sa.Column("from_identifier", sa.String(length=255), nullable=False),
        sa.Column("channel_id", sa.String(length=255), nullable=True),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("raw_body", sa.Text(), nullable=False),
        sa.Column("parsed_successfully", sa.Boolean(), server_default=sa.text("0"), nullable=False),
        sa.Column("outcome", sa.String(length=40), server_default="received", nullable=False),
        sa.Column("derived_document_id", sa.String(length=36), sa.ForeignKey("documents.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("external_id", name="uq_inbound_messages_external_id"),
    )
    op.create_index("ix_inbound_messages_company_id", "inbound_messages", ["company_id"])


def downgrade() -> None:
    op.drop_index("ix_inbound_messages_company_id", table_name="inbound_messages")
    op.drop_table("inbound_messages")
    op.drop_index("ix_documents_created_at", table_name="documents")
    op.drop_index("ix_documents_company_id", table_name="documents")
    op.drop_table("documents")
    op.drop_index("ix_companies_inbound_channel_id", table_name="companies")
    op.drop_index("ix_companies_billing_customer_ref", table_name="companies")
    op.drop_index("ix_companies_phone", table_name="companies")
    op.drop_index("ix_companies_owner_user_id", table_name="companies")
    op.drop_table("companies")
