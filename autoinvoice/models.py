from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .money import LineItem, line_items_from_dicts


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Microsecond precision; usage reconciliation compares these stamps.
    return datetime.now(timezone.utc)


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_user_id: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)  # normalized
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    logo_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    subscription_plan: Mapped[str] = mapped_column(String(20), default="starter", nullable=False)
    billing_customer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    billing_subscription_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    documents_used_this_month: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_reset_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    inbound_channel_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    documents: Mapped[list["Document"]] = relationship("Document", back_populates="company")
    inbound_messages: Mapped[list["InboundMessage"]] = relationship("InboundMessage", back_populates="company")


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("company_id", "document_type", "document_number", name="uq_documents_company_type_number"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    document_number: Mapped[str] = mapped_column(String(64), nullable=False)
    document_type: Mapped[str] = mapped_column(String(20), nullable=False)  # invoice/quotation/receipt
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    line_items_data: Mapped[list[dict]] = mapped_column("line_items", JSON, nullable=False)
    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False)  # cents
    tax_rate: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # percent * 100
    tax_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)  # cents
    total: Mapped[int] = mapped_column(BigInteger, nullable=False)  # cents
    status: Mapped[str] = mapped_column(String(10), default="draft", nullable=False)  # draft/sent/paid
    source: Mapped[str] = mapped_column(String(10), default="web", nullable=False)  # web/message
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    company: Mapped["Company"] = relationship("Company", back_populates="documents")

    @property
    def line_items(self) -> list[LineItem]:
        return line_items_from_dicts(self.line_items_data or [])


class InboundMessage(Base):
    """Audit trail: one row per inbound channel event, whatever the outcome."""
    __tablename__ = "inbound_messages"
    __table_args__ = (UniqueConstraint("external_id", name="uq_inbound_messages_external_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str | None] = mapped_column(ForeignKey("companies.id"), nullable=True, index=True)
    from_identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    channel_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    raw_body: Mapped[str] = mapped_column(Text, nullable=False)
    parsed_successfully: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    outcome: Mapped[str] = mapped_column(String(40), default="received", nullable=False)
    derived_document_id: Mapped[str | None] = mapped_column(ForeignKey("documents.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    company: Mapped["Company | None"] = relationship("Company", back_populates="inbound_messages")
