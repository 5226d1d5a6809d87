from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, BeforeValidator, EmailStr, Field, field_validator

from .money import MAX_AMOUNT, MAX_QUANTITY, MAX_TAX_RATE

DocumentType = Literal["invoice", "quotation", "receipt"]
DocumentStatus = Literal["draft", "sent", "paid"]


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


OptionalEmail = Annotated[Optional[EmailStr], BeforeValidator(_blank_to_none)]


class LineItemIn(BaseModel):
    description: str = Field(min_length=1)
    quantity: int = Field(ge=1, le=MAX_QUANTITY)
    unit_price: int = Field(ge=0, le=MAX_AMOUNT, description="Amount in cents")


class DocumentCreate(BaseModel):
    document_type: DocumentType
    customer_name: str = Field(min_length=1)
    customer_email: OptionalEmail = None
    customer_phone: Optional[str] = None
    line_items: list[LineItemIn] = Field(min_length=1)
    tax_rate: int = Field(default=0, ge=0, le=MAX_TAX_RATE, description="Percent * 100")
    notes: Optional[str] = None
    status: DocumentStatus = "draft"


class DocumentUpdate(BaseModel):
    customer_name: Optional[str] = Field(default=None, min_length=1)
    customer_email: OptionalEmail = None
    customer_phone: Optional[str] = None
    line_items: Optional[list[LineItemIn]] = Field(default=None, min_length=1)
    tax_rate: Optional[int] = Field(default=None, ge=0, le=MAX_TAX_RATE)
    notes: Optional[str] = None
    status: Optional[DocumentStatus] = None


class CompanyUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    address: Optional[str] = None
    phone: Optional[str] = None
    email: OptionalEmail = None
    logo_url: Optional[str] = None
    inbound_channel_id: Optional[str] = None

    @field_validator("logo_url")
    @classmethod
    def _check_logo_url(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if not (value.startswith("/") or value.startswith("http://") or value.startswith("https://")):
            raise ValueError("logo_url must be an http(s) URL or an absolute path")
        return value


class InboundMessageIn(BaseModel):
    body: str
    from_identifier: str = Field(min_length=1)
    channel_id: Optional[str] = None
    external_id: Optional[str] = None


class LineItemOut(BaseModel):
    description: str
    quantity: int
    unit_price: int
    total: int


class DocumentOut(BaseModel):
    id: str
    company_id: str
    document_number: str
    document_type: DocumentType
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    line_items: list[LineItemOut]
    subtotal: int
    tax_rate: int
    tax_amount: int
    total: int
    status: DocumentStatus
    source: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CompanyOut(BaseModel):
    id: str
    name: str
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    logo_url: Optional[str] = None
    subscription_plan: str
    documents_used_this_month: int
    document_limit: Optional[int] = None
    documents_remaining: Optional[int] = None
    inbound_channel_id: Optional[str] = None


class DashboardStats(BaseModel):
    total_documents: int
    invoices: int
    quotations: int
    receipts: int
    recent_documents: list[DocumentOut]
    company: CompanyOut


class IngestResponse(BaseModel):
    state: str
    message_id: Optional[str] = None
    parsed: bool = False
    document: Optional[DocumentOut] = None
    reply: Optional[str] = None
