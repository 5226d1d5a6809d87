"""
Document assembly pipeline.

Per request the steps run strictly in order::

    received -> tenant_resolved -> quota_checked -> parsed -> numbered
             -> persisted -> usage_incremented -> done

with early exits ``rejected_no_tenant``, ``rejected_quota_exceeded``,
``rejected_parse_failure`` and ``rejected_validation_failure``. On the
message path the inbound message is logged before anything else and its
outcome is always written back, whichever state the run ends in.

Persisting the document and incrementing usage share one transaction in
the store, and the increment is conditional on the plan ceiling, so the
quota pre-check here is only a fast path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence

from .config import settings
from .errors import DocumentNotFoundError, DocumentValidationError, NumberingConflictError, QuotaExceededError
from .models import Company, Document
from .money import LineItem, compute_totals, make_line_item
from .numbering import generate_document_number
from .parser import ParsedDraft, format_confirmation, format_rejection, parse_message
from .quota import ceiling, is_allowed, normalize_plan
from .store import DocumentStore, DuplicateDocumentNumber, DuplicateInboundMessage
from .tenants import resolve_tenant

logger = logging.getLogger(__name__)

NUMBERING_ATTEMPTS = 5
LOG_PREVIEW_CHARS = 80

# NOT NULL columns a correction may change but never clear.
REQUIRED_UPDATE_FIELDS = {"customer_name": "Customer name", "status": "Status"}


class PipelineState(str, Enum):
    RECEIVED = "received"
    TENANT_RESOLVED = "tenant_resolved"
    QUOTA_CHECKED = "quota_checked"
    PARSED = "parsed"
    NUMBERED = "numbered"
    PERSISTED = "persisted"
    USAGE_INCREMENTED = "usage_incremented"
    DONE = "done"
    REJECTED_NO_TENANT = "rejected_no_tenant"
    REJECTED_QUOTA_EXCEEDED = "rejected_quota_exceeded"
    REJECTED_PARSE_FAILURE = "rejected_parse_failure"
    REJECTED_VALIDATION_FAILURE = "rejected_validation_failure"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class InboundEvent:
    from_identifier: str
    body: str
    channel_id: Optional[str] = None
    external_id: Optional[str] = None


@dataclass
class DocumentRequest:
    """Validated input for one document, from either entry path."""

    document_type: str
    customer_name: str
    line_items: Sequence[LineItem]
    tax_rate: int = 0
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None
    status: str = "draft"
    source: str = "web"

    @classmethod
    def from_draft(cls, draft: ParsedDraft) -> "DocumentRequest":
        return cls(
            document_type=draft.document_type,
            customer_name=draft.customer_name,
            line_items=list(draft.line_items),
            tax_rate=draft.tax_rate,
            customer_phone=draft.customer_phone,
            notes=draft.notes,
            source="message",
        )


@dataclass
class IngestResult:
    state: PipelineState
    message_id: Optional[str] = None
    company_id: Optional[str] = None
    draft: Optional[ParsedDraft] = None
    document: Optional[Document] = None
    reply: Optional[str] = None

    @property
    def parsed(self) -> bool:
        return self.draft is not None


def _preview(body: str) -> str:
    flat = " ".join(body.split())
    if len(flat) <= LOG_PREVIEW_CHARS:
        return flat
    return flat[:LOG_PREVIEW_CHARS] + "..."


def build_line_items(rows: Sequence[Any]) -> list[LineItem]:
    """Accepts objects or dicts with description/quantity/unit_price."""
    items = []
    for index, row in enumerate(rows):
        get = row.get if isinstance(row, dict) else lambda key, _row=row: getattr(_row, key)
        try:
            items.append(make_line_item(get("description"), get("quantity"), get("unit_price")))
        except DocumentValidationError as exc:
            for error in exc.errors:
                error["field"] = f"line_items[{index}].{error['field']}"
            raise
    return items


async def create_document(
    store: DocumentStore,
    company: Company,
    request: DocumentRequest,
) -> Document:
    """
    Number, persist and count one document for ``company``.

    Raises QuotaExceededError when the tenant is at its ceiling and
    DocumentValidationError for bad items; nothing is written in either case.
    """
    company_id = company.id
    plan = normalize_plan(company.subscription_plan)
    plan_ceiling = ceiling(plan)

    if not is_allowed(plan, company.documents_used_this_month):
        logger.info("[PIPELINE] Quota exceeded for company %s (plan=%s)", company_id, plan)
        raise QuotaExceededError(plan, plan_ceiling)

    if not (request.customer_name or "").strip():
        raise DocumentValidationError.for_field("customer_name", "Customer name is required.")
    totals = compute_totals(request.line_items, request.tax_rate)

    fields = {
        "company_id": company_id,
        "document_type": request.document_type,
        "customer_name": request.customer_name.strip(),
        "customer_email": request.customer_email or None,
        "customer_phone": request.customer_phone or None,
        "line_items_data": [item.to_dict() for item in request.line_items],
        "subtotal": totals.subtotal,
        "tax_rate": totals.tax_rate,
        "tax_amount": totals.tax_amount,
        "total": totals.total,
        "status": request.status,
        "source": request.source,
        "notes": request.notes or None,
    }

    for attempt in range(1, NUMBERING_ATTEMPTS + 1):
        fields["document_number"] = await generate_document_number(store, company_id, request.document_type)
        logger.debug("[PIPELINE] %s %s", PipelineState.NUMBERED.value, fields["document_number"])
        try:
            document, used = await store.create_document(fields, plan=plan, ceiling=plan_ceiling)
        except DuplicateDocumentNumber:
            logger.warning(
                "[PIPELINE] Number %s collided for company %s (attempt %d)",
                fields["document_number"],
                company_id,
                attempt,
            )
            continue
        except QuotaExceededError:
            logger.info("[PIPELINE] Quota reached concurrently for company %s (plan=%s)", company_id, plan)
            raise
        logger.debug(
            "[PIPELINE] %s+%s %s", PipelineState.PERSISTED.value, PipelineState.USAGE_INCREMENTED.value, document.id
        )
        logger.info(
            "[PIPELINE] Created %s %s for company %s (usage=%s)",
            document.document_type,
            document.document_number,
            company_id,
            used,
        )
        return document

    raise NumberingConflictError(f"Could not allocate a unique {request.document_type} number; please retry.")


async def update_document(
    store: DocumentStore,
    company: Company,
    document_id: str,
    changes: dict[str, Any],
) -> Document:
    """
    Explicit correction path. Totals are recomputed by the money model when
    line items or the tax rate change; clients never supply totals.
    """
    document = await store.get_document(company.id, document_id)
    if document is None:
        raise DocumentNotFoundError()

    updates = {key: value for key, value in changes.items() if key not in {"line_items", "tax_rate"}}
    for key, label in REQUIRED_UPDATE_FIELDS.items():
        if key in updates and not (updates[key] or "").strip():
            raise DocumentValidationError.for_field(key, f"{label} is required.")

    if "line_items" in changes or "tax_rate" in changes:
        items = document.line_items
        if changes.get("line_items") is not None:
            items = build_line_items(changes["line_items"])
        tax_rate = changes.get("tax_rate")
        if tax_rate is None:
            tax_rate = document.tax_rate
        totals = compute_totals(items, tax_rate)
        updates.update(
            line_items_data=[item.to_dict() for item in items],
            subtotal=totals.subtotal,
            tax_rate=totals.tax_rate,
            tax_amount=totals.tax_amount,
            total=totals.total,
        )

    document = await store.save_document_changes(document, updates)
    logger.info("[PIPELINE] Updated document %s for company %s", document.document_number, company.id)
    return document


async def ingest_message(
    store: DocumentStore,
    event: InboundEvent,
    company: Optional[Company] = None,
) -> IngestResult:
    """
    Message path. Never raises for unresolved tenants, parse failures or
    quota denial; those become terminal states on the logged message.

    Pass ``company`` when the sender is already authenticated; otherwise the
    tenant is resolved from the channel id and sender phone.
    """
    logger.info(
        "[PIPELINE] Received message from %s on channel %s: %s",
        event.from_identifier,
        event.channel_id,
        _preview(event.body),
    )

    if event.external_id:
        existing = await store.find_inbound_message_by_external_id(event.external_id)
        if existing is not None:
            logger.info("[PIPELINE] Ignoring redelivered message %s", event.external_id)
            return IngestResult(state=PipelineState.DUPLICATE, message_id=existing.id, company_id=existing.company_id)

    try:
        log = await store.create_inbound_message_log(
            {
                "from_identifier": event.from_identifier,
                "channel_id": event.channel_id,
                "external_id": event.external_id,
                "raw_body": event.body,
                "outcome": PipelineState.RECEIVED.value,
            }
        )
    except DuplicateInboundMessage:
        logger.info("[PIPELINE] Concurrent redelivery of message %s", event.external_id)
        existing = await store.find_inbound_message_by_external_id(event.external_id)
        return IngestResult(
            state=PipelineState.DUPLICATE,
            message_id=existing.id if existing is not None else None,
            company_id=existing.company_id if existing is not None else None,
        )
    log_id = log.id

    result = IngestResult(state=PipelineState.RECEIVED, message_id=log_id)
    try:
        await _run_message_steps(store, event, result, company)
    finally:
        await store.attach_parse_outcome(
            log_id,
            parsed=result.parsed,
            outcome=result.state.value,
            document_id=result.document.id if result.document is not None else None,
            company_id=result.company_id,
        )
    return result


async def _run_message_steps(
    store: DocumentStore,
    event: InboundEvent,
    result: IngestResult,
    company: Optional[Company],
) -> None:
    if company is None:
        company = await resolve_tenant(store, event.channel_id, event.from_identifier)
    if company is None:
        result.state = PipelineState.REJECTED_NO_TENANT
        return
    result.company_id = company.id
    result.state = PipelineState.TENANT_RESOLVED

    plan = normalize_plan(company.subscription_plan)
    allowed = is_allowed(plan, company.documents_used_this_month)
    if allowed:
        result.state = PipelineState.QUOTA_CHECKED

    draft = parse_message(event.body)
    if draft is None:
        logger.info("[PIPELINE] Could not parse message %s", result.message_id)
        result.state = PipelineState.REJECTED_PARSE_FAILURE
        result.reply = format_rejection(result.state.value)
        return
    result.draft = draft

    if not allowed:
        logger.info("[PIPELINE] Quota exceeded for company %s (plan=%s)", result.company_id, plan)
        result.state = PipelineState.REJECTED_QUOTA_EXCEEDED
        result.reply = format_rejection(result.state.value)
        return
    result.state = PipelineState.PARSED

    try:
        document = await create_document(store, company, DocumentRequest.from_draft(draft))
    except QuotaExceededError:
        result.state = PipelineState.REJECTED_QUOTA_EXCEEDED
        result.reply = format_rejection(result.state.value)
        return
    except DocumentValidationError as exc:
        logger.warning("[PIPELINE] Draft failed validation for message %s: %s", result.message_id, exc.message)
        result.state = PipelineState.REJECTED_VALIDATION_FAILURE
        result.reply = format_rejection(result.state.value)
        return

    result.document = document
    result.state = PipelineState.DONE
    result.reply = format_confirmation(draft, document.document_number, settings.currency_label)
