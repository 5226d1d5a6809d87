from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from .auth import TokenSubject, authenticate
from .billing import apply_billing_event
from .channels import extract_inbound_events, verify_subscription
from .config import settings
from .db import create_all, get_db
from .errors import AutoInvoiceError, DocumentNotFoundError, DocumentValidationError
from .models import Company, Document
from .pipeline import DocumentRequest, InboundEvent, IngestResult, build_line_items, create_document, ingest_message, update_document
from .quota import ceiling, remaining
from .rendering import render_document_pdf
from .schemas import (
    CompanyOut,
    CompanyUpdate,
    DashboardStats,
    DocumentCreate,
    DocumentOut,
    DocumentUpdate,
    InboundMessageIn,
    IngestResponse,
    LineItemOut,
)
from .store import DocumentStore

logger = logging.getLogger(__name__)

app = FastAPI(title="AutoInvoice API", version="0.3.0")

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# --- Error rendering ---

@app.exception_handler(AutoInvoiceError)
async def _autoinvoice_error(request: Request, exc: AutoInvoiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in error["loc"][1:]), "message": error["msg"]}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"reason": "validation_error", "message": "Validation error", "errors": errors},
    )


@app.exception_handler(SQLAlchemyError)
async def _persistence_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("[API] Persistence failure on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"reason": "persistence_failure", "message": "Internal error", "errors": []},
    )


# --- Converters ---

def _document_to_out(document: Document) -> DocumentOut:
    return DocumentOut(
        id=document.id,
        company_id=document.company_id,
        document_number=document.document_number,
        document_type=document.document_type,
        customer_name=document.customer_name,
        customer_email=document.customer_email,
        customer_phone=document.customer_phone,
        line_items=[LineItemOut(**item.to_dict()) for item in document.line_items],
        subtotal=document.subtotal,
        tax_rate=document.tax_rate,
        tax_amount=document.tax_amount,
        total=document.total,
        status=document.status,
        source=document.source,
        notes=document.notes,
        created_at=document.created_at,
        updated_at=document.updated_at,
    )


def _company_to_out(company: Company) -> CompanyOut:
    return CompanyOut(
        id=company.id,
        name=company.name,
        address=company.address,
        phone=company.phone,
        email=company.email,
        logo_url=company.logo_url,
        subscription_plan=company.subscription_plan,
        documents_used_this_month=company.documents_used_this_month,
        document_limit=ceiling(company.subscription_plan),
        documents_remaining=remaining(company.subscription_plan, company.documents_used_this_month),
        inbound_channel_id=company.inbound_channel_id,
    )


def _ingest_to_out(result: IngestResult) -> IngestResponse:
    return IngestResponse(
        state=result.state.value,
        message_id=result.message_id,
        parsed=result.parsed,
        document=_document_to_out(result.document) if result.document is not None else None,
        reply=result.reply,
    )


# --- Dependencies ---

def get_store(db: AsyncSession = Depends(get_db)) -> DocumentStore:
    return DocumentStore(db)


async def get_company(
    subject: TokenSubject = Depends(authenticate),
    store: DocumentStore = Depends(get_store),
) -> Company:
    return await store.get_or_create_company(subject.user_id, settings.default_company_name)


# --- Lifecycle ---

@app.on_event("startup")
async def startup() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if settings.app_env != "production":
        await create_all()


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


# --- Company ---

@app.get("/api/company", response_model=CompanyOut)
async def read_company(company: Company = Depends(get_company)) -> CompanyOut:
    return _company_to_out(company)


@app.patch("/api/company", response_model=CompanyOut)
async def patch_company(
    payload: CompanyUpdate,
    company: Company = Depends(get_company),
    store: DocumentStore = Depends(get_store),
) -> CompanyOut:
    updated = await store.update_company(company.id, payload.model_dump(exclude_unset=True))
    return _company_to_out(updated)


@app.get("/api/dashboard/stats", response_model=DashboardStats)
async def dashboard_stats(
    company: Company = Depends(get_company),
    store: DocumentStore = Depends(get_store),
) -> DashboardStats:
    counts = await store.document_counts(company.id)
    recent = await store.recent_documents(company.id, 5)
    return DashboardStats(
        total_documents=sum(counts.values()),
        invoices=counts["invoice"],
        quotations=counts["quotation"],
        receipts=counts["receipt"],
        recent_documents=[_document_to_out(document) for document in recent],
        company=_company_to_out(company),
    )


# --- Documents ---

@app.get("/api/documents", response_model=list[DocumentOut])
async def list_documents(
    company: Company = Depends(get_company),
    store: DocumentStore = Depends(get_store),
) -> list[DocumentOut]:
    documents = await store.list_documents(company.id)
    return [_document_to_out(document) for document in documents]


@app.get("/api/documents/{document_id}", response_model=DocumentOut)
async def read_document(
    document_id: str,
    company: Company = Depends(get_company),
    store: DocumentStore = Depends(get_store),
) -> DocumentOut:
    document = await store.get_document(company.id, document_id)
    if document is None:
        raise DocumentNotFoundError()
    return _document_to_out(document)


@app.post("/api/documents", response_model=DocumentOut, status_code=status.HTTP_201_CREATED)
async def post_document(
    payload: DocumentCreate,
    company: Company = Depends(get_company),
    store: DocumentStore = Depends(get_store),
) -> DocumentOut:
    request = DocumentRequest(
        document_type=payload.document_type,
        customer_name=payload.customer_name,
        line_items=build_line_items(payload.line_items),
        tax_rate=payload.tax_rate,
        customer_email=payload.customer_email,
        customer_phone=payload.customer_phone,
        notes=payload.notes,
        status=payload.status,
        source="web",
    )
    document = await create_document(store, company, request)
    return _document_to_out(document)


@app.patch("/api/documents/{document_id}", response_model=DocumentOut)
async def patch_document(
    document_id: str,
    payload: DocumentUpdate,
    company: Company = Depends(get_company),
    store: DocumentStore = Depends(get_store),
) -> DocumentOut:
    document = await update_document(store, company, document_id, payload.model_dump(exclude_unset=True))
    return _document_to_out(document)


@app.get("/api/documents/{document_id}/pdf")
async def document_pdf(
    document_id: str,
    company: Company = Depends(get_company),
    store: DocumentStore = Depends(get_store),
) -> Response:
    document = await store.get_document(company.id, document_id)
    if document is None:
        raise DocumentNotFoundError()

    pdf = await run_in_threadpool(render_document_pdf, document, company)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{document.document_number}.pdf"'},
    )


# --- Inbound messages ---

@app.post("/api/messages", response_model=IngestResponse)
async def post_message(
    payload: InboundMessageIn,
    company: Company = Depends(get_company),
    store: DocumentStore = Depends(get_store),
) -> IngestResponse:
    event = InboundEvent(
        from_identifier=payload.from_identifier,
        body=payload.body,
        channel_id=payload.channel_id,
        external_id=payload.external_id,
    )
    result = await ingest_message(store, event, company=company)
    return _ingest_to_out(result)


@app.get("/api/webhook/whatsapp")
def whatsapp_verify(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> PlainTextResponse:
    echoed = verify_subscription(mode, token, challenge, settings.whatsapp_verify_token)
    if echoed is None:
        return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)
    logger.info("[CHANNEL] WhatsApp webhook verified")
    return PlainTextResponse(echoed)


@app.post("/api/webhook/whatsapp")
async def whatsapp_receive(request: Request, store: DocumentStore = Depends(get_store)) -> PlainTextResponse:
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("[CHANNEL] Ignoring non-JSON webhook body")
        return PlainTextResponse("OK")

    for event in extract_inbound_events(payload):
        result = await ingest_message(store, event)
        logger.info("[CHANNEL] Message %s finished as %s", result.message_id, result.state.value)
    # Always acknowledged; each outcome is recorded on the message log.
    return PlainTextResponse("OK")


# --- Billing ---

@app.post("/api/webhook/billing")
async def billing_receive(request: Request, store: DocumentStore = Depends(get_store)) -> dict:
    """Events arrive already verified by the provider integration."""
    try:
        event = await request.json()
    except ValueError:
        event = None
    if not isinstance(event, dict):
        raise DocumentValidationError.for_field("body", "Billing event must be a JSON object.")

    company_id = await apply_billing_event(store, event)
    return {"received": True, "company_id": company_id}
