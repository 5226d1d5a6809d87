"""
Persistence store for companies, documents and the inbound message log.

One ``DocumentStore`` wraps one ``AsyncSession`` and lives for a single
request. Nothing is cached across requests. Writes that must be atomic
(document insert + usage increment) share one transaction.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import PersistenceError, QuotaExceededError
from .models import Company, Document, InboundMessage, utcnow
from .tenants import last_digits, normalize_phone, phones_match

logger = logging.getLogger(__name__)

COMPANY_FIELDS = {
    "name",
    "address",
    "phone",
    "email",
    "logo_url",
    "subscription_plan",
    "billing_customer_ref",
    "billing_subscription_ref",
    "inbound_channel_id",
}

DOCUMENT_MUTABLE_FIELDS = {
    "customer_name",
    "customer_email",
    "customer_phone",
    "line_items_data",
    "subtotal",
    "tax_rate",
    "tax_amount",
    "total",
    "status",
    "notes",
}


# SQLite reports the violated columns, PostgreSQL the constraint name.
DOCUMENT_NUMBER_VIOLATIONS = ("uq_documents_company_type_number", "documents.document_number")
INBOUND_MESSAGE_VIOLATIONS = ("uq_inbound_messages_external_id", "inbound_messages.external_id")


def _violates(exc: IntegrityError, markers: tuple[str, ...]) -> bool:
    message = str(exc.orig)
    return any(marker in message for marker in markers)


class DuplicateDocumentNumber(Exception):
    """The generated number already exists for this company and type."""


class DuplicateInboundMessage(Exception):
    """A channel event with the same external id was already logged."""


class DocumentStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _commit(self) -> None:
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.exception("[STORE] Commit failed")
            raise PersistenceError("Failed to save changes") from exc

    # --- Companies ---

    async def find_company_by_owner(self, owner_user_id: str) -> Company | None:
        return await self.session.scalar(select(Company).where(Company.owner_user_id == owner_user_id))

    async def get_company(self, company_id: str) -> Company | None:
        return await self.session.get(Company, company_id, populate_existing=True)

    async def create_company(self, fields: dict[str, Any]) -> Company:
        values = {key: value for key, value in fields.items() if key in COMPANY_FIELDS | {"owner_user_id"}}
        if values.get("phone"):
            values["phone"] = normalize_phone(values["phone"])
        company = Company(**values)
        self.session.add(company)
        await self._commit()
        await self.session.refresh(company)
        return company

    async def get_or_create_company(self, owner_user_id: str, default_name: str) -> Company:
        company = await self.find_company_by_owner(owner_user_id)
        if company is not None:
            return company
        try:
            company = await self.create_company(
                {"owner_user_id": owner_user_id, "name": default_name, "subscription_plan": "starter"}
            )
        except IntegrityError:
            # Another request created it first.
            company = await self.find_company_by_owner(owner_user_id)
            if company is None:
                raise PersistenceError("Failed to create company")
            return company
        logger.info("[STORE] Created company %s for user %s", company.id, owner_user_id)
        return company

    async def update_company(self, company_id: str, changes: dict[str, Any]) -> Company | None:
        company = await self.get_company(company_id)
        if company is None:
            return None
        for key, value in changes.items():
            if key not in COMPANY_FIELDS or (key == "name" and not value):
                continue
            if key == "phone" and value:
                value = normalize_phone(value)
            setattr(company, key, value)
        await self._commit()
        await self.session.refresh(company)
        return company

    async def find_company_by_channel_id(self, channel_id: str) -> Company | None:
        return await self.session.scalar(select(Company).where(Company.inbound_channel_id == channel_id))

    async def find_company_by_phone_fuzzy(self, phone: str) -> Company | None:
        normalized = normalize_phone(phone)
        if not normalized:
            return None

        company = await self.session.scalar(select(Company).where(Company.phone == normalized))
        if company is not None:
            return company

        tail = last_digits(normalized)
        if not tail:
            return None
        candidates = await self.session.scalars(
            select(Company).where(Company.phone.is_not(None), Company.phone.endswith(tail)).order_by(Company.created_at)
        )
        for candidate in candidates:
            if phones_match(candidate.phone, normalized):
                return candidate
        return None

    async def find_company_by_billing_customer(self, customer_ref: str) -> Company | None:
        return await self.session.scalar(select(Company).where(Company.billing_customer_ref == customer_ref))

    # --- Usage ---

    async def increment_usage_atomic(self, company_id: str, ceiling: Optional[int]) -> Optional[int]:
        """
        Increment the monthly counter unless it already reached ``ceiling``.

        Returns the new count, or None when the ceiling blocked the increment.
        Does not commit; callers decide the transaction boundary.
        """
        stmt = (
            update(Company)
            .where(Company.id == company_id)
            .values(documents_used_this_month=Company.documents_used_this_month + 1)
            .execution_options(synchronize_session=False)
        )
        if ceiling is not None:
            stmt = stmt.where(Company.documents_used_this_month < ceiling)
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            return None
        return await self.session.scalar(
            select(Company.documents_used_this_month).where(Company.id == company_id)
        )

    async def reset_monthly_usage(self, company_id: str) -> None:
        await self.session.execute(
            update(Company)
            .where(Company.id == company_id)
            .values(documents_used_this_month=0, usage_reset_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._commit()

    async def reconcile_usage(self, company_id: str) -> int:
        """Recompute the monthly counter from documents created since the last reset."""
        reset_at = select(Company.usage_reset_at).where(Company.id == company_id).scalar_subquery()
        actual = await self.session.scalar(
            select(func.count(Document.id)).where(
                Document.company_id == company_id,
                Document.created_at >= reset_at,
            )
        )
        actual = int(actual or 0)
        await self.session.execute(
            update(Company)
            .where(Company.id == company_id)
            .values(documents_used_this_month=actual)
            .execution_options(synchronize_session=False)
        )
        await self._commit()
        logger.info("[STORE] Reconciled usage for company %s: %s", company_id, actual)
        return actual

    # --- Documents ---

    async def count_documents_by_type_for_company(self, company_id: str, document_type: str) -> int:
        count = await self.session.scalar(
            select(func.count(Document.id)).where(
                Document.company_id == company_id,
                Document.document_type == document_type,
            )
        )
        return int(count or 0)

    async def document_counts(self, company_id: str) -> dict[str, int]:
        rows = await self.session.execute(
            select(Document.document_type, func.count(Document.id))
            .where(Document.company_id == company_id)
            .group_by(Document.document_type)
        )
        counts = {"invoice": 0, "quotation": 0, "receipt": 0}
        for document_type, count in rows:
            counts[document_type] = int(count)
        return counts

    async def create_document(
        self,
        fields: dict[str, Any],
        *,
        plan: str,
        ceiling: Optional[int],
    ) -> tuple[Document, int]:
        """
        Insert a document and count it against the monthly quota in one transaction.

        Raises DuplicateDocumentNumber when the number is taken, and
        QuotaExceededError when the conditional increment finds the ceiling
        already reached. Either way nothing is written.
        """
        company_id = fields["company_id"]
        document = Document(**fields)
        self.session.add(document)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            if _violates(exc, DOCUMENT_NUMBER_VIOLATIONS):
                raise DuplicateDocumentNumber(fields.get("document_number")) from exc
            logger.exception("[STORE] Document insert violated a constraint")
            raise PersistenceError("Failed to create document") from exc
        except Exception as exc:
            # Driver errors such as an out-of-range integer are not SQLAlchemyErrors.
            await self.session.rollback()
            logger.exception("[STORE] Document insert failed")
            raise PersistenceError("Failed to create document") from exc

        try:
            used = await self.increment_usage_atomic(company_id, ceiling)
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.exception("[STORE] Usage increment failed for company %s", company_id)
            raise PersistenceError("Failed to record document usage") from exc
        if used is None:
            await self.session.rollback()
            raise QuotaExceededError(plan, ceiling)

        try:
            await self._commit()
        except IntegrityError as exc:
            if _violates(exc, DOCUMENT_NUMBER_VIOLATIONS):
                raise DuplicateDocumentNumber(fields.get("document_number")) from exc
            raise PersistenceError("Failed to create document") from exc
        await self.session.refresh(document)
        return document, used

    async def get_document(self, company_id: str, document_id: str) -> Document | None:
        return await self.session.scalar(
            select(Document).where(Document.id == document_id, Document.company_id == company_id)
        )

    async def list_documents(self, company_id: str, limit: Optional[int] = None) -> list[Document]:
        stmt = (
            select(Document)
            .where(Document.company_id == company_id)
            .order_by(Document.created_at.desc(), Document.document_number.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(await self.session.scalars(stmt))

    async def recent_documents(self, company_id: str, limit: int = 5) -> list[Document]:
        return await self.list_documents(company_id, limit=limit)

    async def save_document_changes(self, document: Document, changes: dict[str, Any]) -> Document:
        for key, value in changes.items():
            if key in DOCUMENT_MUTABLE_FIELDS:
                setattr(document, key, value)
        await self._commit()
        await self.session.refresh(document)
        return document

    # --- Inbound message log ---

    async def find_inbound_message_by_external_id(self, external_id: str) -> InboundMessage | None:
        return await self.session.scalar(select(InboundMessage).where(InboundMessage.external_id == external_id))

    async def create_inbound_message_log(self, fields: dict[str, Any]) -> InboundMessage:
        message = InboundMessage(**fields)
        self.session.add(message)
        try:
            await self._commit()
        except IntegrityError as exc:
            if _violates(exc, INBOUND_MESSAGE_VIOLATIONS):
                raise DuplicateInboundMessage(fields.get("external_id")) from exc
            raise PersistenceError("Failed to log inbound message") from exc
        await self.session.refresh(message)
        return message

    async def attach_parse_outcome(
        self,
        log_id: str,
        *,
        parsed: bool,
        outcome: str,
        document_id: Optional[str] = None,
        company_id: Optional[str] = None,
    ) -> None:
        values: dict[str, Any] = {"parsed_successfully": parsed, "outcome": outcome}
        if document_id is not None:
            values["derived_document_id"] = document_id
        if company_id is not None:
            values["company_id"] = company_id
        await self.session.execute(
            update(InboundMessage)
            .where(InboundMessage.id == log_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._commit()

    async def get_inbound_message(self, log_id: str) -> InboundMessage | None:
        return await self.session.scalar(
            select(InboundMessage).where(InboundMessage.id == log_id).execution_options(populate_existing=True)
        )

    async def list_inbound_messages(self, company_id: str) -> list[InboundMessage]:
        return list(
            await self.session.scalars(
                select(InboundMessage)
                .where(InboundMessage.company_id == company_id)
                .order_by(InboundMessage.created_at.desc())
            )
        )
