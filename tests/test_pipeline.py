import asyncio

import pytest
from sqlalchemy import func, select, update

from autoinvoice.db import SessionLocal
from autoinvoice.errors import (
    DocumentNotFoundError,
    DocumentValidationError,
    EmptyDocumentError,
    InvalidLineItemError,
    NumberingConflictError,
    QuotaExceededError,
)
from autoinvoice.models import Company, Document
from autoinvoice.money import MAX_AMOUNT, make_line_item
from autoinvoice.pipeline import (
    DocumentRequest,
    InboundEvent,
    PipelineState,
    build_line_items,
    create_document,
    ingest_message,
    update_document,
)
from autoinvoice.store import DocumentStore

SCENARIO_A = """Customer: John Smith
Product A - 2 x RM 50
Service B - 1 x RM 100
Tax: 6%"""

SENDER = "60123456789"


def _request(**overrides):
    values = {
        "document_type": "invoice",
        "customer_name": "Ali",
        "line_items": [make_line_item("Widget", 2, 500)],
        "tax_rate": 600,
    }
    values.update(overrides)
    return DocumentRequest(**values)


def _set_usage(with_store, company_id, used):
    async def _run(store):
        await store.session.execute(
            update(Company).where(Company.id == company_id).values(documents_used_this_month=used)
        )
        await store.session.commit()

    with_store(_run)


def _usage(with_store, company_id):
    return with_store(lambda store: store.get_company(company_id)).documents_used_this_month


def _document_count(with_store, company_id):
    return with_store(
        lambda store: store.session.scalar(select(func.count(Document.id)).where(Document.company_id == company_id))
    )


def _create(with_store, company_id, request):
    async def _run(store):
        company = await store.get_company(company_id)
        return await create_document(store, company, request)

    return with_store(_run)


def _ingest(with_store, body, sender=SENDER, **kwargs):
    event = InboundEvent(from_identifier=sender, body=body, **kwargs)
    return with_store(lambda store: ingest_message(store, event))


@pytest.fixture()
def tenant(make_company):
    return make_company("owner-1", phone="+60 12-345 6789")


class TestMessagePath:
    def test_parsed_message_becomes_document(self, tenant, with_store):
        result = _ingest(with_store, SCENARIO_A, external_id="wamid.1")

        assert result.state is PipelineState.DONE
        assert result.company_id == tenant.id
        assert result.parsed is True
        document = result.document
        assert document.document_number.startswith("INV-")
        assert document.source == "message"
        assert (document.subtotal, document.tax_rate, document.tax_amount, document.total) == (20000, 600, 1200, 21200)
        assert "Total: RM212.00" in result.reply
        assert document.document_number in result.reply
        assert _usage(with_store, tenant.id) == 1

        log = with_store(lambda store: store.get_inbound_message(result.message_id))
        assert log.parsed_successfully is True
        assert log.outcome == "done"
        assert log.derived_document_id == document.id
        assert log.company_id == tenant.id
        assert log.raw_body == SCENARIO_A

    def test_unparseable_message_is_logged(self, tenant, with_store):
        result = _ingest(with_store, "hello there\nhow are you doing today")

        assert result.state is PipelineState.REJECTED_PARSE_FAILURE
        assert result.parsed is False
        assert result.document is None
        assert "Customer:" in result.reply
        assert _usage(with_store, tenant.id) == 0
        assert _document_count(with_store, tenant.id) == 0

        log = with_store(lambda store: store.get_inbound_message(result.message_id))
        assert log.parsed_successfully is False
        assert log.derived_document_id is None
        assert log.outcome == "rejected_parse_failure"

    def test_quota_denial_still_records_parse(self, tenant, with_store):
        _set_usage(with_store, tenant.id, 10)

        result = _ingest(with_store, SCENARIO_A)

        assert result.state is PipelineState.REJECTED_QUOTA_EXCEEDED
        assert result.parsed is True
        assert result.document is None
        assert "limit" in result.reply
        assert _usage(with_store, tenant.id) == 10
        assert _document_count(with_store, tenant.id) == 0

        log = with_store(lambda store: store.get_inbound_message(result.message_id))
        assert log.parsed_successfully is True
        assert log.derived_document_id is None
        assert log.outcome == "rejected_quota_exceeded"

    def test_oversized_amount_is_a_validation_failure(self, tenant, with_store):
        result = _ingest(with_store, "Customer: Ali\nWidget - 1 x 99999999999999999999", external_id="wamid.big")

        assert result.state is PipelineState.REJECTED_VALIDATION_FAILURE
        assert result.parsed is True
        assert result.document is None
        assert "not valid" in result.reply
        assert _usage(with_store, tenant.id) == 0
        assert _document_count(with_store, tenant.id) == 0

        log = with_store(lambda store: store.get_inbound_message(result.message_id))
        assert log.parsed_successfully is True
        assert log.company_id == tenant.id
        assert log.outcome == "rejected_validation_failure"

    def test_last_allowed_document(self, tenant, with_store):
        _set_usage(with_store, tenant.id, 9)

        result = _ingest(with_store, SCENARIO_A)

        assert result.state is PipelineState.DONE
        assert _usage(with_store, tenant.id) == 10

    def test_unknown_sender_is_logged_without_tenant(self, tenant, with_store):
        result = _ingest(with_store, SCENARIO_A, sender="+44 20 7946 0958")

        assert result.state is PipelineState.REJECTED_NO_TENANT
        assert result.company_id is None
        log = with_store(lambda store: store.get_inbound_message(result.message_id))
        assert log.company_id is None
        assert log.outcome == "rejected_no_tenant"
        assert log.parsed_successfully is False

    def test_channel_id_routes_to_company(self, make_company, with_store):
        company = make_company("owner-9", inbound_channel_id="pn-100")

        result = _ingest(with_store, SCENARIO_A, sender="+15550001111", channel_id="pn-100")

        assert result.state is PipelineState.DONE
        assert result.company_id == company.id

    def test_redelivery_is_ignored(self, tenant, with_store):
        first = _ingest(with_store, SCENARIO_A, external_id="wamid.dup")
        second = _ingest(with_store, SCENARIO_A, external_id="wamid.dup")

        assert first.state is PipelineState.DONE
        assert second.state is PipelineState.DUPLICATE
        assert second.message_id == first.message_id
        assert _document_count(with_store, tenant.id) == 1
        assert _usage(with_store, tenant.id) == 1

    def test_unlimited_plan(self, make_company, with_store):
        company = make_company("owner-1", phone="+60123456789", subscription_plan="business")
        _set_usage(with_store, company.id, 500)

        result = _ingest(with_store, SCENARIO_A)

        assert result.state is PipelineState.DONE
        assert _usage(with_store, company.id) == 501

    def test_message_log_listing(self, tenant, with_store):
        _ingest(with_store, SCENARIO_A)
        _ingest(with_store, "just\nchatting")

        messages = with_store(lambda store: store.list_inbound_messages(tenant.id))
        assert sorted(message.outcome for message in messages) == ["done", "rejected_parse_failure"]


class TestCreateDocument:
    def test_web_document(self, tenant, with_store):
        document = _create(with_store, tenant.id, _request(customer_email="ali@example.com"))

        assert document.document_type == "invoice"
        assert document.source == "web"
        assert document.status == "draft"
        assert document.customer_email == "ali@example.com"
        assert [item.to_dict() for item in document.line_items] == [
            {"description": "Widget", "quantity": 2, "unit_price": 500, "total": 1000}
        ]
        assert (document.subtotal, document.tax_amount, document.total) == (1000, 60, 1060)
        assert _usage(with_store, tenant.id) == 1

    def test_ordinal_follows_existing_documents(self, tenant, with_store):
        first = _create(with_store, tenant.id, _request(document_type="receipt"))
        second = _create(with_store, tenant.id, _request(document_type="receipt"))
        other = _create(with_store, tenant.id, _request(document_type="quotation"))

        assert first.document_number.split("-")[2] == "0001"
        assert second.document_number.split("-")[2] == "0002"
        assert other.document_number.startswith("QUO-")
        assert other.document_number.split("-")[2] == "0001"

    def test_quota_exceeded(self, tenant, with_store):
        _set_usage(with_store, tenant.id, 10)

        with pytest.raises(QuotaExceededError) as exc_info:
            _create(with_store, tenant.id, _request())

        assert exc_info.value.to_dict()["limit"] == 10
        assert exc_info.value.plan == "starter"
        assert _document_count(with_store, tenant.id) == 0

    def test_empty_document_writes_nothing(self, tenant, with_store):
        with pytest.raises(EmptyDocumentError):
            _create(with_store, tenant.id, _request(line_items=[]))

        assert _document_count(with_store, tenant.id) == 0
        assert _usage(with_store, tenant.id) == 0

    def test_customer_name_required(self, tenant, with_store):
        with pytest.raises(DocumentValidationError) as exc_info:
            _create(with_store, tenant.id, _request(customer_name="  "))
        assert exc_info.value.errors[0]["field"] == "customer_name"

    def test_amount_above_limit_writes_nothing(self, tenant, with_store):
        with pytest.raises(InvalidLineItemError) as exc_info:
            _create(with_store, tenant.id, _request(line_items=[make_line_item("Widget", 1, MAX_AMOUNT + 1)]))

        assert exc_info.value.errors[0]["field"] == "line_items[0].unit_price"
        assert _document_count(with_store, tenant.id) == 0
        assert _usage(with_store, tenant.id) == 0

    def test_build_line_items_reports_index(self):
        rows = [
            {"description": "A", "quantity": 1, "unit_price": 100},
            {"description": "B", "quantity": 0, "unit_price": 100},
        ]
        with pytest.raises(InvalidLineItemError) as exc_info:
            build_line_items(rows)
        assert exc_info.value.errors[0]["field"] == "line_items[1].quantity"

    def test_numbering_conflict_after_retries(self, tenant, with_store, monkeypatch):
        async def _fixed_number(store, company_id, document_type, now=None):
            return "INV-2026-0001-aaaaaa"

        monkeypatch.setattr("autoinvoice.pipeline.generate_document_number", _fixed_number)
        _create(with_store, tenant.id, _request())

        with pytest.raises(NumberingConflictError):
            _create(with_store, tenant.id, _request())

        assert _document_count(with_store, tenant.id) == 1
        assert _usage(with_store, tenant.id) == 1


class TestConcurrency:
    @staticmethod
    async def _create_in_own_session(company_id, request):
        async with SessionLocal() as session:
            store = DocumentStore(session)
            company = await store.get_company(company_id)
            try:
                document = await create_document(store, company, request)
            except QuotaExceededError:
                return None
            return document.document_number

    def _create_many(self, company_id, count):
        async def _run():
            return await asyncio.gather(
                *(self._create_in_own_session(company_id, _request()) for _ in range(count))
            )

        return asyncio.run(_run())

    def test_numbers_are_unique(self, make_company, with_store):
        company = make_company("owner-1", subscription_plan="business")

        numbers = self._create_many(company.id, 8)

        assert None not in numbers
        assert len(set(numbers)) == 8
        assert _usage(with_store, company.id) == 8

    def test_quota_holds_under_concurrent_creation(self, tenant, with_store):
        _set_usage(with_store, tenant.id, 8)

        numbers = self._create_many(tenant.id, 5)

        assert len([number for number in numbers if number is not None]) == 2
        assert _usage(with_store, tenant.id) == 10
        assert _document_count(with_store, tenant.id) == 2


class TestUpdateDocument:
    def _update(self, with_store, company_id, document_id, changes):
        async def _run(store):
            company = await store.get_company(company_id)
            return await update_document(store, company, document_id, changes)

        return with_store(_run)

    def test_new_items_recompute_totals(self, tenant, with_store):
        document = _create(with_store, tenant.id, _request())

        updated = self._update(
            with_store,
            tenant.id,
            document.id,
            {"line_items": [{"description": "Gadget", "quantity": 3, "unit_price": 1000}]},
        )

        assert updated.document_number == document.document_number
        assert (updated.subtotal, updated.tax_rate, updated.tax_amount, updated.total) == (3000, 600, 180, 3180)

    def test_tax_change_recomputes(self, tenant, with_store):
        document = _create(with_store, tenant.id, _request())

        updated = self._update(with_store, tenant.id, document.id, {"tax_rate": 0})

        assert (updated.subtotal, updated.tax_amount, updated.total) == (1000, 0, 1000)

    def test_status_change_keeps_totals(self, tenant, with_store):
        document = _create(with_store, tenant.id, _request())

        updated = self._update(with_store, tenant.id, document.id, {"status": "paid", "notes": "Cash"})

        assert updated.status == "paid"
        assert updated.notes == "Cash"
        assert updated.total == document.total
        assert _usage(with_store, tenant.id) == 1

    def test_other_company_cannot_update(self, tenant, make_company, with_store):
        document = _create(with_store, tenant.id, _request())
        other = make_company("owner-2")

        with pytest.raises(DocumentNotFoundError):
            self._update(with_store, other.id, document.id, {"status": "paid"})

    def test_blank_customer_rejected(self, tenant, with_store):
        document = _create(with_store, tenant.id, _request())

        with pytest.raises(DocumentValidationError):
            self._update(with_store, tenant.id, document.id, {"customer_name": ""})

    @pytest.mark.parametrize("field", ["status", "customer_name"])
    def test_null_required_field_rejected(self, tenant, with_store, field):
        document = _create(with_store, tenant.id, _request())

        with pytest.raises(DocumentValidationError) as exc_info:
            self._update(with_store, tenant.id, document.id, {field: None})

        assert exc_info.value.errors[0]["field"] == field
        stored = with_store(lambda store: store.get_document(tenant.id, document.id))
        assert (stored.status, stored.customer_name) == ("draft", "Ali")

    def test_null_tax_rate_keeps_existing_rate(self, tenant, with_store):
        document = _create(with_store, tenant.id, _request())

        updated = self._update(with_store, tenant.id, document.id, {"tax_rate": None})

        assert (updated.tax_rate, updated.total) == (600, 1060)


class TestUsageMaintenance:
    def test_reconcile_counts_documents_since_reset(self, tenant, with_store):
        _create(with_store, tenant.id, _request())
        _create(with_store, tenant.id, _request())
        _set_usage(with_store, tenant.id, 7)

        assert with_store(lambda store: store.reconcile_usage(tenant.id)) == 2
        assert _usage(with_store, tenant.id) == 2

    def test_monthly_reset(self, tenant, with_store):
        _set_usage(with_store, tenant.id, 10)

        with_store(lambda store: store.reset_monthly_usage(tenant.id))

        assert _usage(with_store, tenant.id) == 0

    def test_reset_excludes_documents_created_before_it(self, tenant, with_store):
        _create(with_store, tenant.id, _request())
        with_store(lambda store: store.reset_monthly_usage(tenant.id))

        assert with_store(lambda store: store.reconcile_usage(tenant.id)) == 0

        _create(with_store, tenant.id, _request())
        assert with_store(lambda store: store.reconcile_usage(tenant.id)) == 1
