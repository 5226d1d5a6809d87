from datetime import datetime

import pytest
import requests

from autoinvoice.config import load_settings
from autoinvoice.errors import RenderingError
from autoinvoice.models import Company, Document
from autoinvoice.rendering import build_document_pdf, fetch_logo, render_document_pdf


@pytest.fixture()
def company():
    return Company(
        id="company-1",
        owner_user_id="owner-1",
        name="Kedai Ali & Sons",
        address="12 Jalan Ampang",
        phone="+60123456789",
        email="hello@kedai.example",
        logo_url="/static/logo.png",
        subscription_plan="starter",
    )


@pytest.fixture()
def document():
    return Document(
        id="doc-1",
        company_id="company-1",
        document_number="INV-2026-0001-k3f9a2",
        document_type="invoice",
        customer_name="John <Smith>",
        customer_email="john@example.com",
        line_items_data=[
            {"description": "Product A", "quantity": 2, "unit_price": 5000, "total": 10000},
            {"description": "Service B", "quantity": 1, "unit_price": 10000, "total": 10000},
        ],
        subtotal=20000,
        tax_rate=600,
        tax_amount=1200,
        total=21200,
        status="draft",
        source="web",
        notes="Pay within 7 days",
        created_at=datetime(2026, 3, 14, 9, 30),
    )


class _Response:
    def __init__(self, status_code, content=b""):
        self.status_code = status_code
        self.content = content
        self.ok = status_code < 400


class TestFetchLogo:
    def test_no_logo(self, monkeypatch):
        def _fail(*args, **kwargs):
            raise AssertionError("should not fetch")

        monkeypatch.setattr("autoinvoice.rendering.requests.get", _fail)
        assert fetch_logo(None, base_url="http://localhost:5000", timeout=10) is None

    def test_relative_url_uses_public_base(self, monkeypatch):
        calls = []

        def _get(url, timeout):
            calls.append((url, timeout))
            return _Response(200, b"image-bytes")

        monkeypatch.setattr("autoinvoice.rendering.requests.get", _get)
        assert fetch_logo("/static/logo.png", base_url="http://localhost:5000", timeout=10) == b"image-bytes"
        assert calls == [("http://localhost:5000/static/logo.png", 10)]

    def test_timeout_is_dropped(self, monkeypatch):
        def _timeout(url, timeout):
            raise requests.exceptions.Timeout("slow")

        monkeypatch.setattr("autoinvoice.rendering.requests.get", _timeout)
        assert fetch_logo("https://cdn.example/logo.png", base_url="", timeout=0.1) is None

    def test_http_error_is_dropped(self, monkeypatch):
        monkeypatch.setattr("autoinvoice.rendering.requests.get", lambda url, timeout: _Response(404))
        assert fetch_logo("https://cdn.example/logo.png", base_url="", timeout=10) is None


class TestBuildPdf:
    def test_pdf_bytes(self, document, company):
        pdf = build_document_pdf(document, company)
        assert pdf.startswith(b"%PDF")
        assert len(pdf) > 1000

    @pytest.mark.parametrize("document_type", ["quotation", "receipt"])
    def test_other_document_types(self, document, company, document_type):
        document.document_type = document_type
        document.tax_rate = 0
        document.tax_amount = 0
        document.total = document.subtotal
        assert build_document_pdf(document, company).startswith(b"%PDF")

    def test_unreadable_logo_is_skipped(self, document, company):
        assert build_document_pdf(document, company, logo=b"not an image").startswith(b"%PDF")

    def test_build_failure(self, document, company, monkeypatch):
        def _broken(self, flowables):
            raise ValueError("layout failed")

        monkeypatch.setattr("autoinvoice.rendering.SimpleDocTemplate.build", _broken)
        with pytest.raises(RenderingError) as exc_info:
            build_document_pdf(document, company)
        assert exc_info.value.status_code == 503

    def test_render_survives_unreachable_logo(self, document, company, monkeypatch):
        def _refused(url, timeout):
            raise requests.exceptions.ConnectionError("refused")

        monkeypatch.setattr("autoinvoice.rendering.requests.get", _refused)
        assert render_document_pdf(document, company, load_settings()).startswith(b"%PDF")
