"""
Pure-Python PDF generation for invoices, quotations and receipts using reportlab.

Rendering never touches the stored document. A missing or slow logo is
dropped rather than failing the download.
"""
from __future__ import annotations

import io
import logging
from typing import Optional
from xml.sax.saxutils import escape

import requests
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .config import Settings, settings as default_settings
from .errors import RenderingError
from .models import Company, Document
from .money import format_money, format_rate

logger = logging.getLogger(__name__)

DOCUMENT_TITLES = {
    "invoice": "INVOICE",
    "quotation": "QUOTATION",
    "receipt": "RECEIPT",
}

FOOTER_TEXT = "Generated by AutoInvoice - Thank you for your business!"


def _absolute_logo_url(logo_url: str, base_url: str) -> str:
    if logo_url.startswith("/"):
        return f"{base_url}{logo_url}"
    return logo_url


def fetch_logo(logo_url: Optional[str], *, base_url: str, timeout: float) -> Optional[bytes]:
    """Return the logo bytes, or None on any failure."""
    if not logo_url:
        return None
    url = _absolute_logo_url(logo_url, base_url)
    try:
        response = requests.get(url, timeout=timeout)
    except requests.exceptions.Timeout:
        logger.warning("[RENDER] Logo fetch timed out after %ss: %s", timeout, url)
        return None
    except requests.exceptions.RequestException as exc:
        logger.warning("[RENDER] Logo fetch failed: %s", exc)
        return None
    if not response.ok:
        logger.warning("[RENDER] Logo fetch returned %s for %s", response.status_code, url)
        return None
    return response.content


def _logo_flowable(logo: Optional[bytes]):
    if not logo:
        return None
    try:
        # Decode now so a corrupt image is caught here and not during build().
        ImageReader(io.BytesIO(logo)).getSize()
        return Image(io.BytesIO(logo), width=0.8 * inch, height=0.8 * inch)
    except Exception as exc:  # reportlab raises plain Exceptions for unreadable images
        logger.warning("[RENDER] Could not embed logo: %s", exc)
        return None


def _text(value: Optional[str]) -> str:
    return escape(value or "")


def build_document_pdf(
    document: Document,
    company: Company,
    *,
    logo: Optional[bytes] = None,
    currency_label: str = "RM",
) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, topMargin=0.6 * inch, bottomMargin=0.6 * inch)
    styles = getSampleStyleSheet()

    company_style = ParagraphStyle("Company", parent=styles["Heading1"], fontSize=20, textColor=colors.HexColor("#0f172a"))
    title_style = ParagraphStyle("Title", parent=styles["Heading2"], fontSize=18, alignment=2)
    header_style = ParagraphStyle("Header", parent=styles["Normal"], fontSize=10, textColor=colors.HexColor("#64748b"))
    right_style = ParagraphStyle("Right", parent=header_style, alignment=2)
    value_style = ParagraphStyle("Value", parent=styles["Normal"], fontSize=11, textColor=colors.HexColor("#0f172a"))
    footer_style = ParagraphStyle("Footer", parent=header_style, fontSize=8, alignment=1)

    elements = []

    # Company header
    company_lines = [Paragraph(_text(company.name) or "Company Name", company_style)]
    if company.address:
        company_lines.append(Paragraph(_text(company.address), header_style))
    if company.phone:
        company_lines.append(Paragraph(f"Phone: {_text(company.phone)}", header_style))
    if company.email:
        company_lines.append(Paragraph(f"Email: {_text(company.email)}", header_style))

    logo_flowable = _logo_flowable(logo)
    if logo_flowable is not None:
        header = Table([[logo_flowable, company_lines]], colWidths=[1 * inch, 5.3 * inch])
        header.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP")]))
        elements.append(header)
    else:
        elements.extend(company_lines)
    elements.append(Spacer(1, 20))

    # Title block
    created = document.created_at.strftime("%b %d, %Y") if document.created_at else "-"
    elements.append(Paragraph(DOCUMENT_TITLES.get(document.document_type, "DOCUMENT"), title_style))
    elements.append(Paragraph(_text(document.document_number), right_style))
    elements.append(Paragraph(f"Date: {created}", right_style))
    elements.append(Spacer(1, 20))

    # Bill To
    elements.append(Paragraph("<b>Bill To:</b>", header_style))
    elements.append(Paragraph(_text(document.customer_name), value_style))
    if document.customer_email:
        elements.append(Paragraph(_text(document.customer_email), header_style))
    if document.customer_phone:
        elements.append(Paragraph(_text(document.customer_phone), header_style))
    elements.append(Spacer(1, 20))

    # Items
    rows = [["Description", "Qty", "Unit Price", "Total"]]
    for item in document.line_items:
        rows.append([
            Paragraph(_text(item.description), value_style),
            str(item.quantity),
            format_money(item.unit_price, f"{currency_label} "),
            format_money(item.total, f"{currency_label} "),
        ])
    items_table = Table(rows, colWidths=[3.3 * inch, 0.7 * inch, 1.15 * inch, 1.15 * inch], repeatRows=1)
    items_table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 10),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.HexColor("#64748b")),
        ("LINEBELOW", (0, 0), (-1, 0), 1, colors.HexColor("#e2e8f0")),
        ("LINEBELOW", (0, -1), (-1, -1), 1, colors.HexColor("#e2e8f0")),
        ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
    ]))
    elements.append(items_table)
    elements.append(Spacer(1, 12))

    # Totals
    amounts = [["Subtotal", format_money(document.subtotal, f"{currency_label} ")]]
    if document.tax_rate and document.tax_rate > 0:
        amounts.append([f"Tax ({format_rate(document.tax_rate)}%)", format_money(document.tax_amount, f"{currency_label} ")])
    amounts.append(["TOTAL", format_money(document.total, f"{currency_label} ")])
    amount_table = Table(amounts, colWidths=[5.15 * inch, 1.15 * inch])
    amount_table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (-1, -1), "Helvetica"),
        ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 11),
        ("ALIGN", (0, 0), (-1, -1), "RIGHT"),
        ("LINEABOVE", (0, -1), (-1, -1), 1, colors.HexColor("#e2e8f0")),
        ("TOPPADDING", (0, -1), (-1, -1), 8),
    ]))
    elements.append(amount_table)

    # Notes
    if document.notes:
        elements.append(Spacer(1, 30))
        elements.append(Paragraph("<b>Notes:</b>", header_style))
        elements.append(Paragraph(_text(document.notes), value_style))

    elements.append(Spacer(1, 40))
    elements.append(Paragraph(FOOTER_TEXT, footer_style))

    try:
        doc.build(elements)
    except Exception as exc:  # reportlab layout errors have no common base class
        logger.exception("[RENDER] Failed to build PDF for document %s", document.id)
        raise RenderingError("Document PDF is temporarily unavailable.") from exc
    return buffer.getvalue()


def render_document_pdf(document: Document, company: Company, settings: Settings = default_settings) -> bytes:
    """Blocking: fetches the logo and builds the PDF. Run it off the event loop."""
    logo = fetch_logo(
        company.logo_url,
        base_url=settings.public_base_url,
        timeout=settings.logo_fetch_timeout_seconds,
    )
    return build_document_pdf(document, company, logo=logo, currency_label=settings.currency_label)
