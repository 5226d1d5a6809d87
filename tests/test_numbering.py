import re
from datetime import datetime, timezone

import pytest

from autoinvoice.numbering import (
    document_prefix,
    format_document_number,
    generate_document_number,
    new_disambiguator,
)

NUMBER_RE = re.compile(r"^(INV|QUO|REC)-\d{4}-\d{4,}-[0-9a-z]{6}$")


class TestFormat:
    @pytest.mark.parametrize("document_type, prefix", [("invoice", "INV"), ("quotation", "QUO"), ("receipt", "REC")])
    def test_prefix(self, document_type, prefix):
        assert document_prefix(document_type) == prefix

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            document_prefix("credit_note")

    def test_layout(self):
        assert format_document_number("invoice", 2026, 7, "k3f9a2") == "INV-2026-0007-k3f9a2"
        assert format_document_number("receipt", 2026, 12345, "000000") == "REC-2026-12345-000000"

    def test_disambiguator_shape(self):
        value = new_disambiguator()
        assert re.fullmatch(r"[0-9a-z]{6}", value)

    def test_disambiguator_tracks_clock(self):
        assert new_disambiguator(clock_us=0).startswith("0000")
        assert new_disambiguator(clock_us=36**4 + 35).startswith("000z")


class TestGenerate:
    def test_first_number_for_company(self, make_company, with_store):
        company = make_company()
        number = with_store(
            lambda store: generate_document_number(
                store, company.id, "quotation", now=datetime(2026, 1, 5, tzinfo=timezone.utc)
            )
        )
        assert number.startswith("QUO-2026-0001-")
        assert NUMBER_RE.match(number)
