from autoinvoice.tenants import last_digits, normalize_phone, phones_match, resolve_tenant


class TestPhoneMatching:
    def test_normalize_strips_spacing_and_punctuation(self):
        assert normalize_phone("+60 12-345 6789") == "+60123456789"
        assert normalize_phone("(03) 1234 5678") == "0312345678"
        assert normalize_phone(None) == ""

    def test_last_digits(self):
        assert last_digits("+60 12-345 6789") == "0123456789"
        assert last_digits("123", 10) == "123"

    def test_country_code_variants_match(self):
        assert phones_match("+60 12-345 6789", "60123456789")
        assert phones_match("+60123456789", "0123456789")

    def test_different_numbers_do_not_match(self):
        assert not phones_match("+60123456789", "+60123456780")
        assert not phones_match("", "+60123456789")
        assert not phones_match("+60123456789", None)


class TestResolveTenant:
    def test_channel_id_wins(self, make_company, with_store):
        by_channel = make_company("owner-1", inbound_channel_id="pn-100")
        make_company("owner-2", phone="+60 12-345 6789")

        company = with_store(lambda store: resolve_tenant(store, "pn-100", "60123456789"))
        assert company.id == by_channel.id

    def test_falls_back_to_fuzzy_phone(self, make_company, with_store):
        owner = make_company("owner-2", phone="+60 12-345 6789")
        assert owner.phone == "+60123456789"

        company = with_store(lambda store: resolve_tenant(store, "unknown-channel", "60123456789"))
        assert company.id == owner.id

    def test_unresolved_sender(self, make_company, with_store):
        make_company("owner-1", phone="+60123456789")
        assert with_store(lambda store: resolve_tenant(store, None, "+44 20 7946 0958")) is None
        assert with_store(lambda store: resolve_tenant(store, None, "")) is None

    def test_store_lookup_by_exact_normalized_phone(self, make_company, with_store):
        owner = make_company("owner-3", phone="012-345 6789")
        company = with_store(lambda store: store.find_company_by_phone_fuzzy("0123456789"))
        assert company.id == owner.id
