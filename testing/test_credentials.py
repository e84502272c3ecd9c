from src.credentials import derive_default_password, derive_email


def test_derive_email_is_deterministic_and_normalised():
    first = derive_email("Budi  Santoso", "2023001")
    assert first == derive_email("Budi  Santoso", "2023001")
    assert first == "budi_santoso001@student.pnl.ac.id"


def test_derive_email_pads_short_ids():
    assert derive_email("Ani", "7") == "ani007@student.pnl.ac.id"
    assert derive_email("Ani", 42) == "ani042@student.pnl.ac.id"


def test_derive_email_strips_disallowed_characters():
    # punctuation is dropped, whitespace runs collapse to one underscore
    assert derive_email("  Siti Nur'aini\tPutri ", "12345") == "siti_nuraini_putri345@student.pnl.ac.id"


def test_derive_email_custom_domain():
    assert derive_email("Ani", "123", domain="kampus.test") == "ani123@kampus.test"


def test_default_password_uses_long_ids_verbatim():
    assert derive_default_password("2023001") == "2023001"
    assert derive_default_password("123456") == "123456"


def test_default_password_pads_short_ids():
    password = derive_default_password("12")
    assert password.startswith("12pnl")
    assert len(password) == 6

    assert derive_default_password("123") == "123pnl"
