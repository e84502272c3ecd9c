import pytest

from conftest import FakeGateway
from init_database import EXPECTED_TABLES, init_database
from scripts.create_admin import create_admin


def test_init_database_creates_tables(capsys):
    database = init_database("sqlite:///:memory:")
    try:
        output = capsys.readouterr().out
        for table in EXPECTED_TABLES:
            assert f"{table}: 0 rows" in output
    finally:
        database.close()


def test_create_admin_is_idempotent(database, backend, gateway):
    profile = create_admin(gateway, database, "ADM001", "Bagian Akademik", "admin@pnl.ac.id", "admin123")

    assert profile.is_admin
    assert backend.accounts["admin@pnl.ac.id"]["password"] == "admin123"

    again = create_admin(gateway, database, "ADM001", "Bagian Akademik", "admin@pnl.ac.id", "admin123")
    assert again.account_id == profile.account_id
    assert len(backend.creation_calls()) == 1


def test_create_admin_needs_service_key(database, backend):
    with pytest.raises(SystemExit):
        create_admin(FakeGateway(backend, privileged=False), database, "ADM001", "Admin", "a@pnl.ac.id", "admin123")

    with pytest.raises(ValueError):
        create_admin(FakeGateway(backend), database, "ADM002", "Admin", "b@pnl.ac.id", "abc")
