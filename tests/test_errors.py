"""Store failures and the error envelope."""

import pytest
from sqlalchemy.exc import OperationalError

from healthcare_api import main
from healthcare_api.errors import ValidationFailed
from healthcare_api.services import AppointmentService

from conftest import auth_header


@pytest.fixture
def failing_store(monkeypatch):
    def broken(self, caller, filters=None):
        raise OperationalError("SELECT * FROM appointments", {}, Exception("disk I/O error"))

    monkeypatch.setattr(AppointmentService, "list", broken)


class TestStoreFailure:
    def test_detail_hidden_in_production(self, client, patient, failing_store, monkeypatch):
        monkeypatch.setattr(main, "is_production", lambda: True)
        res = client.get("/appointments", headers=auth_header(patient))
        assert res.status_code == 500
        assert res.json() == {"success": False, "message": "Server error", "error": None}

    def test_detail_shown_in_development(self, client, patient, failing_store, monkeypatch):
        monkeypatch.setattr(main, "is_production", lambda: False)
        res = client.get("/appointments", headers=auth_header(patient))
        assert res.status_code == 500
        assert "disk I/O error" in res.json()["error"]


class TestEnvelope:
    def test_health(self, client):
        assert client.get("/health").json() == {"success": True, "message": "ok"}

    def test_not_found_envelope(self, client, admin):
        res = client.get("/facilities/9999", headers=auth_header(admin))
        assert res.status_code == 404
        assert res.json() == {"success": False, "message": "Facility not found"}

    def test_validation_failed_defaults_to_no_fields(self):
        assert ValidationFailed("bad").fields == []
