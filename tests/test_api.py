"""
HTTP tests through FastAPI's TestClient.

The database and Central System client are swapped via
``app.dependency_overrides``; everything else is the production wiring.
"""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from ereferral.main import app, get_central_client
from ereferral.models.database import get_db, utcnow

DOCTOR = {"X-API-Key": "dev-doctor-key"}
BILLING = {"X-API-Key": "dev-billing-key"}
ADMIN = {"X-API-Key": "dev-admin-key"}
AUDITOR = {"X-API-Key": "dev-auditor-key"}


@pytest.fixture
def client(session_factory, central):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_central_client] = lambda: central
    yield TestClient(app)
    app.dependency_overrides.clear()


def _referral_payload(**overrides):
    payload = {
        "patient_mbo": "987654321",
        "patient_name": "Ana Kovač",
        "diagnosis_code": "I10",
        "procedure_code": "CARD-01",
        "target_department": "Cardiology",
        "category": "C1",
    }
    payload.update(overrides)
    return payload


def _appointment_payload(referral_id=None, mbo="987654321"):
    start = utcnow().replace(microsecond=0) + timedelta(days=1)
    return {
        "patient_mbo": mbo,
        "referral_id": referral_id,
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(minutes=30)).isoformat(),
    }


class TestAuth:

    def test_missing_key(self, client):
        assert client.get("/referrals").status_code == 422

    def test_invalid_key(self, client):
        assert client.get("/referrals", headers={"X-API-Key": "nope"}).status_code == 401

    def test_auditor_cannot_submit(self, client):
        response = client.post("/referrals", json=_referral_payload(), headers=AUDITOR)
        assert response.status_code == 403

    def test_doctor_cannot_submit_batch(self, client):
        response = client.post("/batches", json={"invoice_ids": ["x"]}, headers=DOCTOR)
        assert response.status_code == 403

    def test_admin_passes_role_checks(self, client):
        response = client.post("/batches", json={"invoice_ids": ["missing"]}, headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["code"] == "INVOICE_NOT_FOUND"

    def test_only_admin_deletes_appointments(self, client):
        appointment = client.post("/appointments", json=_appointment_payload(), headers=DOCTOR).json()
        assert client.delete(f"/appointments/{appointment['id']}", headers=DOCTOR).status_code == 403
        assert client.delete(f"/appointments/{appointment['id']}", headers=ADMIN).status_code == 204


class TestErrors:

    def test_not_found_body(self, client):
        response = client.get("/referrals/unknown", headers=DOCTOR)
        assert response.status_code == 404
        assert response.json() == {
            "type": "not_found",
            "code": "REFERRAL_NOT_FOUND",
            "message": "Referral unknown not found.",
        }

    def test_policy_violation(self, client):
        response = client.post("/appointments", json=_appointment_payload(mbo="000000000"), headers=DOCTOR)
        assert response.status_code == 403
        assert response.json()["code"] == "INSURANCE_INACTIVE"

    def test_takeover_conflict(self, client):
        referral = client.post("/referrals", json=_referral_payload(), headers=DOCTOR).json()
        first = client.post(f"/referrals/{referral['id']}/takeover", json={"doctor_id": "DR-1"}, headers=DOCTOR)
        second = client.post(f"/referrals/{referral['id']}/takeover", json={"doctor_id": "DR-2"}, headers=DOCTOR)
        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["type"] == "conflict"

    def test_transient_failure(self, client, central):
        central.fail_on.add("submit_referral")
        response = client.post("/referrals", json=_referral_payload(), headers=DOCTOR)
        assert response.status_code == 503
        assert response.json()["type"] == "transient_failure"


class TestFlow:

    def test_referral_to_batch(self, client):
        referral = client.post("/referrals", json=_referral_payload(), headers=DOCTOR)
        assert referral.status_code == 201
        referral_id = referral.json()["id"]
        assert referral.json()["status"] == "POSLANA"

        appointment = client.post("/appointments", json=_appointment_payload(referral_id), headers=DOCTOR)
        assert appointment.status_code == 201
        appointment_id = appointment.json()["id"]

        synced = client.post(f"/appointments/{appointment_id}/sync", headers=DOCTOR)
        assert synced.json()["calendar_id"].startswith("SK-")
        assert client.get(f"/referrals/{referral_id}", headers=DOCTOR).json()["status"] == "REZERVIRANA"

        completed = client.post(
            f"/appointments/{appointment_id}/status", json={"status": "completed"}, headers=DOCTOR
        ).json()
        assert completed["appointment"]["status"] == "completed"
        assert completed["warnings"] == []
        assert client.get(f"/referrals/{referral_id}", headers=DOCTOR).json()["status"] == "U OBRADI"

        finding = client.put(
            "/findings", json={"appointment_id": appointment_id, "anamnesis": "Chest pain"}, headers=DOCTOR
        ).json()
        unsigned = client.post(f"/appointments/{appointment_id}/invoices", headers=BILLING)
        assert unsigned.status_code == 409
        assert unsigned.json()["type"] == "unsigned_dependency"

        signed = client.post(f"/findings/{finding['id']}/send", headers=DOCTOR).json()
        assert signed["signed_at"] is not None
        assert client.get(f"/referrals/{referral_id}", headers=DOCTOR).json()["status"] == "REALIZIRANA"

        issued = client.post(f"/appointments/{appointment_id}/invoices", headers=BILLING)
        assert issued.status_code == 201
        assert issued.json()["copayment_amount"] == "3.00"
        invoice_ids = [inv["id"] for inv in issued.json()["invoices"]]

        batch = client.post("/batches", json={"invoice_ids": invoice_ids}, headers=BILLING)
        assert batch.status_code == 201
        assert batch.json()["status"] == "SENT"
        report = client.get(f"/batches/{batch.json()['id']}/report", headers=AUDITOR)
        assert report.status_code == 200
        assert report.headers["content-type"].startswith("application/xml")
        assert f'filename="HZZO_HZZO_F1_{batch.json()["external_id"]}.xml"' in report.headers["content-disposition"]
        assert report.text.count("<Invoice id=") == len(invoice_ids)
        assert all(
            client.get(f"/invoices/{i}", headers=AUDITOR).json()["status"] == "SENT_TO_CENTRAL" for i in invoice_ids
        )

        timeline = client.get(f"/referrals/{referral_id}/timeline", headers=AUDITOR).json()
        types = [entry["type"] for entry in timeline]
        assert types[0] == "SEND_REFERRAL"
        assert "CALENDAR_SYNC" in types
        assert "TAKEOVER" in types
        assert "SEND_FINDING" in types

    def test_storno_referral(self, client):
        referral_id = client.post("/referrals", json=_referral_payload(), headers=DOCTOR).json()["id"]
        response = client.post(f"/storno/REFERRAL/{referral_id}", json={"reason_code": "PATIENT_REQUEST"}, headers=DOCTOR)
        assert response.status_code == 200
        assert response.json()["document_type"] == "REFERRAL"
        assert client.get(f"/referrals/{referral_id}", headers=DOCTOR).json()["status"] == "STORNIRANA"

    def test_messages_newest_first(self, client):
        client.post("/referrals", json=_referral_payload(), headers=DOCTOR)
        client.get("/patients/123456789/insurance", headers=DOCTOR)
        messages = client.get("/messages", headers=AUDITOR).json()
        assert [m["type"] for m in messages] == ["CHECK_INSURANCE", "SEND_REFERRAL"]
