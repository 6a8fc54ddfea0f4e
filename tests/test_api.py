"""End-to-end tests through the HTTP API."""

import re
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models.database import get_db
from app.services import codes
from conftest import NOW

TEST_DATA = {
    "HIV 1&2 Antibody": {"value": "Non-Reactive", "referenceRange": "Non-Reactive", "status": "normal"},
    "Hepatitis B Surface Antigen": {"value": "Negative", "referenceRange": "Negative", "status": "normal"},
    "Syphilis VDRL": {"value": "Non-Reactive", "referenceRange": "Non-Reactive", "status": "normal"},
}


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_user(user):
    return {"X-User-Id": str(user.id)}


@pytest.fixture
def seeded(db, patient, sponsor, center, standard):
    db.commit()
    return {"patient": patient, "sponsor": sponsor, "center": center, "standard": standard}


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_code_lifecycle(client, seeded):
    patient, center, standard = seeded["patient"], seeded["center"], seeded["standard"]
    staff = as_user(center.owner)

    # Patient buys a code
    response = client.post("/api/codes/generate", json={"testId": str(standard.id)}, headers=as_user(patient))
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    issued = body["data"]
    assert re.match(r"^PSN[A-Z0-9]{9}$", issued["code"])
    assert issued["status"] == "pending"
    assert issued["patientName"] == "Ada Obi"

    # Center checks it while the patient is at the desk
    response = client.get(f"/api/codes/validate/{issued['code'].lower()}", headers=staff)
    assert response.status_code == 200
    validation = response.json()["data"]
    assert validation["valid"] is True
    assert validation["patientName"] == "Ada Obi"
    assert validation["testStandard"]["referenceRanges"]["HIV 1&2 Antibody"] == "Non-Reactive"

    # Sample collection redeems it
    response = client.post(
        "/api/codes/use", json={"code": issued["code"], "centerId": str(center.id)}, headers=staff
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "used"
    assert response.json()["data"]["diagnosticCenterId"] == str(center.id)

    response = client.post(
        "/api/codes/use", json={"code": issued["code"], "centerId": str(center.id)}, headers=staff
    )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "already_redeemed"

    # Results go up once
    payload = {"assessmentCodeId": issued["id"], "testData": TEST_DATA}
    response = client.post("/api/results/submit", json=payload, headers=staff)
    assert response.status_code == 200
    uploaded = response.json()["data"]
    assert uploaded["overallStatus"] == "normal"
    assert [p["parameter"] for p in uploaded["results"]] == list(TEST_DATA)

    response = client.post("/api/results/submit", json=payload, headers=staff)
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "duplicate_submission"

    # Patient reads it; the first read is recorded
    response = client.get(f"/api/results/{uploaded['id']}", headers=as_user(patient))
    assert response.status_code == 200
    assert response.json()["data"]["viewed"] is True

    response = client.get("/api/results/my", headers=as_user(patient))
    assert response.json()["data"]["totalElements"] == 1

    response = client.get(f"/api/centers/{center.id}")
    assert response.json()["data"]["totalTestsCompleted"] == 1


def test_sponsor_sees_completion_but_not_results(client, seeded):
    patient, sponsor, center, standard = (
        seeded["patient"],
        seeded["sponsor"],
        seeded["center"],
        seeded["standard"],
    )
    staff = as_user(center.owner)

    response = client.post(
        "/api/sponsors/codes",
        json={"patientId": str(patient.id), "testId": str(standard.id), "sponsorType": "employer"},
        headers=as_user(sponsor),
    )
    assert response.status_code == 200
    issued = response.json()["data"]
    assert issued["sponsorType"] == "employer"
    assert issued["patientName"] is None

    client.post("/api/codes/use", json={"code": issued["code"], "centerId": str(center.id)}, headers=staff)
    response = client.post(
        "/api/results/submit",
        json={"assessmentCodeId": issued["code"], "testData": TEST_DATA},
        headers=staff,
    )
    assert response.status_code == 200
    result = response.json()["data"]
    assert result["sponsorNotified"] is True

    response = client.get("/api/notifications", headers=as_user(sponsor))
    notices = response.json()["data"]["content"]
    assert len(notices) == 1
    assert notices[0]["data"]["code"] == issued["code"]
    assert "results" not in notices[0]["data"]

    response = client.get(f"/api/results/{result['id']}", headers=as_user(sponsor))
    assert response.status_code == 404


def test_validate_reports_expired_code(client, db, seeded):
    record = codes.issue_code(
        db,
        patient_id=seeded["patient"].id,
        test_standard_id=seeded["standard"].id,
        validity_days=1,
        now=NOW,
    )
    db.commit()

    response = client.get(f"/api/codes/validate/{record.code}", headers=as_user(seeded["center"].owner))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["valid"] is False
    assert data["reason"] == "expired"
    assert data["status"] == "expired"
    assert "patientName" not in data or data["patientName"] is None

    response = client.post(
        "/api/codes/use",
        json={"code": record.code, "centerId": str(seeded["center"].id)},
        headers=as_user(seeded["center"].owner),
    )
    assert response.status_code == 410
    assert response.json()["error"]["code"] == "code_expired"


def test_unknown_code_validates_as_not_found(client, seeded):
    response = client.get("/api/codes/validate/PSNZZZZZZZZZ", headers=as_user(seeded["center"].owner))
    assert response.status_code == 200
    assert response.json()["data"]["reason"] == "not_found"


def test_requests_need_a_known_caller(client, seeded):
    response = client.post("/api/codes/generate", json={"testId": str(seeded["standard"].id)})
    assert response.status_code == 401
    assert response.json()["success"] is False
    assert response.json()["error"]["code"] == "unauthenticated"

    response = client.post(
        "/api/codes/generate", json={"testId": str(seeded["standard"].id)}, headers={"X-User-Id": str(uuid4())}
    )
    assert response.status_code == 401


def test_roles_are_enforced(client, seeded):
    center = seeded["center"]

    # Patients cannot validate or redeem
    response = client.get("/api/codes/validate/PSNZZZZZZZZZ", headers=as_user(seeded["patient"]))
    assert response.status_code == 403

    # Center staff may only redeem for their own center
    response = client.post(
        "/api/codes/generate", json={"testId": str(seeded["standard"].id)}, headers=as_user(seeded["patient"])
    )
    code = response.json()["data"]["code"]
    response = client.post(
        "/api/codes/use", json={"code": code, "centerId": str(uuid4())}, headers=as_user(center.owner)
    )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden"


def test_bad_request_bodies_use_error_envelope(client, seeded):
    response = client.post(
        "/api/codes/generate", json={"testId": "not-a-uuid"}, headers=as_user(seeded["patient"])
    )
    assert response.status_code == 422
    body = response.json()
    assert body["error"]["code"] == "invalid_input"
    assert any(detail.startswith("testId") for detail in body["error"]["details"])

    response = client.post(
        "/api/codes/generate",
        json={"testId": str(seeded["standard"].id), "validityDays": 120},
        headers=as_user(seeded["patient"]),
    )
    assert response.status_code == 422


def test_catalog_endpoints(client, seeded):
    response = client.get("/api/tests")
    assert response.status_code == 200
    assert [t["slug"] for t in response.json()["data"]["content"]] == ["essential-sti-panel"]

    response = client.get("/api/tests/slug/essential-sti-panel")
    assert response.json()["data"]["price"] == "15000.00"

    response = client.get(f"/api/tests/{uuid4()}")
    assert response.status_code == 404


def test_sponsor_hands_out_claimable_code(client, seeded, make_user, db):
    sponsor, patient, center, standard = (
        seeded["sponsor"],
        seeded["patient"],
        seeded["center"],
        seeded["standard"],
    )
    other = make_user(role="patient", first_name="Chidi")
    db.commit()

    response = client.post(
        "/api/sponsors/codes",
        json={"testId": str(standard.id), "sponsorType": "ngo"},
        headers=as_user(sponsor),
    )
    assert response.status_code == 200
    issued = response.json()["data"]
    assert issued["patientId"] is None

    # Anyone holding the code can see what it is for, but nothing about a patient
    response = client.get(f"/api/sponsors/code/{issued['code']}")
    assert response.status_code == 200
    info = response.json()["data"]
    assert info["sponsorName"] == "Acme Ltd"
    assert info["testName"] == "Essential STI Panel"
    assert not any("patient" in key.lower() for key in info)

    response = client.post("/api/codes/claim", json={"code": issued["code"]}, headers=as_user(patient))
    assert response.status_code == 200
    assert response.json()["data"]["patientId"] == str(patient.id)
    assert response.json()["data"]["patientName"] == "Ada Obi"

    response = client.post("/api/sponsors/redeem", json={"code": issued["code"]}, headers=as_user(other))
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "already_claimed"

    response = client.post(
        "/api/codes/use", json={"code": issued["code"], "centerId": str(center.id)}, headers=as_user(center.owner)
    )
    assert response.status_code == 200


def test_claim_through_sponsor_redeem_path(client, seeded):
    response = client.post(
        "/api/sponsors/codes",
        json={"testId": str(seeded["standard"].id)},
        headers=as_user(seeded["sponsor"]),
    )
    code = response.json()["data"]["code"]

    response = client.post("/api/sponsors/redeem", json={"code": code}, headers=as_user(seeded["patient"]))
    assert response.status_code == 200
    assert response.json()["data"]["assessmentCode"] == code

    response = client.get("/api/codes/my/active", headers=as_user(seeded["patient"]))
    assert [item["code"] for item in response.json()["data"]] == [code]


def test_unclaimed_code_is_not_redeemable_at_center(client, seeded):
    response = client.post(
        "/api/sponsors/codes",
        json={"testId": str(seeded["standard"].id)},
        headers=as_user(seeded["sponsor"]),
    )
    code = response.json()["data"]["code"]
    staff = as_user(seeded["center"].owner)

    response = client.get(f"/api/codes/validate/{code}", headers=staff)
    assert response.json()["data"]["reason"] == "unclaimed"

    response = client.post("/api/codes/use", json={"code": code, "centerId": str(seeded["center"].id)}, headers=staff)
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "code_not_claimed"


def test_result_parameters_need_a_reference_range(client, seeded):
    patient, center, standard = seeded["patient"], seeded["center"], seeded["standard"]
    staff = as_user(center.owner)
    issued = client.post(
        "/api/codes/generate", json={"testId": str(standard.id)}, headers=as_user(patient)
    ).json()["data"]
    client.post("/api/codes/use", json={"code": issued["code"], "centerId": str(center.id)}, headers=staff)

    test_data = {"Syphilis VDRL": {"value": "Non-Reactive", "status": "normal"}}
    response = client.post(
        "/api/results/submit", json={"assessmentCodeId": issued["id"], "testData": test_data}, headers=staff
    )
    assert response.status_code == 422
    assert any("referenceRange" in detail for detail in response.json()["error"]["details"])

    test_data["Syphilis VDRL"]["referenceRange"] = ""
    response = client.post(
        "/api/results/submit", json={"assessmentCodeId": issued["id"], "testData": test_data}, headers=staff
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "invalid_input"
