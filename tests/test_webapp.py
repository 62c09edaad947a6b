import asyncio

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from careconnect.files import LocalFileStorage
from careconnect.models import Child
from careconnect.service import CareConnect
from careconnect.store import InMemoryRecordStore
from careconnect.webapp import create_app

SPONSOR = {"X-User-Id": "sponsor-1", "X-User-Role": "sponsor"}
OTHER_SPONSOR = {"X-User-Id": "sponsor-2", "X-User-Role": "sponsor"}
STUART = {"X-User-Id": "stuart-1", "X-User-Role": "stuart"}
SCHOOL = {"X-User-Id": "school-user-1", "X-User-Role": "school", "X-School-Id": "school-1"}


@pytest.fixture()
def service(tmp_path) -> CareConnect:
    desk = CareConnect(InMemoryRecordStore(), files=LocalFileStorage(tmp_path / "uploads"))
    desk.store.create(Child(id="child-42", name="Emma Johnson", school_id="school-1"))
    desk.store.create(Child(id="child-7", name="Noah Williams", school_id="school-2"))
    return desk


@pytest.fixture()
def client(service: CareConnect) -> TestClient:
    return TestClient(create_app(service))


def _submit(client: TestClient, period: int = 3) -> str:
    response = client.post(
        "/v1/funding-submissions",
        json={"period": period, "criteria": {"grade": "5th"}},
        headers=SPONSOR,
    )
    assert response.status_code == 201
    return response.json()["submission"]["id"]


def _approve(client: TestClient, submission_id: str, child_id: str = "child-42"):
    return client.patch(
        f"/v1/funding-submissions/{submission_id}/approve",
        json={"matched_child_id": child_id, "payment_link": "https://pay.example/1"},
        headers=STUART,
    )


def test_missing_identity_is_unauthorized(client: TestClient) -> None:
    assert client.get("/v1/funding-submissions").status_code == 401
    response = client.get("/v1/funding-submissions", headers={"X-User-Id": "u-1", "X-User-Role": "janitor"})
    assert response.status_code == 401


def test_funding_submit_approve_and_conflict(client: TestClient) -> None:
    first = _submit(client)
    second = _submit(client, period=1)

    response = _approve(client, first)
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "approved"
    assert payload["matched_child_id"] == "child-42"
    assert payload["approved_by"] == "stuart-1"
    assert client.get("/v1/children/child-42", headers=STUART).json()["funding_status"] == "funded"

    conflict = _approve(client, second)
    assert conflict.status_code == 400
    assert conflict.json()["error"] == "ValidationError"
    assert _approve(client, first).status_code == 409
    assert client.get("/v1/funding-submissions/counts", headers=STUART).json() == {
        "pending": 1,
        "approved": 1,
        "rejected": 0,
    }


def test_role_and_lookup_errors_map_to_status_codes(client: TestClient) -> None:
    submission_id = _submit(client)

    assert _approve(client, "fs-missing").status_code == 404
    forbidden = client.patch(
        f"/v1/funding-submissions/{submission_id}/approve",
        json={"matched_child_id": "child-42", "payment_link": "https://pay.example/1"},
        headers=SPONSOR,
    )
    assert forbidden.status_code == 403
    assert client.post("/v1/funding-submissions", json={"period": 1}, headers=STUART).status_code == 403


def test_reject_funding_requires_reason(client: TestClient) -> None:
    submission_id = _submit(client)

    assert client.patch(f"/v1/funding-submissions/{submission_id}/reject", headers=STUART).status_code == 400
    empty = client.patch(f"/v1/funding-submissions/{submission_id}/reject", json={"reason": ""}, headers=STUART)
    assert empty.status_code == 400

    response = client.patch(
        f"/v1/funding-submissions/{submission_id}/reject",
        json={"reason": "Budget constraints"},
        headers=STUART,
    )
    assert response.status_code == 200
    assert response.json()["rejection_reason"] == "Budget constraints"
    listed = client.get("/v1/funding-submissions/sponsor/sponsor-1", headers=SPONSOR).json()
    assert [item["status"] for item in listed] == ["rejected"]


def test_activity_flow(client: TestClient) -> None:
    body = {
        "child_id": "child-42",
        "school_id": "school-1",
        "title": "Library visit",
        "detail": "Afternoon reading session at the city library.",
        "location": "City Library",
        "event_start": "2025-01-10T09:00:00",
        "event_end": "2025-01-10T12:00:00",
        "item_donations": [{"name": "Books", "quantity": 10}],
    }
    reversed_dates = dict(body, event_end="2025-01-09T09:00:00")

    assert client.post("/v1/event-submissions", json=reversed_dates, headers=SPONSOR).status_code == 400
    created = client.post("/v1/event-submissions", json=body, headers=SPONSOR)
    assert created.status_code == 201
    activity_id = created.json()["id"]

    rejected = client.patch(f"/v1/event-submissions/{activity_id}/reject", headers=SCHOOL)
    assert rejected.status_code == 200
    assert rejected.json()["rejection_note"] == "No reason provided."
    assert client.patch(f"/v1/event-submissions/{activity_id}/approve", headers=SCHOOL).status_code == 409
    assert client.patch(f"/v1/event-submissions/{activity_id}/approve", headers=STUART).status_code == 403
    listed = client.get("/v1/event-submissions", params={"school_id": "school-1"}, headers=SCHOOL).json()
    assert [item["id"] for item in listed] == [activity_id]


def test_payment_proof_flow(client: TestClient) -> None:
    submission_id = _submit(client)

    early = client.post(
        "/v1/payment-proofs",
        json={"submission_id": submission_id, "image_path": "/files/proofs/a.jpg"},
        headers=SPONSOR,
    )
    assert early.status_code == 412
    assert client.get(f"/v1/payment-proofs/submission/{submission_id}", headers=STUART).status_code == 404

    _approve(client, submission_id)
    stranger = client.post(
        "/v1/payment-proofs",
        json={"submission_id": submission_id, "image_path": "/files/proofs/a.jpg"},
        headers=OTHER_SPONSOR,
    )
    assert stranger.status_code == 403

    uploaded = client.post(
        f"/v1/payment-proofs/submission/{submission_id}/file",
        params={"filename": "receipt.jpg"},
        content=b"jpeg-bytes",
        headers=SPONSOR,
    )
    assert uploaded.status_code == 201
    proof = uploaded.json()["payment_proof"]
    assert proof["status"] == "pending"
    assert proof["image_path"].endswith("receipt.jpg")

    duplicate = client.post(
        "/v1/payment-proofs",
        json={"submission_id": submission_id, "image_path": "/files/proofs/b.jpg"},
        headers=SPONSOR,
    )
    assert duplicate.status_code == 412

    approved = client.patch(f"/v1/payment-proofs/{proof['id']}/approve", headers=STUART)
    assert approved.json()["status"] == "approved"
    overview = client.get("/v1/payment-proofs", headers=STUART).json()
    assert overview[0]["child_id"] == "child-42"


def test_match_and_children_listing(client: TestClient) -> None:
    response = client.post(
        "/v1/funding-submissions/match",
        json={
            "sponsor_id": "sponsor-2",
            "child_id": "child-7",
            "payment_link": "https://pay.example/m",
            "period": 2,
        },
        headers=STUART,
    )
    assert response.status_code == 201
    assert response.json()["status"] == "approved"

    available = client.get("/v1/children", headers=SPONSOR).json()
    sponsored = client.get("/v1/children", params={"sponsor_id": "sponsor-2"}, headers=OTHER_SPONSOR).json()
    assert [child["id"] for child in available] == ["child-42"]
    assert [child["id"] for child in sponsored] == ["child-7"]

    registered = client.post(
        "/v1/children",
        json={"name": "Liam", "school_id": "school-1", "grade": "Grade 2", "age": 7},
        headers=SCHOOL,
    )
    assert registered.status_code == 201
    assert client.get("/health").json()["database"] == "ok"


def test_sponsors_cannot_read_other_sponsors_records(client: TestClient) -> None:
    submission_id = _submit(client)
    _approve(client, submission_id)

    own = client.get("/v1/funding-submissions/sponsor/sponsor-1", headers=SPONSOR)
    assert own.status_code == 200
    assert [item["payment_link"] for item in own.json()] == ["https://pay.example/1"]

    assert client.get("/v1/funding-submissions/sponsor/sponsor-1", headers=OTHER_SPONSOR).status_code == 403
    assert client.get(f"/v1/funding-submissions/{submission_id}", headers=OTHER_SPONSOR).status_code == 403
    assert client.get(f"/v1/payment-proofs/submission/{submission_id}", headers=OTHER_SPONSOR).status_code == 403
    assert client.get("/v1/children", params={"sponsor_id": "sponsor-1"}, headers=OTHER_SPONSOR).status_code == 403


def test_overview_routes_are_limited_to_reviewers(client: TestClient) -> None:
    for path in ("/v1/funding-submissions", "/v1/funding-submissions/counts", "/v1/payment-proofs"):
        assert client.get(path, headers=SPONSOR).status_code == 403
        assert client.get(path, headers=SCHOOL).status_code == 403
        assert client.get(path, headers=STUART).status_code == 200
    assert client.get("/v1/event-submissions/school/school-2", headers=SCHOOL).status_code == 403
    assert client.get("/v1/event-submissions/school/school-1", headers=SCHOOL).json() == []


def test_child_search_routes(client: TestClient) -> None:
    for name, grade, gender in (("Ava Brown", "5th", "Female"), ("Liam Smith", "5th", "Male")):
        response = client.post(
            "/v1/children",
            json={"name": name, "school_id": "school-1", "grade": grade, "gender": gender},
            headers=SCHOOL,
        )
        assert response.status_code == 201

    found = client.get("/v1/children/filter", params={"grade": "5TH", "gender": "female"}, headers=STUART)
    assert [child["name"] for child in found.json()] == ["Ava Brown"]
    assert found.json()[0]["gender"] == "Female"
    school = client.get("/v1/schools/school-1/children", headers=STUART).json()
    assert [child["name"] for child in school] == ["Ava Brown", "Emma Johnson", "Liam Smith"]
    bad = client.get("/v1/children/filter", params={"funding_status": "maybe"}, headers=STUART)
    assert bad.status_code == 400


def test_proof_file_upload_runs_outside_the_event_loop(tmp_path) -> None:
    class RecordingDesk(CareConnect):
        __slots__ = ("loop_running",)

        def upload_proof_file(self, caller, submission_id, filename, data):
            try:
                asyncio.get_running_loop()
                self.loop_running = True
            except RuntimeError:
                self.loop_running = False
            return super().upload_proof_file(caller, submission_id, filename, data)

    desk = RecordingDesk(files=LocalFileStorage(tmp_path / "uploads"))
    desk.store.create(Child(id="child-42", name="Emma Johnson", school_id="school-1"))
    client = TestClient(create_app(desk))
    submission_id = _submit(client)
    _approve(client, submission_id)

    response = client.post(
        f"/v1/payment-proofs/submission/{submission_id}/file",
        params={"filename": "receipt.jpg"},
        content=b"jpeg-bytes",
        headers=SPONSOR,
    )

    assert response.status_code == 201
    assert desk.loop_running is False
