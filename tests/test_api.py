"""HTTP-level tests: auth, error rendering and one evaluation driven end to end."""

import pytest
from fastapi.testclient import TestClient

import main
from auth_utils import create_access_token
from db import get_db, utcnow
from tests.factories import TEST_PASSWORD


@pytest.fixture
def client(session_factory, outbox):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_db] = override_get_db
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


def auth(employee):
    token = create_access_token({"employee_id": employee.id, "role": employee.role.value})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api_template(client, people):
    response = client.post(
        "/templates",
        json={
            "name": "Delivery",
            "period": "monthly",
            "items": [
                {"name": "Quality", "max_score": 50, "order": 1},
                {"name": "Speed", "max_score": 50, "order": 2},
            ],
        },
        headers=auth(people["hr"]),
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def api_evaluation(client, people, api_template):
    today = utcnow()
    response = client.post(
        "/evaluations",
        json={
            "employee_ids": [people["employee"].id],
            "template_id": api_template["id"],
            "period": "monthly",
            "year": today.year,
            "month": today.month,
            # The month may be nearly over on the day the suite runs
            "force": True,
        },
        headers=auth(people["hr"]),
    )
    assert response.status_code == 201
    return response.json()["evaluations"][0]


class AuthTests:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_login_and_me(self, client, people):
        response = client.post(
            "/auth/login",
            json={"email": "erin@example.com", "password": TEST_PASSWORD},
        )
        assert response.status_code == 200
        token = response.json()["access_token"]

        me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["id"] == people["employee"].id
        assert me.json()["manager_id"] == people["manager"].id

    def test_wrong_password(self, client, people):
        response = client.post(
            "/auth/login", json={"email": "erin@example.com", "password": "nope"}
        )
        assert response.status_code == 401

    def test_missing_or_bad_token(self, client):
        assert client.get("/auth/me").status_code in (401, 403)
        bad = client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert bad.status_code == 401


class EmployeeEndpointTests:
    def test_hr_registers_employees(self, client, people):
        response = client.post(
            "/employees",
            json={
                "name": "Nia",
                "email": "nia@example.com",
                "password": "secret123",
                "manager_id": people["manager"].id,
            },
            headers=auth(people["hr"]),
        )
        assert response.status_code == 201
        assert response.json()["role"] == "employee"

    def test_non_hr_cannot_register(self, client, people):
        response = client.post(
            "/employees",
            json={"name": "Nia", "email": "nia@example.com", "password": "secret123"},
            headers=auth(people["manager"]),
        )
        assert response.status_code == 403

    def test_manager_lists_self_and_reports(self, client, people):
        response = client.get("/employees", headers=auth(people["manager"]))
        ids = {row["id"] for row in response.json()}
        assert ids == {people["manager"].id, people["employee"].id}


class EvaluationFlowTests:
    def test_end_to_end(self, client, people, api_evaluation):
        employee, manager, hr = people["employee"], people["manager"], people["hr"]
        evaluation_id = api_evaluation["id"]
        assert api_evaluation["status"] == "pending"
        assert api_evaluation["awaiting"] == "self"
        assert api_evaluation["is_overdue"] is False

        detail = client.get(f"/evaluations/{evaluation_id}", headers=auth(employee)).json()
        score_ids = [row["id"] for row in sorted(detail["scores"], key=lambda r: r["item"]["order"])]

        for score_id, value in zip(score_ids, (40, 35)):
            response = client.put(
                f"/scores/{score_id}/self", json={"score": value}, headers=auth(employee)
            )
            assert response.status_code == 200
        response = client.post(
            f"/evaluations/{evaluation_id}/transitions/self", headers=auth(employee)
        )
        assert response.json()["status"] == "self_evaluated"
        assert response.json()["total_score"] == 75

        for score_id, value in zip(score_ids, (45, 30)):
            client.put(f"/scores/{score_id}/manager", json={"score": value}, headers=auth(manager))
        client.post(f"/evaluations/{evaluation_id}/transitions/manager", headers=auth(manager))
        client.post(f"/evaluations/{evaluation_id}/transitions/hr", headers=auth(hr))
        response = client.post(
            f"/evaluations/{evaluation_id}/transitions/confirm", headers=auth(employee)
        )
        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["awaiting"] is None

        detail = client.get(f"/evaluations/{evaluation_id}", headers=auth(hr)).json()
        finals = sorted(
            (row["item"]["order"], row["final_score"]) for row in detail["scores"]
        )
        assert finals == [(1, 45), (2, 30)]

    def test_errors_render_as_json(self, client, people, api_evaluation):
        evaluation_id = api_evaluation["id"]

        denied = client.post(
            f"/evaluations/{evaluation_id}/transitions/self", headers=auth(people["manager"])
        )
        assert denied.status_code == 403
        assert denied.json() == {
            "error": "transition_denied",
            "message": "No permission or status mismatch.",
        }

        incomplete = client.post(
            f"/evaluations/{evaluation_id}/transitions/self", headers=auth(people["employee"])
        )
        assert incomplete.status_code == 422
        assert incomplete.json()["error"] == "incomplete_scores"
        assert incomplete.json()["missing_count"] == 2

        unknown = client.post(
            f"/evaluations/{evaluation_id}/transitions/approve", headers=auth(people["employee"])
        )
        assert unknown.status_code == 400

    def test_score_out_of_range(self, client, people, api_evaluation):
        detail = client.get(
            f"/evaluations/{api_evaluation['id']}", headers=auth(people["employee"])
        ).json()
        response = client.put(
            f"/scores/{detail['scores'][0]['id']}/self",
            json={"score": 99},
            headers=auth(people["employee"]),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_outsider_cannot_view(self, client, people, api_evaluation):
        response = client.get(
            f"/evaluations/{api_evaluation['id']}", headers=auth(people["outsider"])
        )
        assert response.status_code == 403

    def test_listing_returns_stats(self, client, people, api_evaluation):
        response = client.get("/evaluations", headers=auth(people["hr"]))
        body = response.json()
        assert body["total"] == 1
        assert body["stats"]["pending"] == 1
        assert body["items"][0]["id"] == api_evaluation["id"]

        filtered = client.get(
            "/evaluations", params={"status": "completed"}, headers=auth(people["hr"])
        )
        assert filtered.json()["total"] == 0


class ShareEndpointTests:
    def test_delegated_scoring(self, client, people, api_evaluation, api_template):
        evaluation_id = api_evaluation["id"]
        peer = people["outsider"]

        created = client.post(
            f"/evaluations/{evaluation_id}/shares",
            json={"shared_to_ids": [peer.id], "message": "Please weigh in"},
            headers=auth(people["manager"]),
        )
        assert created.status_code == 201
        share = created.json()[0]
        assert share["status"] == "pending"

        mine = client.get("/shares/mine", headers=auth(peer)).json()
        assert [row["id"] for row in mine] == [share["id"]]

        first_item = api_template["items"][0]["id"]
        scored = client.put(
            f"/shares/{share['id']}/scores",
            json={"item_id": first_item, "score": 48, "comment": "great"},
            headers=auth(peer),
        )
        assert scored.status_code == 200
        client.post(f"/shares/{share['id']}/submit", headers=auth(peer))

        summary = client.get(
            f"/evaluations/{evaluation_id}/shares/summary", headers=auth(people["hr"])
        ).json()
        first = next(row for row in summary if row["item_id"] == first_item)
        assert first["average_score"] == 48
        assert first["score_count"] == 1

        parent = client.get(f"/evaluations/{evaluation_id}", headers=auth(people["hr"])).json()
        assert parent["total_score"] == 0
        assert parent["status"] == "pending"


class SettingsEndpointTests:
    def test_invalid_weights_rejected(self, client, people):
        current = client.get("/settings/performance-rule", headers=auth(people["hr"])).json()
        current["no_invitation"]["self_weight"] = 55
        response = client.put(
            "/settings/performance-rule", json=current, headers=auth(people["hr"])
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_only_hr_updates_rules(self, client, people):
        current = client.get("/settings/deadline-rules", headers=auth(people["employee"])).json()
        response = client.put(
            "/settings/deadline-rules", json=current, headers=auth(people["employee"])
        )
        assert response.status_code == 403

    def test_plan_preview(self, client, people):
        today = utcnow()
        response = client.get(
            "/deadlines/plan",
            params={"period": "yearly", "year": today.year + 1},
            headers=auth(people["hr"]),
        )
        assert response.status_code == 200
        assert response.json()["time_mode"] == "standard"
        assert response.json()["is_valid"] is True
