"""
HTTP tests through FastAPI's TestClient.

Focus is the wiring: identity headers, error kind -> status mapping, and the
main project/contribution flow end to end.
"""
from decimal import Decimal

from agrifund.models import Role

from conftest import headers_for, new_address

TX = "0x" + "aa" * 32

PROJECT = {
    "title": "Tilapia ponds",
    "description": "Two ponds with aerators",
    "funding_goal": "50",
    "category": "FISH_FARMING",
    "location": "Rubavu",
    "timeline": "3 months",
}


def test_full_flow(client, gateway, farmer, make_user, investor):
    reviewer = make_user(Role.GOVERNMENT_OFFICIAL, department="FISHERIES")

    r = client.post("/api/projects", json=PROJECT, headers=headers_for(farmer))
    assert r.status_code == 201, r.text
    project = r.json()
    assert project["status"] == "submitted"
    assert project["department"] == "FISHERIES"

    r = client.post(f"/api/projects/{project['id']}/verify", json={"notes": "ponds inspected"},
                    headers=headers_for(reviewer))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "active"
    assert r.json()["blockchain_status"] == "created"

    r = client.get(f"/api/projects/{project['id']}/funding")
    assert r.status_code == 200
    assert r.json()["can_contribute"] is True
    assert r.json()["chain_available"] is True

    body = {"project_id": project["id"], "amount": "5", "tx_ref": TX, "contributor_wallet": new_address()}
    r = client.post("/api/contributions", json=body, headers=headers_for(investor))
    assert r.status_code == 201, r.text
    assert r.json()["status"] == "confirmed"

    r = client.post("/api/contributions", json=body, headers=headers_for(investor))
    assert r.status_code == 409
    assert r.json()["error"] == "conflict"

    r = client.get("/api/contributions/mine", headers=headers_for(investor))
    assert r.json()["total"] == 1

    r = client.get("/api/stats/platform")
    assert r.json()["total_contributions"] == 1
    assert r.json()["projects"]["active"] == 1


def test_missing_identity_headers(client):
    r = client.post("/api/projects", json=PROJECT)
    assert r.status_code == 422


def test_not_found_maps_to_404(client):
    r = client.get("/api/projects/does-not-exist")
    assert r.status_code == 404
    assert r.json() == {"error": "not_found", "message": "Project does-not-exist not found"}


def test_cross_department_verify_is_403(client, make_user, farmer):
    r = client.post("/api/projects", json={**PROJECT, "category": "LIVESTOCK_FARMING"}, headers=headers_for(farmer))
    other = make_user(Role.GOVERNMENT_OFFICIAL, department="CROPS")
    r = client.post(f"/api/projects/{r.json()['id']}/verify", json={}, headers=headers_for(other))
    assert r.status_code == 403
    assert r.json()["error"] == "authorization_error"


def test_goal_below_minimum_is_400(client, farmer):
    r = client.post("/api/projects", json={**PROJECT, "funding_goal": "2"}, headers=headers_for(farmer))
    assert r.status_code == 400
    assert r.json()["error"] == "validation_error"
    assert "5" in r.json()["message"]


def test_edit_after_submission_is_policy_error(client, db, farmer, active_project):
    r = client.patch(f"/api/projects/{active_project.id}", json={"title": "new"}, headers=headers_for(farmer))
    assert r.status_code == 409
    assert r.json()["error"] == "policy_error"


def test_chain_outage_on_write_is_503(client, gateway, investor, active_project):
    gateway.read_error = "timed out after 10s"
    body = {"project_id": active_project.id, "amount": "1", "tx_ref": TX, "contributor_wallet": new_address()}
    r = client.post("/api/contributions", json=body, headers=headers_for(investor))
    assert r.status_code == 503
    assert r.json()["error"] == "external_dependency_error"

    r = client.get(f"/api/projects/{active_project.id}/funding")
    assert r.status_code == 200
    assert r.json()["chain_available"] is False
    assert r.json()["advisory"]


def test_only_farmers_create_projects(client, investor):
    r = client.post("/api/projects", json=PROJECT, headers=headers_for(investor))
    assert r.status_code == 403


def test_wallet_update(client, make_user):
    user = make_user(Role.FARMER, wallet=False)
    address = new_address()
    r = client.put("/api/users/me/wallet", json={"wallet_address": address}, headers=headers_for(user))
    assert r.status_code == 200
    assert r.json()["wallet_address"] == address
    assert client.get("/api/users/me", headers=headers_for(user)).json()["wallet_address"] == address


def test_departments_endpoints(client, reviewer):
    r = client.get("/api/departments/recommendation", params={"category": "CROP_PRODUCTION"})
    assert r.json()["recommended_department"] == "CROPS"
    r = client.get("/api/departments/crops/reviewers")
    assert [x["id"] for x in r.json()] == [reviewer.id]
    assert client.get("/api/departments/unknown/reviewers").status_code == 400


def test_currency_conversion(client):
    r = client.get("/api/currency/convert", params={"amount": "2"})
    assert r.status_code == 200
    assert Decimal(str(r.json()["amount_local"])) == Decimal("500")


def test_reviewer_queue_and_favorites(client, farmer, reviewer, investor, submitted_project):
    pid = submitted_project.id
    r = client.post(f"/api/projects/{pid}/due-diligence/assign", headers=headers_for(reviewer))
    assert r.status_code == 200, r.text

    r = client.get("/api/projects/assigned", headers=headers_for(reviewer))
    assert [p["id"] for p in r.json()] == [pid]
    assert client.get("/api/projects/assigned", headers=headers_for(farmer)).status_code == 403

    r = client.post(f"/api/projects/{pid}/favorite", headers=headers_for(investor))
    assert r.json() == {"message": "Added to favorites"}
    r = client.get(f"/api/projects/{pid}/is-favorite", headers=headers_for(investor))
    assert r.json() == {"is_favorite": True}
    r = client.get("/api/projects/favorites", headers=headers_for(investor))
    assert [p["id"] for p in r.json()] == [pid]

    r = client.delete(f"/api/projects/{pid}/favorite", headers=headers_for(investor))
    assert r.status_code == 200
    r = client.get(f"/api/projects/{pid}/is-favorite", headers=headers_for(investor))
    assert r.json() == {"is_favorite": False}
    assert client.post("/api/projects/missing/favorite", headers=headers_for(investor)).status_code == 404


def test_withdrawal_flow(client, gateway, farmer, reviewer, investor, active_project):
    body = {"project_id": active_project.id, "recipient_phone": "+250788000111"}
    r = client.post("/api/withdrawals", json=body, headers=headers_for(farmer))
    assert r.status_code == 409
    assert r.json()["error"] == "policy_error"

    gateway.set_state(active_project.blockchain_project_id, total_funding=Decimal("100"), is_completed=True)
    assert client.post("/api/withdrawals", json=body, headers=headers_for(investor)).status_code == 403
    r = client.post("/api/withdrawals", json=body, headers=headers_for(farmer))
    assert r.status_code == 201, r.text
    withdrawal = r.json()
    assert withdrawal["status"] == "pending"
    assert Decimal(withdrawal["amount_local"]) == Decimal("25000")

    assert client.get("/api/withdrawals/pending", headers=headers_for(farmer)).status_code == 403
    r = client.get("/api/withdrawals/pending", headers=headers_for(reviewer))
    assert [w["id"] for w in r.json()] == [withdrawal["id"]]

    r = client.post(f"/api/withdrawals/{withdrawal['id']}/process", json={"payment_reference": "MOMO-77"},
                    headers=headers_for(reviewer))
    assert r.status_code == 200, r.text
    assert Decimal(r.json()["net_amount_local"]) == Decimal("24750")

    r = client.post(f"/api/withdrawals/{withdrawal['id']}/process", json={"payment_reference": "MOMO-78"},
                    headers=headers_for(reviewer))
    assert r.status_code == 409

    r = client.get("/api/withdrawals/mine", headers=headers_for(farmer))
    assert [w["status"] for w in r.json()] == ["completed"]
    assert client.get("/api/stats/platform").json()["total_withdrawals"] == 1
