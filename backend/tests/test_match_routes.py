"""HTTP surface: participant match routes and admin routes, with header identity."""
from fastapi.testclient import TestClient
from sqlmodel import Session

from arena.errors import ConcurrencyConflict, InvalidState, http_error
from arena.models.match import STATUS_AWAITING_CONFIRMATION, Match

ALICE, BOB, CAROL = 1, 2, 3


def auth(user_id: int, admin: bool = False):
    headers = {"X-User-Id": str(user_id)}
    if admin:
        headers["X-User-Role"] = "admin"
    return headers


def _report(client: TestClient, match_id: int, user_id: int = ALICE, scores=(3, 1)):
    return client.post(
        f"/api/matches/{match_id}/report-score",
        json={"participant1_score": scores[0], "participant2_score": scores[1]},
        headers=auth(user_id),
    )


def test_health(client: TestClient):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_identity_required(client: TestClient, bracket):
    assert client.get(f"/api/matches/{bracket['semi1'].id}").status_code == 401
    assert client.get(f"/api/matches/{bracket['semi1'].id}", headers={"X-User-Id": "abc"}).status_code == 401


def test_unknown_match(client: TestClient, bracket):
    resp = client.get("/api/matches/999", headers=auth(ALICE))
    assert resp.status_code == 404
    assert resp.json()["detail"].startswith("NOT_FOUND")


def test_handshake_over_http(client: TestClient, make_match, players):
    alice, bob, _carol, _dave = players
    match = make_match(1, 1, alice, bob)
    base = f"/api/matches/{match.id}"

    r = client.post(f"{base}/ready", headers=auth(ALICE))
    assert r.status_code == 200
    assert r.json()["handshake_status"] == "one_ready"
    assert r.json()["status"] == "awaiting_activation"

    assert client.post(f"{base}/confirm-active", headers=auth(BOB)).status_code == 409
    client.post(f"{base}/ready", headers=auth(BOB))
    client.post(f"{base}/confirm-active", headers=auth(ALICE))
    r = client.post(f"{base}/confirm-active", headers=auth(BOB))
    body = r.json()
    assert body["match_live"] is True
    assert body["handshake_status"] == "handshake_completed"
    assert body["total_active_confirmed"] == body["required"] == 2

    status = client.get(f"{base}/ready-status", headers=auth(ALICE)).json()
    assert status["status"] == "live"
    assert client.get(f"{base}/ready-status", headers=auth(CAROL)).status_code == 403


def test_report_and_confirm_over_http(client: TestClient, bracket):
    match_id = bracket["semi1"].id

    r = _report(client, match_id)
    assert r.status_code == 200
    snap = r.json()
    assert snap["status"] == STATUS_AWAITING_CONFIRMATION
    assert snap["provisional_winner_id"] == ALICE
    assert snap["winner_id"] is None
    assert snap["seconds_until_auto_confirm"] == 600

    r = client.post(f"/api/matches/{match_id}/confirm-score", headers=auth(ALICE))
    assert r.status_code == 403
    assert r.json()["detail"].startswith("NOT_AUTHORIZED")

    r = client.post(f"/api/matches/{match_id}/confirm-score", headers=auth(BOB))
    assert r.status_code == 200
    assert r.json()["status"] == "completed"
    assert r.json()["winner_id"] == ALICE
    assert r.json()["seconds_until_auto_confirm"] is None


def test_tie_rejected_over_http(client: TestClient, bracket):
    r = _report(client, bracket["semi1"].id, scores=(2, 2))
    assert r.status_code == 422
    assert r.json()["detail"].startswith("INVALID_SCORE")


def test_bracket_listing(client: TestClient, bracket, tournament):
    r = client.get(f"/api/tournaments/{tournament.id}/matches", headers=auth(CAROL))
    assert r.status_code == 200
    assert [(m["round_number"], m["match_order"]) for m in r.json()] == [(1, 1), (1, 2)]


def test_dispute_and_admin_resolution(client: TestClient, bracket, session: Session):
    match_id = bracket["semi1"].id
    _report(client, match_id)

    blank = client.post(f"/api/matches/{match_id}/dispute", json={"reason": ""}, headers=auth(BOB))
    assert blank.status_code == 422
    assert blank.json()["detail"].startswith("INVALID_REASON")

    r = client.post(
        f"/api/matches/{match_id}/dispute",
        json={"reason": "it was 1-3", "evidence_ref": "clip-9"},
        headers=auth(BOB),
    )
    assert r.status_code == 201
    dispute_id = r.json()["id"]
    assert r.json()["status"] == "open"

    assert client.get("/api/admin/disputes", headers=auth(BOB)).status_code == 403
    listing = client.get("/api/admin/disputes", headers=auth(99, admin=True)).json()
    assert [d["dispute_id"] for d in listing] == [dispute_id]
    assert listing[0]["participant2_name"] == "bob"

    bad = client.post(
        f"/api/admin/disputes/{dispute_id}/resolve",
        json={"winner_id": CAROL, "resolution": "typo"},
        headers=auth(99, admin=True),
    )
    assert bad.status_code == 422
    assert bad.json()["detail"].startswith("INVALID_WINNER")

    ok = client.post(
        f"/api/admin/disputes/{dispute_id}/resolve",
        json={"winner_id": BOB, "resolution": "replay shows 1-3"},
        headers=auth(99, admin=True),
    )
    assert ok.status_code == 200
    assert ok.json()["status"] == "resolved"
    assert ok.json()["resolved_winner_id"] == BOB

    again = client.post(
        f"/api/admin/disputes/{dispute_id}/resolve",
        json={"winner_id": ALICE},
        headers=auth(99, admin=True),
    )
    assert again.status_code == 409
    assert again.json()["detail"].startswith("ALREADY_RESOLVED")

    session.expire_all()
    assert session.get(Match, match_id).winner_id == BOB


def test_admin_cancel_and_advance(client: TestClient, bracket, tournament):
    admin = auth(99, admin=True)

    r = client.post(f"/api/admin/matches/{bracket['semi2'].id}/cancel", headers=admin)
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert client.post(f"/api/admin/matches/{bracket['semi1'].id}/cancel", headers=admin).status_code == 409

    assert client.post(f"/api/admin/matches/{bracket['semi1'].id}/advance", headers=admin).status_code == 409
    _report(client, bracket["semi1"].id)
    client.post(f"/api/matches/{bracket['semi1'].id}/confirm-score", headers=auth(BOB))

    r = client.post(f"/api/admin/matches/{bracket['semi1'].id}/advance", headers=admin)
    assert r.status_code == 200
    assert r.json()["action"] == "already_applied"

    r = client.post(f"/api/admin/tournaments/{tournament.id}/resolve-advancements", headers=admin)
    assert r.status_code == 200
    assert r.json()["matches_processed"] == 1
    assert r.json()["slots_filled"] == 0


def test_deadline_scan_endpoint(client: TestClient, bracket, timers):
    _report(client, bracket["semi1"].id)
    timers.shutdown()
    timers.advance(minutes=11)

    r = client.post("/api/admin/deadlines/scan", headers=auth(99, admin=True))
    assert r.status_code == 200
    assert r.json()["auto_confirmed"] == 1
    assert r.json()["skipped"] is False

    snap = client.get(f"/api/matches/{bracket['semi1'].id}", headers=auth(ALICE)).json()
    assert snap["status"] == "completed"
    assert snap["resolved_reason"] == "auto_confirmed"


def test_engine_errors_map_to_http():
    conflict = http_error(ConcurrencyConflict())
    assert conflict.status_code == 409
    assert conflict.detail == "CONCURRENCY_CONFLICT: Please refresh and try again"

    invalid = http_error(InvalidState("Match 7 is not live"))
    assert (invalid.status_code, invalid.detail) == (409, "INVALID_STATE: Match 7 is not live")
