import io

import pytest

from carbon_registry.api import create_app
from carbon_registry.config import Settings
from carbon_registry.utils import ed25519_keypair_pem, ed25519_sign_hex, sha256_hex
from carbon_registry.workflow import run_inline
from tests.fakes import OWNER_ADDRESS, StaticIdentity

API = "/api/v1"


@pytest.fixture
def keys():
    return {}


@pytest.fixture
def signed_identity(keys):
    ident = StaticIdentity()
    for caller_id, role in [("owner-1", "Owner"), ("verifier-1", "Verifier"),
                            ("inspector-1", "Inspector"), ("admin-1", "Admin")]:
        sk, pem = ed25519_keypair_pem()
        keys[caller_id] = sk
        ident.add(caller_id, role, pem)
    return ident


@pytest.fixture
def app(store, ledger, evidence, signed_identity, clock):
    settings = Settings(require_signatures=True, reconcile_interval_seconds=0, reconcile_grace_seconds=300)
    app = create_app(settings, store=store, ledger=ledger, evidence=evidence, identity=signed_identity,
                     schedule=run_inline, clock=clock)
    app.testing = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def call(client, keys):
    """Send a body signed by ``caller_id`` (POST unless ``method`` says otherwise)."""
    def send(path, caller_id, sign_as=None, method="post", **fields):
        body = dict(fields, caller_id=caller_id)
        body["signature_hex"] = ed25519_sign_hex(keys[sign_as or caller_id], body)
        return getattr(client, method)(f"{API}{path}", json=body)

    return send


def new_project(call, credits=1000, owner_address=OWNER_ADDRESS):
    resp = call("/projects", "owner-1", name="Seagrass meadow", credits_claimed=credits,
                owner_address=owner_address, ecosystem_type="seagrass")
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def test_health(client):
    body = client.get(f"{API}/health").get_json()
    assert body["ok"] is True
    assert body["ledger"] == "InMemoryLedger"


def test_submit_and_fetch(client, call):
    created = new_project(call)
    assert created["state"] == "SUBMITTED"
    assert created["credits_remaining"] == 1000
    assert set(created["allowed_actions"]) == {"approve", "reject"}

    fetched = client.get(f"{API}/projects/{created['project_id']}").get_json()
    assert fetched["project_id"] == created["project_id"]
    assert fetched["submitted_at"].endswith("Z")


def test_unknown_project_is_404(client):
    resp = client.get(f"{API}/projects/PROJ_missing")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"


def test_bad_signature_is_401(client, call):
    resp = call("/projects", "owner-1", sign_as="verifier-1", name="x", credits_claimed=1)
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "unauthorized"


def test_tampered_body_is_401(client, keys):
    body = {"caller_id": "owner-1", "name": "x", "credits_claimed": 1}
    body["signature_hex"] = ed25519_sign_hex(keys["owner-1"], body)
    body["credits_claimed"] = 1000000
    resp = client.post(f"{API}/projects", json=body)
    assert resp.status_code == 401


def test_unknown_caller_is_401(client, keys):
    body = {"caller_id": "ghost", "name": "x", "credits_claimed": 1}
    body["signature_hex"] = ed25519_sign_hex(keys["owner-1"], body)
    assert client.post(f"{API}/projects", json=body).status_code == 401


def test_missing_capability_is_403(call):
    project = new_project(call)
    resp = call(f"/projects/{project['project_id']}/approve", "owner-1")
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "forbidden"


def test_non_object_body_is_400(client):
    resp = client.post(f"{API}/projects", data="[1, 2]", content_type="application/json")
    assert resp.status_code == 400


def test_full_lifecycle(client, call):
    pid = new_project(call)["project_id"]

    ev = call(f"/projects/{pid}/evidence", "inspector-1", payload={"biomass_t": 41.2})
    assert ev.status_code == 201
    evidence_id = ev.get_json()["evidence_id"]

    early = call(f"/projects/{pid}/retire", "owner-1", amount=10, reason="too soon")
    assert early.status_code == 409
    assert early.get_json()["error"] == "invalid_state_transition"

    approved = call(f"/projects/{pid}/approve", "verifier-1", comments="ok",
                    measured={"co2_estimate": 1000.7}, evidence_ids=[evidence_id])
    assert approved.status_code == 202
    body = approved.get_json()
    assert body["state"] == "REGISTERED"
    assert body["credits_claimed"] == 1000
    assert body["ledger_ref"]["token_id"] == 1

    view = client.get(f"{API}/projects/{pid}/ledger").get_json()
    assert view["credits"] == 1000 and view["credits_retired"] == 0

    partial = call(f"/projects/{pid}/retire", "owner-1", amount=400, reason="airline offsets")
    assert partial.status_code == 200
    assert partial.get_json()["credits_remaining"] == 600

    overdraw = call(f"/projects/{pid}/retire", "owner-1", amount=601, reason="greedy")
    assert overdraw.status_code == 400
    assert overdraw.get_json()["error"] == "precondition_failed"
    assert overdraw.get_json()["project"]["credits_retired"] == 400

    full = call(f"/projects/{pid}/retire", "owner-1", amount=600, reason="the rest")
    assert full.get_json()["state"] == "RETIRED"
    assert full.get_json()["allowed_actions"] == []

    decisions = client.get(f"{API}/projects/{pid}/decisions").get_json()
    assert decisions[0]["evidence_ids"] == [evidence_id]

    report = client.get(f"{API}/reports/retirements").get_json()
    assert report["total_retired"] == 1000 and report["count"] == 2

    stats = client.get(f"{API}/stats").get_json()
    assert stats["by_state"]["RETIRED"] == 1
    assert stats["ledger"]["total_retired"] == 1000


def test_reject(client, call):
    pid = new_project(call)["project_id"]
    resp = call(f"/projects/{pid}/reject", "verifier-1", reason="no baseline")
    assert resp.get_json()["state"] == "REJECTED"
    again = call(f"/projects/{pid}/approve", "verifier-1")
    assert again.status_code == 409


def test_ledger_rejection_is_reported_and_retryable(client, call, ledger):
    pid = new_project(call)["project_id"]
    ledger.script(("reject", "registrar paused"))
    approved = call(f"/projects/{pid}/approve", "verifier-1").get_json()
    assert approved["state"] == "REGISTRATION_FAILED"
    assert approved["last_error"] == "registrar paused"

    retried = call(f"/projects/{pid}/retry-registration", "verifier-1")
    assert retried.status_code == 200
    assert retried.get_json()["state"] == "REGISTERED"


def test_pending_retirement_reports_202_then_reconciles(client, call, ledger, clock):
    pid = new_project(call)["project_id"]
    call(f"/projects/{pid}/approve", "verifier-1")
    ledger.script("timeout")
    pending = call(f"/projects/{pid}/retire", "owner-1", amount=100, reason="x")
    assert pending.status_code == 202
    assert pending.get_json()["project"]["pending_operation"]["kind"] == "RETIRE"

    busy = call(f"/projects/{pid}/retire", "owner-1", amount=100, reason="x")
    assert busy.status_code == 409
    assert busy.get_json()["error"] == "already_in_flight"

    ledger.mine_pending()
    clock.advance(301)
    summary = call("/reconcile", "admin-1")
    assert summary.status_code == 200
    assert summary.get_json()["confirmed"] == 1
    assert client.get(f"{API}/projects/{pid}").get_json()["credits_retired"] == 100


def test_reconcile_requires_retry_capability(call):
    assert call("/reconcile", "inspector-1").status_code == 403


def test_owner_address_update(client, call):
    pid = new_project(call, owner_address=None)["project_id"]
    call(f"/projects/{pid}/approve", "verifier-1")
    assert call(f"/projects/{pid}/owner", "owner-1", owner_address="0x" + "cd" * 20).status_code == 405
    resp = call(f"/projects/{pid}/owner", "owner-1", method="put", owner_address="0x" + "cd" * 20)
    assert resp.status_code == 200
    assert client.get(f"{API}/projects/{pid}").get_json()["state"] == "REGISTERED"


def test_file_upload(client, call, keys):
    pid = new_project(call)["project_id"]
    content = b"drone survey tiles"
    fields = {"caller_id": "inspector-1", "project_id": pid, "sha256_hex": sha256_hex(content)}
    data = {
        "caller_id": "inspector-1",
        "signature_hex": ed25519_sign_hex(keys["inspector-1"], fields),
        "file": (io.BytesIO(content), "survey.bin"),
    }
    resp = client.post(f"{API}/projects/{pid}/evidence/upload", data=data, content_type="multipart/form-data")
    assert resp.status_code == 201
    assert resp.get_json()["sha256_hex"] == sha256_hex(content)
    listed = client.get(f"{API}/projects/{pid}/evidence").get_json()
    assert [e["filename"] for e in listed] == ["survey.bin"]


def test_upload_signature_must_match_content(client, call, keys):
    pid = new_project(call)["project_id"]
    fields = {"caller_id": "inspector-1", "project_id": pid, "sha256_hex": sha256_hex(b"original")}
    data = {
        "caller_id": "inspector-1",
        "signature_hex": ed25519_sign_hex(keys["inspector-1"], fields),
        "file": (io.BytesIO(b"swapped"), "survey.bin"),
    }
    resp = client.post(f"{API}/projects/{pid}/evidence/upload", data=data, content_type="multipart/form-data")
    assert resp.status_code == 401


def test_list_by_state(client, call):
    a = new_project(call)["project_id"]
    new_project(call)
    call(f"/projects/{a}/approve", "verifier-1")
    registered = client.get(f"{API}/projects?state=registered").get_json()
    assert [p["project_id"] for p in registered] == [a]
    assert client.get(f"{API}/projects?state=bogus").status_code == 400


def test_accounts(client):
    _, pem = ed25519_keypair_pem()
    created = client.post(f"{API}/accounts", json={"name": "Field team", "role": "Inspector",
                                                   "public_key_pem": pem})
    assert created.status_code == 201
    assert created.get_json()["role"] == "INSPECTOR"
    assert client.post(f"{API}/accounts", json={"name": "x"}).status_code == 400
    names = [a["name"] for a in client.get(f"{API}/accounts").get_json()]
    assert "Field team" in names


def test_signatures_can_be_disabled(store, ledger, evidence, signed_identity, clock):
    settings = Settings(require_signatures=False, reconcile_interval_seconds=0)
    app = create_app(settings, store=store, ledger=ledger, evidence=evidence, identity=signed_identity,
                     schedule=run_inline, clock=clock)
    resp = app.test_client().post(f"{API}/projects", json={"caller_id": "owner-1", "name": "x",
                                                          "credits_claimed": 5})
    assert resp.status_code == 201
