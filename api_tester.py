# api_tester.py
# E2E tester for a running registry: accounts, submission, evidence, approval,
# registration, partial + full retirement, rejection, reports.
#
# Run:
#   python app.py
#   python api_tester.py --base http://127.0.0.1:5000
#
# Optional:
#   --owner-address 0x...   (defaults to a throwaway address)
#   --wait 120              (seconds to wait for registration)

import argparse
import json
import sys
import time
from datetime import datetime, timezone

import requests

from carbon_registry.utils import ed25519_keypair_pem, ed25519_sign_hex, sha256_hex

# ---- tiny utils -------------------------------------------------------------


def p(obj):
    print(json.dumps(obj, indent=2))


def die(msg, code=2):
    print("❌", msg)
    sys.exit(code)


def must(resp, *expected):
    expected = expected or (200, 201)
    if resp.status_code not in expected:
        try:
            body = resp.json()
        except ValueError:
            body = resp.text
        die(f"[{resp.request.method} {resp.request.url}] expected {expected}, got {resp.status_code}\n{body}", 1)
    try:
        return resp.json()
    except ValueError:
        die("Response is not JSON", 1)


def request_json(base, method, path, payload=None, ok=(200, 201)):
    r = requests.request(method, base.rstrip("/") + path, json=payload, timeout=120)
    return must(r, *ok)


class Caller:
    """A registry account that signs its requests."""

    def __init__(self, base, name, role):
        self.base = base
        self.sk, pub_pem = ed25519_keypair_pem()
        acct = request_json(base, "POST", "/api/v1/accounts",
                            {"name": name, "role": role, "public_key_pem": pub_pem})
        self.id = acct["id"]
        print(f"{role:<9} id: {self.id}")

    def call(self, method, path, ok=(200, 201), **fields):
        body = {"caller_id": self.id, **fields}
        body["signature_hex"] = ed25519_sign_hex(self.sk, {"caller_id": self.id, **fields})
        return request_json(self.base, method, path, body, ok=ok)

    def upload(self, project_id, filename, content: bytes):
        signed = {"caller_id": self.id, "project_id": project_id, "sha256_hex": sha256_hex(content)}
        r = requests.post(f"{self.base}/api/v1/projects/{project_id}/evidence/upload",
                          data={"caller_id": self.id, "signature_hex": ed25519_sign_hex(self.sk, signed)},
                          files={"file": (filename, content, "application/octet-stream")}, timeout=60)
        return must(r, 201)


def wait_for_state(base, project_id, states, timeout, reconciler=None):
    deadline = time.time() + timeout
    while True:
        project = request_json(base, "GET", f"/api/v1/projects/{project_id}")
        if project["state"] in states and not project.get("pending_operation"):
            return project
        if time.time() > deadline:
            die(f"project {project_id} stuck in {project['state']} (pending={project.get('pending_operation')})", 1)
        if reconciler is not None and project.get("pending_operation"):
            reconciler.call("POST", "/api/v1/reconcile", ok=(200, 409))
        time.sleep(3)


# ---- main -------------------------------------------------------------------

def main():
    ap = argparse.ArgumentParser(description="Registry E2E tester")
    ap.add_argument("--base", required=True, help="API base, e.g. http://127.0.0.1:5000")
    ap.add_argument("--owner-address", help="wallet that receives the credits")
    ap.add_argument("--wait", type=int, default=120, help="seconds to wait for on-ledger registration")
    args = ap.parse_args()

    base = args.base.rstrip("/")
    owner_address = args.owner_address or "0x" + sha256_hex(str(time.time()).encode())[:40]

    print("== Registry E2E Tester ==")
    print("Base:", base)
    print("Time:", datetime.now(timezone.utc).isoformat())

    health = request_json(base, "GET", "/api/v1/health")
    assert health.get("ok") is True
    print("Health OK, ledger:", health.get("ledger"))

    owner = Caller(base, "Mangrove Trust", "Owner")
    verifier = Caller(base, "Coastal Verifiers", "Verifier")
    inspector = Caller(base, "Field Inspector", "Inspector")
    admin = Caller(base, "Registry Admin", "Admin")

    # ---- submission + evidence ----
    project = owner.call("POST", "/api/v1/projects", name="Sundarbans Mangrove Restoration",
                         credits_claimed=1200, owner_address=owner_address, ecosystem_type="Mangrove",
                         location={"state_ut": "West Bengal", "district": "South 24 Parganas"},
                         area_hectares=45.5, metadata={"species_planted": "Rhizophora mucronata"})
    pid = project["project_id"]
    assert project["state"] == "SUBMITTED"
    print("Project submitted:", pid)

    ev = inspector.call("POST", f"/api/v1/projects/{pid}/evidence",
                        payload={"survival_rate": 0.82, "plots_sampled": 12, "visit": "2025-08-30"})
    print("Field evidence:", ev["evidence_id"], ev["sha256_hex"])
    up = inspector.upload(pid, "plot_survey.csv", b"plot,trees,alive\n1,400,331\n2,380,309\n")
    print("File evidence :", up["evidence_id"], up["sha256_hex"])

    # retiring before registration is refused
    early = owner.call("POST", f"/api/v1/projects/{pid}/retire", ok=(409,), amount=1, reason="too early")
    assert early["error"] == "invalid_state_transition"

    # ---- approval -> background registration ----
    approved = verifier.call("POST", f"/api/v1/projects/{pid}/approve", ok=(202,),
                             comments="field survey consistent", measured={"co2_estimate": 1000.7},
                             evidence_ids=[ev["evidence_id"], up["evidence_id"]])
    print("Approved, state now:", approved["state"])
    registered = wait_for_state(base, pid, ("REGISTERED", "REGISTRATION_FAILED"), args.wait, reconciler=admin)
    if registered["state"] != "REGISTERED":
        die(f"registration failed: {registered.get('last_error')}", 1)
    assert registered["credits_claimed"] == 1000
    print("Registered, token:", registered["ledger_ref"]["token_id"], "tx:", registered["ledger_ref"]["last_tx_hash"])

    chain = request_json(base, "GET", f"/api/v1/projects/{pid}/ledger")
    print("On-ledger view:"); p(chain)
    assert chain["credits"] == 1000

    # ---- retirement ----
    part = owner.call("POST", f"/api/v1/projects/{pid}/retire", ok=(200, 202), amount=400, reason="steel batch A")
    part = part.get("project", part)  # 202 carries the project under "project"
    if part["state"] != "REGISTERED" or part.get("pending_operation"):
        part = wait_for_state(base, pid, ("REGISTERED",), args.wait, reconciler=admin)
    assert part["credits_retired"] == 400
    print("Partial retirement OK, remaining:", part["credits_remaining"])

    too_much = owner.call("POST", f"/api/v1/projects/{pid}/retire", ok=(400,), amount=601, reason="overdraw")
    assert too_much["error"] == "precondition_failed"

    full = owner.call("POST", f"/api/v1/projects/{pid}/retire", ok=(200, 202), amount=600, reason="steel batch B")
    full = full.get("project", full)
    if full["state"] != "RETIRED":
        full = wait_for_state(base, pid, ("RETIRED",), args.wait, reconciler=admin)
    assert full["credits_retired"] == 1000
    print("Full retirement OK, state:", full["state"])

    # ---- rejection path ----
    other = owner.call("POST", "/api/v1/projects", name="Seagrass Pilot", credits_claimed=50,
                       owner_address=owner_address)
    rejected = verifier.call("POST", f"/api/v1/projects/{other['project_id']}/reject",
                             reason="insufficient baseline data")
    assert rejected["state"] == "REJECTED"
    again = verifier.call("POST", f"/api/v1/projects/{other['project_id']}/approve", ok=(409,))
    assert again["error"] == "invalid_state_transition"
    print("Rejection path OK")

    # ---- reports ----
    history = request_json(base, "GET", f"/api/v1/projects/{pid}/decisions")
    assert history and history[0]["outcome"] == "APPROVED"
    rep = request_json(base, "GET", "/api/v1/reports/retirements")
    print("Retirements report sample:")
    p(rep if len(json.dumps(rep)) < 1500 else {"count": rep["count"], "note": "large payload ok"})
    print("Stats:"); p(request_json(base, "GET", "/api/v1/stats"))

    print("\n✅ ALL CHECKS PASSED")
    sys.exit(0)


if __name__ == "__main__":
    try:
        main()
    except requests.RequestException as e:
        die(f"HTTP error: {e}", 1)
    except AssertionError as e:
        die(f"Assert failed: {e}", 2)
