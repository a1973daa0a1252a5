# api.py — Flask HTTP surface over the approval workflow
#
# API base: http://127.0.0.1:5000/api/v1
#
# Mutating calls carry "caller_id" and "signature_hex": an Ed25519 signature
# by the caller's registered key over the canonical JSON of every other body
# field (sorted keys, compact separators).
import json
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import structlog
from flask import Flask, Response, request

from . import accounts
from .accounts import MongoAccountDirectory
from .config import Settings
from .engine import ReconciliationEngine
from .errors import (
    CapabilityMissing,
    LedgerUnavailableError,
    PreconditionFailed,
    RegistryError,
    SignatureInvalid,
)
from .ipfs import PinataPinner
from .lifecycle import allowed_actions
from .mongo_ledger import MongoLedger
from .mongo_store import MongoEvidenceStore, MongoProjectStore, connect
from .sweeper import ReconciliationSweeper, SweepInProgress
from .utils import canonical_json, sha256_hex, to_public, utcnow, verify_ed25519
from .web3_ledger import Web3LedgerClient
from .workflow import ApprovalWorkflow

logger = structlog.get_logger(__name__)

API = "/api/v1"


@dataclass
class Services:
    settings: Settings
    workflow: ApprovalWorkflow
    engine: ReconciliationEngine
    sweeper: ReconciliationSweeper
    identity: object
    ledger: object
    executor: object = None


# --------------- JSON helpers ---------------
def j(data, status=200):
    return Response(json.dumps(to_public(data), default=str), status=status, mimetype="application/json")


def j_err(code, message, status=400, project=None):
    body = {"error": code, "message": message}
    if project is not None:
        body["project"] = project_view(project)
    return j(body, status)


def project_view(project) -> dict:
    out = to_public(project)
    out["credits_remaining"] = project.credits_remaining
    out["allowed_actions"] = [a.value for a in allowed_actions(project.state)]
    return out


# --------------- wiring ---------------
def build_services(settings, store=None, ledger=None, evidence=None, identity=None, pinner=None,
                   schedule=None, clock=utcnow) -> Services:
    """Real adapters for whatever was not passed in."""
    dry_run = ledger is None and not settings.chain_configured
    if store is None or evidence is None or identity is None or dry_run:
        _, db = connect(settings)
        if store is None:
            store = MongoProjectStore(db)
            store.ensure_indexes()
        if evidence is None:
            evidence = MongoEvidenceStore(db, settings.evidence_dir)
            evidence.ensure_indexes()
        if identity is None:
            identity = MongoAccountDirectory(db)
            identity.ensure_indexes()

    if dry_run:
        logger.warning("ledger_dry_run", reason="WEB3_RPC_URL / PRIVATE_KEY / REGISTRY_CONTRACT_ADDRESS not set",
                       db=settings.db_name)
        ledger = MongoLedger(db)
        ledger.ensure_indexes()
    elif ledger is None:
        ledger = Web3LedgerClient.from_settings(settings)

    if pinner is None and settings.pinata_jwt:
        pinner = PinataPinner(settings.pinata_jwt, settings.pinata_api_url)

    executor = None
    if schedule is None:
        executor = ThreadPoolExecutor(max_workers=settings.registration_workers, thread_name_prefix="register")
        schedule = executor.submit

    engine = ReconciliationEngine(store, ledger, ledger_timeout=settings.ledger_timeout_seconds,
                                  grace_period=settings.reconcile_grace_seconds, clock=clock)
    workflow = ApprovalWorkflow(store, engine, identity, evidence, ledger=ledger, pinner=pinner,
                                schedule=schedule, clock=clock)
    sweeper = ReconciliationSweeper(engine, interval=settings.reconcile_interval_seconds)
    return Services(settings=settings, workflow=workflow, engine=engine, sweeper=sweeper,
                    identity=identity, ledger=ledger, executor=executor)


def create_app(settings=None, **adapters) -> Flask:
    settings = settings or Settings.from_env()
    services = build_services(settings, **adapters)
    wf = services.workflow

    app = Flask(__name__)
    app.extensions["carbon_registry"] = services

    # --------------- request plumbing ---------------
    @app.before_request
    def bind_request_context():
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=uuid.uuid4().hex[:12], path=request.path)

    @app.errorhandler(RegistryError)
    def registry_error(exc):
        log = logger.info if exc.http_status < 500 else logger.error
        log("request_failed", error=exc.code, message=exc.message, status=exc.http_status)
        return j_err(exc.code, exc.message, exc.http_status, exc.project)

    @app.errorhandler(LedgerUnavailableError)
    def ledger_unavailable(exc):
        logger.warning("ledger_unavailable", error=str(exc))
        return j_err("ledger_unavailable", str(exc), 503)

    @app.errorhandler(SweepInProgress)
    def sweep_busy(exc):
        return j_err("sweep_in_progress", str(exc), 409)

    def check_signature(fields: dict, signature_hex):
        if not settings.require_signatures:
            return
        caller_id = fields.get("caller_id")
        pem = services.identity.public_key_pem(caller_id) if caller_id else None
        if not pem:
            raise SignatureInvalid(f"unknown caller: {caller_id}")
        if not signature_hex or not verify_ed25519(pem, canonical_json(fields).encode("utf-8"), signature_hex):
            raise SignatureInvalid("invalid signature")

    def signed_body() -> dict:
        body = request.get_json(force=True, silent=True)
        if not isinstance(body, dict):
            raise PreconditionFailed("JSON object body required")
        body = dict(body)
        sig = body.pop("signature_hex", None)
        check_signature(body, sig)
        return body

    # --------------- Routes (prefix: /api/v1) ---------------
    @app.get(f"{API}/health")
    def health():
        return j({"ok": True, "ledger": type(services.ledger).__name__, "chain": settings.chain_name})

    # ---- Accounts ----
    @app.post(f"{API}/accounts")
    def create_account():
        body = request.get_json(force=True, silent=True) or {}
        acct = services.identity.create_account(body.get("name"), body.get("role"), body.get("public_key_pem"))
        return j(acct, 201)

    @app.get(f"{API}/accounts")
    def list_accounts():
        return j(services.identity.list_accounts())

    # ---- Projects ----
    @app.post(f"{API}/projects")
    def submit_project():
        body = signed_body()
        project = wf.submit_project(
            body.get("caller_id"),
            body.get("name"),
            body.get("credits_claimed"),
            owner_address=body.get("owner_address"),
            ecosystem_type=body.get("ecosystem_type") or "",
            location=body.get("location"),
            area_hectares=body.get("area_hectares") or 0.0,
            metadata=body.get("metadata"),
        )
        return j(project_view(project), 201)

    @app.get(f"{API}/projects")
    def list_projects():
        return j([project_view(p) for p in wf.list_projects(request.args.get("state"))])

    @app.get(f"{API}/projects/<project_id>")
    def get_project(project_id):
        return j(project_view(wf.get_project_status(project_id)))

    @app.put(f"{API}/projects/<project_id>/owner")
    def set_owner(project_id):
        body = signed_body()
        return j(project_view(wf.set_owner_address(project_id, body.get("caller_id"), body.get("owner_address"))))

    # ---- Evidence ----
    @app.post(f"{API}/projects/<project_id>/evidence")
    def submit_evidence(project_id):
        body = signed_body()
        ev = wf.submit_evidence(project_id, body.get("caller_id"), payload=body.get("payload"))
        return j(ev, 201)

    @app.post(f"{API}/projects/<project_id>/evidence/upload")
    def upload_evidence(project_id):
        if "file" not in request.files:
            raise PreconditionFailed("file is required")
        f = request.files["file"]
        content = f.read()
        caller_id = request.form.get("caller_id")
        # the signature covers the file digest, not the raw bytes
        check_signature({"caller_id": caller_id, "project_id": project_id, "sha256_hex": sha256_hex(content)},
                        request.form.get("signature_hex"))
        ev = wf.submit_evidence(project_id, caller_id, content=content, filename=f.filename or "evidence.bin")
        return j(ev, 201)

    @app.get(f"{API}/projects/<project_id>/evidence")
    def list_evidence(project_id):
        return j(wf.list_evidence(project_id))

    # ---- Decisions ----
    @app.post(f"{API}/projects/<project_id>/approve")
    def approve(project_id):
        body = signed_body()
        decision = {k: body.get(k) for k in ("comments", "measured", "evidence_ids") if body.get(k) is not None}
        wf.approve(project_id, body.get("caller_id"), decision)
        # registration runs in the background; report whatever state it reached
        return j(project_view(wf.get_project_status(project_id)), 202)

    @app.post(f"{API}/projects/<project_id>/reject")
    def reject(project_id):
        body = signed_body()
        return j(project_view(wf.reject(project_id, body.get("caller_id"), body.get("reason"))))

    @app.get(f"{API}/projects/<project_id>/decisions")
    def decisions(project_id):
        return j(wf.decision_history(project_id))

    # ---- Ledger-backed ----
    @app.post(f"{API}/projects/<project_id>/retry-registration")
    def retry_registration(project_id):
        body = signed_body()
        return j(project_view(wf.retry_registration(project_id, body.get("caller_id"))))

    @app.post(f"{API}/projects/<project_id>/retire")
    def retire(project_id):
        body = signed_body()
        project = wf.retire(project_id, body.get("caller_id"), body.get("amount"), body.get("reason"))
        return j(project_view(project))

    @app.post(f"{API}/projects/<project_id>/retry-retirement")
    def retry_retirement(project_id):
        body = signed_body()
        project = wf.retry_retirement(project_id, body.get("caller_id"), body.get("amount"), body.get("reason"))
        return j(project_view(project))

    @app.get(f"{API}/projects/<project_id>/ledger")
    def ledger_view(project_id):
        return j(wf.ledger_view(project_id))

    # ---- Reports / operations ----
    @app.get(f"{API}/reports/retirements")
    def report_retirements():
        return j(wf.retirement_report())

    @app.get(f"{API}/stats")
    def stats():
        return j(wf.statistics())

    @app.post(f"{API}/reconcile")
    def reconcile():
        body = signed_body()
        caller_id = body.get("caller_id")
        if not caller_id or not services.identity.has_capability(caller_id, accounts.RETRY):
            raise CapabilityMissing(caller_id, accounts.RETRY)
        return j(services.sweeper.run_once())

    return app
