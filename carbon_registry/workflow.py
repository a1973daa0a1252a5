"""Approval workflow: the authoritative project state machine.

Every transition is checked against :data:`lifecycle.TRANSITIONS`, gated by
the caller's capability and persisted through the store's compare-and-swap.
Ledger work is delegated to the :class:`~carbon_registry.engine.ReconciliationEngine`;
approval schedules registration in the background and returns immediately.
"""
import math
import secrets

import structlog
from web3 import Web3

from . import accounts
from .engine import check_retirement, is_well_formed_address
from .errors import (
    CapabilityMissing,
    Indeterminate,
    InvalidStateTransition,
    LedgerRejected,
    LedgerUnavailableError,
    PreconditionFailed,
    RegistryError,
)
from .ipfs import PinningError
from .lifecycle import Action, LifecycleState, next_state, state_from_external
from .models import DecisionRecord, Evidence, Project
from .utils import canonical_json, sha256_hex, utcnow

logger = structlog.get_logger(__name__)

OWNER_EDITABLE_STATES = (LifecycleState.SUBMITTED, LifecycleState.APPROVED, LifecycleState.REGISTRATION_FAILED)


def run_inline(fn, *args):
    return fn(*args)


def new_project_id(now) -> str:
    return f"PROJ_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


def _positive_int(value, field):
    if isinstance(value, bool) or not isinstance(value, int):
        raise PreconditionFailed(f"{field} must be an integer")
    if value < 0:
        raise PreconditionFailed(f"{field} must be >= 0")
    return value


class ApprovalWorkflow:
    def __init__(self, store, engine, identity, evidence, ledger=None, pinner=None, schedule=None, clock=utcnow):
        self.store = store
        self.engine = engine
        self.identity = identity
        self.evidence = evidence
        self.ledger = ledger
        self.pinner = pinner
        self.schedule = schedule or run_inline
        self.clock = clock

    # ---- guards ----
    def _require(self, caller_id, capability):
        if not caller_id or not self.identity.has_capability(caller_id, capability):
            raise CapabilityMissing(caller_id, capability)

    @staticmethod
    def _transition(project: Project, action: Action) -> LifecycleState:
        try:
            return next_state(project.state, action)
        except InvalidStateTransition as exc:
            exc.project = project
            raise

    # ---- submission ----
    def submit_project(self, submitter_id, name, credits_claimed, owner_address=None, ecosystem_type="",
                       location=None, area_hectares=0.0, metadata=None) -> Project:
        self._require(submitter_id, accounts.SUBMIT)
        name = (name or "").strip()
        if not name:
            raise PreconditionFailed("name is required")
        credits_claimed = _positive_int(credits_claimed, "credits_claimed")
        if owner_address is not None:
            if not is_well_formed_address(owner_address):
                raise PreconditionFailed("owner_address is not a valid address")
            owner_address = Web3.to_checksum_address(owner_address)
        try:
            area_hectares = float(area_hectares or 0.0)
        except (TypeError, ValueError):
            raise PreconditionFailed("area_hectares must be a number") from None

        now = self.clock()
        project = Project(
            project_id=new_project_id(now),
            name=name,
            credits_claimed=credits_claimed,
            owner_address=owner_address,
            ecosystem_type=ecosystem_type or "",
            location=dict(location or {}),
            area_hectares=area_hectares,
            metadata=dict(metadata or {}),
            submitted_by=submitter_id,
            submitted_at=now,
            updated_at=now,
        )
        project = self.store.create(project)
        logger.info("project_submitted", project_id=project.project_id, submitted_by=submitter_id,
                    credits_claimed=credits_claimed)
        return project

    def submit_evidence(self, project_id, inspector_id, payload=None, content=None, filename=None) -> Evidence:
        self._require(inspector_id, accounts.EVIDENCE)
        project = self.store.load(project_id)
        if project.state != LifecycleState.SUBMITTED:
            raise PreconditionFailed(f"evidence is accepted only while SUBMITTED, project is {project.state.value}",
                                     project)
        if (payload is None) == (content is None):
            raise PreconditionFailed("exactly one of payload or file content is required", project)

        if content is not None:
            digest, kind = sha256_hex(content), "file"
        else:
            if not isinstance(payload, dict) or not payload:
                raise PreconditionFailed("payload must be a non-empty object", project)
            digest, kind = sha256_hex(canonical_json(payload).encode("utf-8")), "field_data"

        ev = Evidence(project_id=project_id, submitted_by=inspector_id, sha256_hex=digest,
                      created_at=self.clock(), kind=kind, payload=dict(payload or {}), filename=filename)
        evidence_id = self.evidence.store(ev, content)
        logger.info("evidence_submitted", project_id=project_id, evidence_id=evidence_id, sha256_hex=digest,
                    kind=kind)
        return self.evidence.fetch(evidence_id)

    def set_owner_address(self, project_id, caller_id, address) -> Project:
        self._require(caller_id, accounts.SUBMIT)
        project = self.store.load(project_id)
        if project.state not in OWNER_EDITABLE_STATES or project.pending_operation is not None:
            raise PreconditionFailed(f"owner_address is immutable in state {project.state.value}", project)
        if not is_well_formed_address(address):
            raise PreconditionFailed("owner_address is not a valid address", project)

        updated = self.store.compare_and_swap(
            project_id, project.version,
            project.evolve(owner_address=Web3.to_checksum_address(address), updated_at=self.clock()))
        logger.info("owner_address_set", project_id=project_id, owner_address=updated.owner_address)
        if updated.state == LifecycleState.APPROVED:
            # approval was waiting on an owner
            self.schedule(self._register_in_background, project_id)
        return updated

    # ---- decisions ----
    def approve(self, project_id, approver_id, decision=None) -> Project:
        """SUBMITTED -> APPROVED, then schedule on-ledger registration.

        ``decision`` may carry ``comments``, ``evidence_ids`` and ``measured``
        quantities; a measured ``co2_estimate`` replaces credits_claimed with
        its floor.
        """
        self._require(approver_id, accounts.APPROVE)
        decision = decision or {}
        project = self.store.load(project_id)
        target = self._transition(project, Action.APPROVE)

        measured = dict(decision.get("measured") or {})
        credits = project.credits_claimed
        co2 = measured.get("co2_estimate")
        if co2 is not None:
            if isinstance(co2, bool) or not isinstance(co2, (int, float)) or not math.isfinite(co2) or co2 < 0:
                raise PreconditionFailed("co2_estimate must be a non-negative number", project)
            credits = math.floor(co2)
        if credits <= 0:
            raise PreconditionFailed("credits_claimed must be > 0 to approve", project)

        evidence_ids = tuple(str(e) for e in decision.get("evidence_ids") or ())
        for evidence_id in evidence_ids:
            if self.evidence.fetch(evidence_id).project_id != project_id:
                raise PreconditionFailed(f"evidence {evidence_id} belongs to another project", project)

        now = self.clock()
        record = DecisionRecord(outcome=LifecycleState.APPROVED.value, decided_by=approver_id, decided_at=now,
                                comments=decision.get("comments") or "", measured=measured,
                                evidence_ids=evidence_ids)
        metadata_uri = self._pin_metadata(project, credits, record) or project.metadata_uri
        approved = self.store.compare_and_swap(project_id, project.version, project.evolve(
            state=target,
            credits_claimed=credits,
            decisions=project.decisions + (record,),
            approved_at=now,
            metadata_uri=metadata_uri,
            updated_at=now,
        ))
        logger.info("project_approved", project_id=project_id, approved_by=approver_id, credits_claimed=credits)
        self.schedule(self._register_in_background, project_id)
        return approved

    def reject(self, project_id, approver_id, reason) -> Project:
        self._require(approver_id, accounts.REJECT)
        project = self.store.load(project_id)
        target = self._transition(project, Action.REJECT)
        reason = (reason or "").strip()
        if not reason:
            raise PreconditionFailed("reason is required", project)
        now = self.clock()
        record = DecisionRecord(outcome=LifecycleState.REJECTED.value, decided_by=approver_id, decided_at=now,
                                comments=reason)
        rejected = self.store.compare_and_swap(project_id, project.version, project.evolve(
            state=target, decisions=project.decisions + (record,), updated_at=now))
        logger.info("project_rejected", project_id=project_id, rejected_by=approver_id)
        return rejected

    # ---- ledger-backed operations ----
    def retry_registration(self, project_id, caller_id) -> Project:
        self._require(caller_id, accounts.RETRY)
        project = self.store.load(project_id)
        target = self._transition(project, Action.RETRY_REGISTRATION)
        self.store.compare_and_swap(project_id, project.version,
                                    project.evolve(state=target, updated_at=self.clock()))
        logger.info("registration_retry", project_id=project_id, caller_id=caller_id)
        return self.engine.register_on_ledger(project_id)

    def retire(self, project_id, caller_id, amount, reason) -> Project:
        self._require(caller_id, accounts.RETIRE)
        project = self.store.load(project_id)
        if project.pending_operation is None and project.state != LifecycleState.REGISTERED:
            raise InvalidStateTransition(project.state, "retire", project)
        return self.engine.retire_credits(project_id, amount, reason, requested_by=caller_id)

    def retry_retirement(self, project_id, caller_id, amount, reason) -> Project:
        self._require(caller_id, accounts.RETRY)
        project = self.store.load(project_id)
        target = self._transition(project, Action.RETRY_RETIREMENT)
        check_retirement(project, amount, reason)
        self.store.compare_and_swap(project_id, project.version,
                                    project.evolve(state=target, updated_at=self.clock()))
        logger.info("retirement_retry", project_id=project_id, caller_id=caller_id, amount=amount)
        return self.engine.retire_credits(project_id, amount, reason, requested_by=caller_id)

    # ---- queries ----
    def get_project_status(self, project_id) -> Project:
        return self.store.load(project_id)

    def list_projects(self, state=None) -> list:
        if state is not None:
            try:
                state = state_from_external(state)
            except ValueError as e:
                raise PreconditionFailed(str(e)) from None
        return list(self.store.list_projects(state))

    def decision_history(self, project_id) -> list:
        return list(self.store.load(project_id).decisions)

    def list_evidence(self, project_id) -> list:
        self.store.load(project_id)
        return list(self.evidence.list_for_project(project_id))

    def ledger_view(self, project_id):
        project = self.store.load(project_id)
        if project.ledger_ref is None:
            raise PreconditionFailed(f"project is not on the ledger (state {project.state.value})", project)
        return self.ledger.read_project_state(project.ledger_ref)

    def retirement_report(self) -> dict:
        rows = []
        for p in self.store.list_projects():
            for r in p.retirements:
                rows.append({
                    "project_id": p.project_id,
                    "name": p.name,
                    "owner_address": p.owner_address,
                    "token_id": p.ledger_ref.token_id if p.ledger_ref else None,
                    "amount": r.amount,
                    "reason": r.reason,
                    "requested_by": r.requested_by,
                    "retired_at": r.retired_at,
                    "tx_hash": r.tx_hash,
                    "block": r.block,
                })
        rows.sort(key=lambda row: row["retired_at"], reverse=True)
        return {"count": len(rows), "total_retired": sum(r["amount"] for r in rows), "retirements": rows}

    def statistics(self) -> dict:
        by_state = {s.value: 0 for s in LifecycleState}
        registered = retired = in_flight = 0
        for p in self.store.list_projects():
            by_state[p.state.value] += 1
            if p.ledger_ref is not None:
                registered += p.credits_claimed
                retired += p.credits_retired
            if p.pending_operation is not None:
                in_flight += 1
        out = {
            "projects": sum(by_state.values()),
            "by_state": by_state,
            "credits_registered": registered,
            "credits_retired": retired,
            "credits_active": registered - retired,
            "operations_in_flight": in_flight,
            "ledger": None,
        }
        stats = getattr(self.ledger, "statistics", None)
        if stats is not None:
            try:
                out["ledger"] = stats()
            except LedgerUnavailableError as e:
                logger.warning("ledger_statistics_unavailable", error=str(e))
        return out

    # ---- background ----
    def _pin_metadata(self, project, credits, record):
        if self.pinner is None:
            return None
        doc = {
            "project_id": project.project_id,
            "name": project.name,
            "ecosystem_type": project.ecosystem_type,
            "location": project.location,
            "area_hectares": project.area_hectares,
            "credits": credits,
            "metadata": project.metadata,
            "approved_by": record.decided_by,
            "measured": record.measured,
        }
        try:
            return self.pinner.pin_json(doc, name=project.project_id)
        except PinningError as e:
            # registration proceeds without a metadata URI
            logger.warning("metadata_pin_failed", project_id=project.project_id, error=str(e))
            return None

    def _register_in_background(self, project_id):
        log = logger.bind(project_id=project_id)
        try:
            project = self.engine.register_on_ledger(project_id)
        except Indeterminate:
            log.info("registration_pending")
            return None
        except LedgerRejected as e:
            log.warning("registration_rejected", reason=e.reason)
            return None
        except RegistryError as e:
            log.warning("registration_not_started", error=e.message, code=e.code)
            return None
        except Exception:
            log.exception("registration_task_crashed")
            raise
        log.info("registration_completed", token_id=project.ledger_ref.token_id)
        return project
