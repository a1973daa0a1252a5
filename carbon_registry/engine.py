"""Reconciliation engine: push approved offchain decisions to the ledger.

Every ledger call follows the same write-ahead pattern:

1. persist a ``pending_operation`` marker (compare-and-swap) keyed by a
   deterministic idempotency key,
2. dispatch through the LedgerClient and record the call handle,
3. wait a bounded time for the outcome and apply it,
4. leave the marker in place when the outcome is not known; the sweep
   (:meth:`ReconciliationEngine.reconcile_indeterminate`) converges it later
   from persisted state alone.

A key is never re-dispatched while the ledger reports it pending or
confirmed. The registry contract refuses to execute a key twice, which is
what makes the sweep's re-dispatch of never-seen keys safe.
"""
from dataclasses import replace
from datetime import timedelta

import structlog
from web3 import Web3

from .errors import (
    AlreadyInFlight,
    Indeterminate,
    InvariantViolation,
    LedgerError,
    LedgerRejected,
    LedgerRejectedError,
    LedgerUnavailableError,
    PreconditionFailed,
    RegistryError,
    VersionConflict,
)
from .lifecycle import Action, LifecycleState, OperationKind, next_state
from .models import LedgerRef, PendingOperation, Project, RetirementRecord
from .ports import Confirmed, NotFound, Pending, RegisterProject, Rejected, RetireCredits
from .utils import sha256_hex, utcnow

logger = structlog.get_logger(__name__)

FAILED_STATES = (LifecycleState.REGISTRATION_FAILED, LifecycleState.RETIREMENT_FAILED)


def registration_key(project_id: str) -> str:
    return "0x" + sha256_hex(f"{project_id}|register".encode("utf-8"))


def retirement_key(project_id: str, amount: int, sequence: int) -> str:
    # sequence = confirmed retirements so far; a retry of the same retirement
    # reuses the key, a later retirement of the same amount does not
    return "0x" + sha256_hex(f"{project_id}|retire|{amount}|{sequence}".encode("utf-8"))


def is_well_formed_address(address) -> bool:
    return bool(address) and Web3.is_address(address)


def check_retirement(project, amount, reason) -> str:
    """Raise PreconditionFailed unless ``amount`` and ``reason`` can be retired; returns the stripped reason."""
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise PreconditionFailed("amount must be a positive integer", project)
    if amount > project.credits_remaining:
        raise PreconditionFailed(f"amount {amount} exceeds remaining credits {project.credits_remaining}", project)
    reason = (reason or "").strip()
    if not reason:
        raise PreconditionFailed("reason is required", project)
    return reason


class ReconciliationEngine:
    def __init__(self, store, ledger, ledger_timeout: float = 90.0, grace_period: float = 300.0, clock=utcnow):
        self._store = store
        self._ledger = ledger
        self._timeout = ledger_timeout
        self._grace = timedelta(seconds=grace_period)
        self._clock = clock
        self._log = logger.bind(component="reconciliation_engine")

    # ------------------------------------------------------------------ register
    def register_on_ledger(self, project_id: str) -> Project:
        """Mint the project on the ledger and record the reference.

        Returns the REGISTERED project. Raises PreconditionFailed,
        AlreadyInFlight, VersionConflict, LedgerRejected (project now
        REGISTRATION_FAILED) or Indeterminate (marker kept for the sweep).
        """
        project = self._store.load(project_id)
        key = registration_key(project_id)
        marker = project.pending_operation
        if marker is not None:
            if marker.kind == OperationKind.REGISTER and marker.idempotency_key == key:
                self._log.info("ledger_requery_in_flight", project_id=project_id, idempotency_key=key)
                return self._result(self._resolve(project, redispatch=False))
            raise AlreadyInFlight(f"{marker.kind.value} operation already in flight", project)

        if project.state == LifecycleState.REGISTERED:
            return project
        if project.state != LifecycleState.APPROVED:
            raise PreconditionFailed(f"registration requires state APPROVED, project is {project.state.value}", project)
        if not is_well_formed_address(project.owner_address):
            raise PreconditionFailed("owner_address missing or malformed", project)
        if project.credits_claimed <= 0:
            raise PreconditionFailed("credits_claimed must be > 0", project)

        marker = PendingOperation(kind=OperationKind.REGISTER, requested_at=self._clock(), idempotency_key=key)
        return self._result(self._start(project, marker))

    # ------------------------------------------------------------------ retire
    def retire_credits(self, project_id: str, amount: int, reason: str, requested_by=None) -> Project:
        """Burn ``amount`` credits of a registered project on the ledger.

        Never partially applied: on rejection ``credits_retired`` is
        unchanged and the project moves to RETIREMENT_FAILED.
        """
        project = self._store.load(project_id)
        marker = project.pending_operation
        if marker is not None:
            # never queued behind the in-flight call; the sweep settles it
            raise AlreadyInFlight(f"{marker.kind.value} operation already in flight", project)

        if project.state != LifecycleState.REGISTERED:
            raise PreconditionFailed(f"retirement requires state REGISTERED, project is {project.state.value}", project)
        reason = check_retirement(project, amount, reason)

        marker = PendingOperation(
            kind=OperationKind.RETIRE,
            requested_at=self._clock(),
            idempotency_key=retirement_key(project_id, amount, len(project.retirements)),
            amount=amount,
            reason=reason,
            requested_by=requested_by,
        )
        return self._result(self._start(project, marker))

    # ------------------------------------------------------------------ sweep
    def reconcile_indeterminate(self, now=None) -> dict:
        """Converge every marker older than the grace period with the ledger.

        Also re-triggers registration for APPROVED projects that never got a
        marker (process died between approval and dispatch).
        """
        now = now or self._clock()
        cutoff = now - self._grace
        summary = {"examined": 0, "confirmed": 0, "rejected": 0, "pending": 0, "retriggered": 0, "errors": 0}

        for project in list(self._store.find_pending(cutoff)):
            summary["examined"] += 1
            log = self._log.bind(project_id=project.project_id,
                                 idempotency_key=project.pending_operation.idempotency_key)
            try:
                settled = self._resolve(project, redispatch=True)
            except (RegistryError, LedgerError) as exc:
                summary["errors"] += 1
                log.warning("reconcile_project_failed", error=str(exc))
                continue
            if settled.pending_operation is not None:
                summary["pending"] += 1
            elif settled.state in FAILED_STATES:
                summary["rejected"] += 1
            else:
                summary["confirmed"] += 1

        for project in list(self._store.find_stalled_approvals(cutoff)):
            log = self._log.bind(project_id=project.project_id)
            try:
                self.register_on_ledger(project.project_id)
                summary["retriggered"] += 1
            except Indeterminate:
                summary["retriggered"] += 1
            except (RegistryError, LedgerError) as exc:
                summary["errors"] += 1
                log.warning("reconcile_retrigger_failed", error=str(exc))

        self._log.info("reconcile_sweep_finished", **summary)
        return summary

    # ------------------------------------------------------------------ internals
    def _start(self, project: Project, marker: PendingOperation) -> Project:
        log = self._log.bind(project_id=project.project_id, idempotency_key=marker.idempotency_key,
                             kind=marker.kind.value)
        try:
            prior = self._ledger.query_outcome(marker.idempotency_key)
        except LedgerUnavailableError as exc:
            log.warning("ledger_unavailable_before_dispatch", error=str(exc))
            raise Indeterminate("ledger unavailable; nothing dispatched", project) from exc

        if isinstance(prior, Confirmed):
            # confirmed earlier but never recorded
            log.info("ledger_outcome_adopted", token_id=prior.ref.token_id, tx_hash=prior.ref.last_tx_hash)
            try:
                return self._apply_success(project, marker, prior.ref)
            except VersionConflict:
                return self._lost_race(project, marker)

        project = self._write_intent(project, marker)
        log.info("ledger_intent_recorded", version=project.version)
        if isinstance(prior, Pending):
            log.info("ledger_call_already_pending")
            return project
        return self._dispatch(project)

    def _write_intent(self, project: Project, marker: PendingOperation) -> Project:
        new = project.evolve(pending_operation=marker, updated_at=self._clock())
        try:
            return self._store.compare_and_swap(project.project_id, project.version, new)
        except VersionConflict:
            return self._lost_race(project, marker)

    def _lost_race(self, project: Project, marker: PendingOperation) -> Project:
        """Another request changed the project between our read and our write."""
        current = self._store.load(project.project_id)
        if current.pending_operation is not None:
            raise AlreadyInFlight(f"{current.pending_operation.kind.value} operation already in flight", current)
        if marker.kind == OperationKind.REGISTER:
            if current.state == LifecycleState.REGISTERED:
                return current
        elif any(r.idempotency_key == marker.idempotency_key for r in current.retirements):
            raise AlreadyInFlight("an identical retirement was just applied by a concurrent request", current)
        elif current.state != LifecycleState.REGISTERED or marker.amount > current.credits_remaining:
            raise PreconditionFailed(
                f"amount {marker.amount} no longer available (state {current.state.value}, "
                f"remaining {current.credits_remaining})", current)
        raise VersionConflict(project.project_id, project.version)

    def _dispatch(self, project: Project) -> Project:
        marker = project.pending_operation
        log = self._log.bind(project_id=project.project_id, idempotency_key=marker.idempotency_key,
                             kind=marker.kind.value)
        operation = self._operation_for(project, marker)
        try:
            handle = self._ledger.submit(operation, marker.idempotency_key)
        except LedgerRejectedError as exc:
            # an earlier dispatch of the same key may have landed meanwhile
            try:
                prior = self._ledger.query_outcome(marker.idempotency_key, marker.tx_hash)
            except LedgerUnavailableError:
                return project
            if isinstance(prior, (Confirmed, Pending)):
                return self._settle(project, marker.idempotency_key, prior)
            log.warning("ledger_rejected", reason=exc.reason)
            return self._apply_failure(project, marker, exc.reason)
        except LedgerUnavailableError as exc:
            log.warning("ledger_outcome_indeterminate", stage="submit", error=str(exc))
            return project

        log.info("ledger_dispatched", tx_hash=handle.tx_hash)
        project = self._record_handle(project, handle)
        try:
            outcome = self._ledger.wait_for_outcome(marker.idempotency_key, handle, self._timeout)
        except LedgerUnavailableError as exc:
            log.warning("ledger_outcome_indeterminate", stage="wait", error=str(exc))
            return project
        return self._settle(project, marker.idempotency_key, outcome)

    def _record_handle(self, project: Project, handle) -> Project:
        marker = replace(project.pending_operation, tx_hash=handle.tx_hash, dispatched_at=self._clock())
        new = project.evolve(pending_operation=marker, updated_at=self._clock())
        try:
            return self._store.compare_and_swap(project.project_id, project.version, new)
        except VersionConflict:
            # someone settled it meanwhile; the key still correlates the call
            self._log.warning("ledger_handle_not_recorded", project_id=project.project_id, tx_hash=handle.tx_hash)
            return self._store.load(project.project_id)

    def _resolve(self, project: Project, redispatch: bool) -> Project:
        marker = project.pending_operation
        try:
            outcome = self._ledger.query_outcome(marker.idempotency_key, marker.tx_hash)
        except LedgerUnavailableError as exc:
            if redispatch:
                raise
            raise Indeterminate("ledger unavailable; outcome still pending", project) from exc
        if isinstance(outcome, NotFound) and redispatch:
            self._log.warning("ledger_redispatch", project_id=project.project_id,
                              idempotency_key=marker.idempotency_key, previous_tx_hash=marker.tx_hash)
            return self._dispatch(project)
        return self._settle(project, marker.idempotency_key, outcome)

    def _settle(self, project: Project, key: str, outcome) -> Project:
        marker = project.pending_operation
        if marker is None or marker.idempotency_key != key:
            return self._store.load(project.project_id)
        if isinstance(outcome, Confirmed):
            return self._apply_success(project, marker, outcome.ref)
        if isinstance(outcome, Rejected):
            self._log.warning("ledger_rejected", project_id=project.project_id, idempotency_key=key,
                              reason=outcome.reason)
            return self._apply_failure(project, marker, outcome.reason)
        self._log.info("ledger_outcome_indeterminate", project_id=project.project_id, idempotency_key=key,
                       outcome=type(outcome).__name__)
        return project

    def _apply_success(self, project: Project, marker: PendingOperation, ref: LedgerRef) -> Project:
        now = self._clock()
        if marker.kind == OperationKind.REGISTER:
            new = project.evolve(
                state=next_state(project.state, Action.REGISTER_OK),
                ledger_ref=ref,
                pending_operation=None,
                last_error=None,
                updated_at=now,
            )
        else:
            retired = project.credits_retired + marker.amount
            if retired > project.credits_claimed:
                raise InvariantViolation(
                    f"ledger confirmed retirement of {marker.amount} beyond remaining credits", project)
            action = Action.RETIRE_FULL if retired == project.credits_claimed else Action.RETIRE_PARTIAL
            record = RetirementRecord(
                amount=marker.amount,
                reason=marker.reason,
                retired_at=now,
                idempotency_key=marker.idempotency_key,
                requested_by=marker.requested_by,
                tx_hash=ref.last_tx_hash,
                block=ref.last_confirmed_block,
            )
            new = project.evolve(
                state=next_state(project.state, action),
                credits_retired=retired,
                ledger_ref=LedgerRef(token_id=project.ledger_ref.token_id,
                                     last_tx_hash=ref.last_tx_hash or project.ledger_ref.last_tx_hash,
                                     last_confirmed_block=ref.last_confirmed_block),
                retirements=project.retirements + (record,),
                pending_operation=None,
                last_error=None,
                updated_at=now,
            )
        self._log.info("ledger_confirmed", project_id=project.project_id, idempotency_key=marker.idempotency_key,
                       kind=marker.kind.value, state=new.state.value, tx_hash=ref.last_tx_hash)
        return self._persist(project, new)

    def _apply_failure(self, project: Project, marker: PendingOperation, reason: str) -> Project:
        action = Action.REGISTER_FAIL if marker.kind == OperationKind.REGISTER else Action.RETIRE_FAIL
        new = project.evolve(
            state=next_state(project.state, action),
            pending_operation=None,
            last_error=reason,
            updated_at=self._clock(),
        )
        return self._persist(project, new)

    def _persist(self, old: Project, new: Project) -> Project:
        problems = new.violations()
        if problems:
            raise InvariantViolation("; ".join(problems), old)
        return self._store.compare_and_swap(old.project_id, old.version, new)

    @staticmethod
    def _operation_for(project: Project, marker: PendingOperation):
        if marker.kind == OperationKind.REGISTER:
            return RegisterProject(project_id=project.project_id, owner_address=project.owner_address,
                                   credits=project.credits_claimed, metadata_uri=project.metadata_uri or "")
        return RetireCredits(project_id=project.project_id, token_id=project.ledger_ref.token_id,
                             amount=marker.amount, reason=marker.reason)

    @staticmethod
    def _result(project: Project) -> Project:
        if project.pending_operation is not None:
            raise Indeterminate("ledger outcome pending", project)
        if project.state in FAILED_STATES:
            raise LedgerRejected(project.last_error or "rejected", project)
        return project
