"""Project lifecycle states, ledger operation kinds and the transition table.

The registry keeps exactly one closed set of states. Free-text statuses
coming from older documents ("Pending", "Verified", ...) are translated once,
at the boundary, by :func:`state_from_external`.
"""
from enum import Enum

from .errors import InvalidStateTransition


class LifecycleState(str, Enum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REGISTERED = "REGISTERED"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"
    RETIRED = "RETIRED"
    RETIREMENT_FAILED = "RETIREMENT_FAILED"
    REJECTED = "REJECTED"


class OperationKind(str, Enum):
    REGISTER = "REGISTER"
    RETIRE = "RETIRE"


class Action(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REGISTER_OK = "register_ok"
    REGISTER_FAIL = "register_fail"
    RETRY_REGISTRATION = "retry_registration"
    RETIRE_PARTIAL = "retire_partial"
    RETIRE_FULL = "retire_full"
    RETIRE_FAIL = "retire_fail"
    RETRY_RETIREMENT = "retry_retirement"


S = LifecycleState

TRANSITIONS = {
    (S.SUBMITTED, Action.APPROVE): S.APPROVED,
    (S.SUBMITTED, Action.REJECT): S.REJECTED,
    (S.APPROVED, Action.REGISTER_OK): S.REGISTERED,
    (S.APPROVED, Action.REGISTER_FAIL): S.REGISTRATION_FAILED,
    (S.REGISTRATION_FAILED, Action.RETRY_REGISTRATION): S.APPROVED,
    (S.REGISTERED, Action.RETIRE_PARTIAL): S.REGISTERED,
    (S.REGISTERED, Action.RETIRE_FULL): S.RETIRED,
    (S.REGISTERED, Action.RETIRE_FAIL): S.RETIREMENT_FAILED,
    (S.RETIREMENT_FAILED, Action.RETRY_RETIREMENT): S.REGISTERED,
}

TERMINAL_STATES = frozenset({S.REJECTED, S.RETIRED})

# ledger_ref must be present exactly in these
LEDGER_BACKED_STATES = frozenset({S.REGISTERED, S.RETIREMENT_FAILED, S.RETIRED})


def next_state(current: LifecycleState, action: Action) -> LifecycleState:
    """Target state for ``action`` from ``current``.

    Raises InvalidStateTransition when the table has no entry; a transition
    never silently no-ops.
    """
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidStateTransition(current, action) from None


def allowed_actions(current: LifecycleState) -> list:
    return [a for (s, a) in TRANSITIONS if s == current]


# ---- boundary translation ----
_EXTERNAL_STATUS = {
    "pending": S.SUBMITTED,
    "submitted": S.SUBMITTED,
    "verified": S.APPROVED,
    "approved": S.APPROVED,
    "completed": S.REGISTERED,
    "registered": S.REGISTERED,
    "registration_failed": S.REGISTRATION_FAILED,
    "retired": S.RETIRED,
    "retirement_failed": S.RETIREMENT_FAILED,
    "rejected": S.REJECTED,
}


def state_from_external(status) -> LifecycleState:
    """'Pending' / 'PENDING' / 'Verified' / ... -> LifecycleState."""
    if isinstance(status, LifecycleState):
        return status
    key = str(status or "").strip().lower().replace(" ", "_").replace("-", "_")
    if key not in _EXTERNAL_STATUS:
        raise ValueError(f"unknown project status: {status!r}")
    return _EXTERNAL_STATUS[key]
