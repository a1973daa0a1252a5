"""Typed failures raised by the registry core and its adapters.

Every registry failure carries a short machine ``code`` and, where one
exists, the project view at the time of the failure, so the HTTP layer can
render it without re-reading the store.
"""


class RegistryError(Exception):
    code = "registry_error"
    http_status = 400

    def __init__(self, message: str, project=None):
        super().__init__(message)
        self.message = message
        self.project = project


class ProjectNotFound(RegistryError):
    code = "not_found"
    http_status = 404

    def __init__(self, project_id: str):
        super().__init__(f"project not found: {project_id}")
        self.project_id = project_id


class PreconditionFailed(RegistryError):
    code = "precondition_failed"
    http_status = 400

    def __init__(self, condition: str, project=None):
        super().__init__(condition, project)
        self.condition = condition


class CapabilityMissing(PreconditionFailed):
    code = "forbidden"
    http_status = 403

    def __init__(self, caller_id: str, capability: str):
        super().__init__(f"caller {caller_id} lacks capability '{capability}'")
        self.caller_id = caller_id
        self.capability = capability


class InvalidStateTransition(PreconditionFailed):
    code = "invalid_state_transition"
    http_status = 409

    def __init__(self, current, requested, project=None):
        cur = getattr(current, "value", current)
        req = getattr(requested, "value", requested)
        super().__init__(f"cannot {req} from state {cur}", project)
        self.current = current
        self.requested = requested


class VersionConflict(RegistryError):
    code = "version_conflict"
    http_status = 409

    def __init__(self, project_id: str, expected_version: int):
        super().__init__(f"project {project_id} changed since version {expected_version}; reload and retry")
        self.project_id = project_id
        self.expected_version = expected_version


class InvariantViolation(RegistryError):
    code = "invariant_violation"
    http_status = 500


class AlreadyInFlight(RegistryError):
    code = "already_in_flight"
    http_status = 409


class LedgerRejected(RegistryError):
    """The ledger explicitly refused the call; recorded as *_FAILED state."""
    code = "ledger_rejected"
    http_status = 502

    def __init__(self, reason: str, project=None):
        super().__init__(f"ledger rejected operation: {reason}", project)
        self.reason = reason


class Indeterminate(RegistryError):
    """Dispatched (or about to be) but the outcome is not known yet."""
    code = "pending"
    http_status = 202


# ---- adapter-level errors (raised by LedgerClient / stores) ----
class LedgerError(Exception):
    pass


class LedgerRejectedError(LedgerError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class LedgerUnavailableError(LedgerError):
    pass


class EvidenceNotFound(RegistryError):
    code = "not_found"
    http_status = 404


class SignatureInvalid(RegistryError):
    code = "unauthorized"
    http_status = 401
