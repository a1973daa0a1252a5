"""Collaborator interfaces consumed by the registry core.

The engine and workflow only ever see these protocols; concrete adapters
(Mongo, web3, in-memory) are wired together by the app factory.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol, Union

from .lifecycle import LifecycleState
from .models import Evidence, LedgerRef, Project


# ---- ledger operations ----
@dataclass(frozen=True)
class RegisterProject:
    project_id: str
    owner_address: str
    credits: int
    metadata_uri: str = ""


@dataclass(frozen=True)
class RetireCredits:
    project_id: str
    token_id: int
    amount: int
    reason: str


LedgerOperation = Union[RegisterProject, RetireCredits]


@dataclass(frozen=True)
class CallHandle:
    tx_hash: Optional[str]


# ---- ledger outcomes ----
@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Confirmed:
    ref: LedgerRef


@dataclass(frozen=True)
class Rejected:
    reason: str


@dataclass(frozen=True)
class NotFound:
    """The ledger has no trace of the key (never dispatched, or dropped)."""


Outcome = Union[Pending, Confirmed, Rejected, NotFound]


@dataclass(frozen=True)
class PublicProjectView:
    token_id: int
    project_id: str
    owner_address: str
    credits: int
    credits_retired: int
    metadata_uri: str = ""


class LedgerClient(Protocol):
    def submit(self, operation: LedgerOperation, idempotency_key: str) -> CallHandle: ...

    def wait_for_outcome(self, idempotency_key: str, handle: CallHandle, timeout: float) -> Outcome: ...

    def query_outcome(self, idempotency_key: str, tx_hash: Optional[str] = None) -> Outcome: ...

    def read_project_state(self, ledger_ref: LedgerRef) -> PublicProjectView: ...


class OffchainStore(Protocol):
    def create(self, project: Project) -> Project: ...

    def load(self, project_id: str) -> Project: ...

    def compare_and_swap(self, project_id: str, expected_version: int, project: Project) -> Project: ...

    def find_pending(self, older_than: datetime) -> Iterable[Project]: ...

    def find_stalled_approvals(self, older_than: datetime) -> Iterable[Project]: ...

    def list_projects(self, state: Optional[LifecycleState] = None) -> Iterable[Project]: ...


class IdentityProvider(Protocol):
    def has_capability(self, caller_id: str, capability: str) -> bool: ...

    def public_key_pem(self, caller_id: str) -> Optional[str]: ...


class EvidenceStore(Protocol):
    def store(self, evidence: Evidence, content: Optional[bytes] = None) -> str: ...

    def fetch(self, evidence_id: str) -> Evidence: ...

    def list_for_project(self, project_id: str) -> Iterable[Evidence]: ...
