"""Registry aggregates.

Projects are immutable values: every mutation builds a new ``Project`` with
:func:`dataclasses.replace` and persists it through the store's
compare-and-swap, which bumps ``version``.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from .lifecycle import LEDGER_BACKED_STATES, LifecycleState, OperationKind
from .utils import as_utc


@dataclass(frozen=True)
class LedgerRef:
    token_id: int
    last_tx_hash: Optional[str] = None
    last_confirmed_block: Optional[int] = None

    def to_document(self) -> dict:
        # uint256 ids do not fit a BSON int64
        return {"token_id": str(self.token_id), "last_tx_hash": self.last_tx_hash,
                "last_confirmed_block": self.last_confirmed_block}

    @classmethod
    def from_document(cls, doc):
        if not doc:
            return None
        return cls(token_id=int(doc["token_id"]), last_tx_hash=doc.get("last_tx_hash"),
                   last_confirmed_block=doc.get("last_confirmed_block"))


@dataclass(frozen=True)
class PendingOperation:
    kind: OperationKind
    requested_at: datetime
    idempotency_key: str
    amount: Optional[int] = None
    reason: Optional[str] = None
    requested_by: Optional[str] = None
    tx_hash: Optional[str] = None
    dispatched_at: Optional[datetime] = None

    def to_document(self) -> dict:
        return {"kind": self.kind.value, "requested_at": self.requested_at,
                "idempotency_key": self.idempotency_key, "amount": self.amount,
                "reason": self.reason, "requested_by": self.requested_by,
                "tx_hash": self.tx_hash, "dispatched_at": self.dispatched_at}

    @classmethod
    def from_document(cls, doc):
        if not doc:
            return None
        return cls(kind=OperationKind(doc["kind"]), requested_at=as_utc(doc["requested_at"]),
                   idempotency_key=doc["idempotency_key"], amount=doc.get("amount"),
                   reason=doc.get("reason"), requested_by=doc.get("requested_by"),
                   tx_hash=doc.get("tx_hash"), dispatched_at=as_utc(doc.get("dispatched_at")))


@dataclass(frozen=True)
class DecisionRecord:
    outcome: str  # APPROVED | REJECTED
    decided_by: str
    decided_at: datetime
    comments: str = ""
    measured: dict = field(default_factory=dict)
    evidence_ids: tuple = ()

    def to_document(self) -> dict:
        return {"outcome": self.outcome, "decided_by": self.decided_by, "decided_at": self.decided_at,
                "comments": self.comments, "measured": dict(self.measured),
                "evidence_ids": list(self.evidence_ids)}

    @classmethod
    def from_document(cls, doc):
        return cls(outcome=doc["outcome"], decided_by=doc["decided_by"],
                   decided_at=as_utc(doc["decided_at"]), comments=doc.get("comments") or "",
                   measured=dict(doc.get("measured") or {}),
                   evidence_ids=tuple(doc.get("evidence_ids") or ()))


@dataclass(frozen=True)
class RetirementRecord:
    amount: int
    reason: str
    retired_at: datetime
    idempotency_key: str
    requested_by: Optional[str] = None
    tx_hash: Optional[str] = None
    block: Optional[int] = None

    def to_document(self) -> dict:
        return {"amount": self.amount, "reason": self.reason, "retired_at": self.retired_at,
                "idempotency_key": self.idempotency_key, "requested_by": self.requested_by,
                "tx_hash": self.tx_hash, "block": self.block}

    @classmethod
    def from_document(cls, doc):
        return cls(amount=int(doc["amount"]), reason=doc["reason"], retired_at=as_utc(doc["retired_at"]),
                   idempotency_key=doc["idempotency_key"], requested_by=doc.get("requested_by"),
                   tx_hash=doc.get("tx_hash"), block=doc.get("block"))


@dataclass(frozen=True)
class Project:
    project_id: str
    name: str
    credits_claimed: int
    state: LifecycleState = LifecycleState.SUBMITTED
    credits_retired: int = 0
    owner_address: Optional[str] = None
    ledger_ref: Optional[LedgerRef] = None
    pending_operation: Optional[PendingOperation] = None
    version: int = 0
    ecosystem_type: str = ""
    location: dict = field(default_factory=dict)
    area_hectares: float = 0.0
    metadata: dict = field(default_factory=dict)
    metadata_uri: Optional[str] = None
    submitted_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    decisions: tuple = ()
    retirements: tuple = ()
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def credits_remaining(self) -> int:
        return self.credits_claimed - self.credits_retired

    def evolve(self, **changes) -> "Project":
        return replace(self, **changes)

    def violations(self) -> list:
        """Invariant breaches; an empty list means the aggregate is consistent."""
        out = []
        if self.credits_claimed < 0:
            out.append("credits_claimed is negative")
        if not 0 <= self.credits_retired <= self.credits_claimed:
            out.append("credits_retired outside [0, credits_claimed]")
        if (self.ledger_ref is not None) != (self.state in LEDGER_BACKED_STATES):
            out.append(f"ledger_ref presence does not match state {self.state.value}")
        if self.state == LifecycleState.RETIRED and self.credits_retired != self.credits_claimed:
            out.append("RETIRED with credits left")
        return out

    # ---- Mongo mapping ----
    def to_document(self) -> dict:
        return {
            "_id": self.project_id,
            "project_id": self.project_id,
            "name": self.name,
            "state": self.state.value,
            "credits_claimed": self.credits_claimed,
            "credits_retired": self.credits_retired,
            "owner_address": self.owner_address,
            "ledger_ref": self.ledger_ref.to_document() if self.ledger_ref else None,
            "pending_operation": self.pending_operation.to_document() if self.pending_operation else None,
            "version": self.version,
            "ecosystem_type": self.ecosystem_type,
            "location": dict(self.location),
            "area_hectares": self.area_hectares,
            "metadata": dict(self.metadata),
            "metadata_uri": self.metadata_uri,
            "submitted_by": self.submitted_by,
            "submitted_at": self.submitted_at,
            "approved_at": self.approved_at,
            "decisions": [d.to_document() for d in self.decisions],
            "retirements": [r.to_document() for r in self.retirements],
            "last_error": self.last_error,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: dict) -> "Project":
        return cls(
            project_id=doc.get("project_id") or doc["_id"],
            name=doc.get("name") or "",
            state=LifecycleState(doc["state"]),
            credits_claimed=int(doc.get("credits_claimed") or 0),
            credits_retired=int(doc.get("credits_retired") or 0),
            owner_address=doc.get("owner_address"),
            ledger_ref=LedgerRef.from_document(doc.get("ledger_ref")),
            pending_operation=PendingOperation.from_document(doc.get("pending_operation")),
            version=int(doc.get("version") or 0),
            ecosystem_type=doc.get("ecosystem_type") or "",
            location=dict(doc.get("location") or {}),
            area_hectares=float(doc.get("area_hectares") or 0.0),
            metadata=dict(doc.get("metadata") or {}),
            metadata_uri=doc.get("metadata_uri"),
            submitted_by=doc.get("submitted_by"),
            submitted_at=as_utc(doc.get("submitted_at")),
            approved_at=as_utc(doc.get("approved_at")),
            decisions=tuple(DecisionRecord.from_document(d) for d in doc.get("decisions") or ()),
            retirements=tuple(RetirementRecord.from_document(r) for r in doc.get("retirements") or ()),
            last_error=doc.get("last_error"),
            updated_at=as_utc(doc.get("updated_at")),
        )


@dataclass(frozen=True)
class Evidence:
    project_id: str
    submitted_by: str
    sha256_hex: str
    created_at: datetime
    kind: str = "field_data"  # field_data | file
    payload: dict = field(default_factory=dict)
    filename: Optional[str] = None
    stored_path: Optional[str] = None
    evidence_id: Optional[str] = None

    def to_document(self) -> dict:
        return {"project_id": self.project_id, "submitted_by": self.submitted_by,
                "sha256_hex": self.sha256_hex, "created_at": self.created_at, "kind": self.kind,
                "payload": dict(self.payload), "filename": self.filename,
                "stored_path": self.stored_path}

    @classmethod
    def from_document(cls, doc: dict) -> "Evidence":
        return cls(project_id=doc["project_id"], submitted_by=doc["submitted_by"],
                   sha256_hex=doc["sha256_hex"], created_at=as_utc(doc["created_at"]),
                   kind=doc.get("kind") or "field_data", payload=dict(doc.get("payload") or {}),
                   filename=doc.get("filename"), stored_path=doc.get("stored_path"),
                   evidence_id=str(doc["_id"]) if doc.get("_id") is not None else doc.get("evidence_id"))
