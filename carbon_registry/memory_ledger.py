"""In-process ledger with the registry contract's semantics, for tests.

The service itself uses the Mongo-backed dry-run ledger when no chain is
configured, so its state outlives the process.
Transactions can be scripted to time out, revert, be refused at estimation
time or fail to reach the node.
"""
import threading
from collections import deque

from .errors import LedgerRejectedError, LedgerUnavailableError
from .models import LedgerRef
from .ports import (
    CallHandle,
    Confirmed,
    NotFound,
    Pending,
    PublicProjectView,
    RegisterProject,
    Rejected,
    RetireCredits,
)
from .utils import sha256_hex

TIMEOUT = "timeout"
UNAVAILABLE = "unavailable"


def contract_problem(op, executed: bool, token, project_registered: bool):
    """The registry contract's require() failures for ``op``, or None.

    ``token`` is the stored token (credits, retired) a retirement targets.
    """
    if executed:
        return "operation already executed"
    if isinstance(op, RegisterProject):
        if not op.owner_address:
            return "invalid owner"
        if op.credits <= 0:
            return "no credits"
        if project_registered:
            return "duplicate project"
    elif isinstance(op, RetireCredits):
        if token is None:
            return "unknown token"
        if op.amount <= 0 or token["retired"] + op.amount > token["credits"]:
            return "exceeds available credits"
    return None


class InMemoryLedger:
    def __init__(self, auto_mine: bool = True):
        self.auto_mine = auto_mine
        self.submit_calls = []
        self._lock = threading.Lock()
        self._script = deque()
        self._tokens = {}
        self._token_by_project = {}
        self._executed = {}
        self._txs = {}
        self._tx_by_key = {}
        self._block = 0
        self._next_token = 1

    # ---- test / operator controls ----
    def script(self, *steps):
        """Queue behaviours for the next submits: "timeout", "unavailable",
        ("reject", reason) or ("revert", reason)."""
        with self._lock:
            self._script.extend(steps)

    def mine_pending(self) -> int:
        with self._lock:
            pending = [h for h, tx in self._txs.items() if tx["status"] == "pending"]
            for h in pending:
                self._mine(h)
            return len(pending)

    def drop_pending(self) -> int:
        with self._lock:
            pending = [h for h, tx in self._txs.items() if tx["status"] == "pending"]
            for h in pending:
                tx = self._txs.pop(h)
                if self._tx_by_key.get(tx["key"]) == h:
                    del self._tx_by_key[tx["key"]]
            return len(pending)

    def submits_for(self, key: str) -> int:
        return sum(1 for _, k in self.submit_calls if k == key)

    # ---- LedgerClient ----
    def submit(self, operation, idempotency_key: str) -> CallHandle:
        with self._lock:
            self.submit_calls.append((operation, idempotency_key))
            step = self._script.popleft() if self._script else None
            if step == UNAVAILABLE:
                raise LedgerUnavailableError("connection refused")
            if isinstance(step, tuple) and step[0] == "reject":
                raise LedgerRejectedError(step[1])
            # estimate_gas would revert on these
            problem = self._check(operation, idempotency_key)
            if problem:
                raise LedgerRejectedError(problem)

            tx_hash = "0x" + sha256_hex(f"{idempotency_key}|{len(self.submit_calls)}".encode("utf-8"))
            self._txs[tx_hash] = {"key": idempotency_key, "op": operation, "status": "pending", "reason": None}
            self._tx_by_key[idempotency_key] = tx_hash
            if isinstance(step, tuple) and step[0] == "revert":
                self._txs[tx_hash].update(status="reverted", reason=step[1])
            elif step != TIMEOUT and self.auto_mine:
                self._mine(tx_hash)
            return CallHandle(tx_hash=tx_hash)

    def wait_for_outcome(self, idempotency_key: str, handle: CallHandle, timeout: float):
        return self.query_outcome(idempotency_key, handle.tx_hash)

    def query_outcome(self, idempotency_key: str, tx_hash=None):
        with self._lock:
            if idempotency_key in self._executed:
                return Confirmed(self._executed[idempotency_key])
            tx = self._txs.get(tx_hash) if tx_hash else None
            if tx is None:
                tx = self._txs.get(self._tx_by_key.get(idempotency_key))
            if tx is None:
                return NotFound()
            if tx["status"] == "reverted":
                return Rejected(tx["reason"])
            return Pending()

    def read_project_state(self, ledger_ref: LedgerRef) -> PublicProjectView:
        with self._lock:
            t = self._tokens.get(int(ledger_ref.token_id))
            if t is None:
                raise LedgerRejectedError(f"unknown token {ledger_ref.token_id}")
            return PublicProjectView(token_id=int(ledger_ref.token_id), project_id=t["project_id"],
                                     owner_address=t["owner"], credits=t["credits"],
                                     credits_retired=t["retired"], metadata_uri=t["metadata_uri"])

    def statistics(self) -> dict:
        with self._lock:
            total = sum(t["credits"] for t in self._tokens.values())
            retired = sum(t["retired"] for t in self._tokens.values())
            return {"total_projects": len(self._tokens), "total_credits": total,
                    "total_retired": retired, "active_credits": total - retired}

    # ---- contract semantics ----
    def _check(self, op, key):
        token = self._tokens.get(int(op.token_id)) if isinstance(op, RetireCredits) else None
        return contract_problem(op, key in self._executed, token,
                                getattr(op, "project_id", None) in self._token_by_project)

    def _mine(self, tx_hash):
        tx = self._txs[tx_hash]
        problem = self._check(tx["op"], tx["key"])
        if problem:
            tx.update(status="reverted", reason=problem)
            return
        self._block += 1
        op = tx["op"]
        if isinstance(op, RegisterProject):
            token_id = self._next_token
            self._next_token += 1
            self._tokens[token_id] = {"project_id": op.project_id, "owner": op.owner_address,
                                      "credits": op.credits, "retired": 0, "metadata_uri": op.metadata_uri}
            self._token_by_project[op.project_id] = token_id
        else:
            token_id = int(op.token_id)
            self._tokens[token_id]["retired"] += op.amount
        self._executed[tx["key"]] = LedgerRef(token_id=token_id, last_tx_hash=tx_hash,
                                              last_confirmed_block=self._block)
        tx["status"] = "mined"
