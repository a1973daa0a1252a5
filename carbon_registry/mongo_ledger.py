# mongo_ledger.py — dry-run registry ledger kept in MongoDB (pymongo)
#
# Used when no chain env is configured. Every submit is mined at once; the
# ledger state lives in its own collections so token ids and executed keys
# survive restarts and are shared by the server and the operator CLI.
#
#   ledger_tokens    {_id: token_id, project_id (unique), owner, credits, retired, metadata_uri}
#   ledger_executed  {_id: op key, token_id, tx_hash, block}
#   ledger_txs       {_id: tx_hash, key, op, status, reason, block, created_at}
#   ledger_counters  {_id: "token" | "block", seq}
import uuid
from dataclasses import asdict

import structlog
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from .errors import LedgerRejectedError, LedgerUnavailableError
from .memory_ledger import contract_problem
from .models import LedgerRef
from .ports import CallHandle, Confirmed, NotFound, PublicProjectView, RegisterProject, Rejected, RetireCredits
from .utils import sha256_hex, utcnow

logger = structlog.get_logger(__name__)


class MongoLedger:
    """LedgerClient with the registry contract's rules over Mongo collections."""

    def __init__(self, db):
        self.tokens = db.ledger_tokens
        self.executed = db.ledger_executed
        self.txs = db.ledger_txs
        self.counters = db.ledger_counters

    def ensure_indexes(self):
        self.tokens.create_index("project_id", unique=True)
        self.txs.create_index([("key", ASCENDING), ("block", DESCENDING)])

    # ---- LedgerClient ----
    def submit(self, operation, idempotency_key: str) -> CallHandle:
        try:
            # estimate_gas would revert on these
            problem = self._problem(operation, idempotency_key)
            if problem:
                raise LedgerRejectedError(problem)
            tx_hash = "0x" + sha256_hex(f"{idempotency_key}|{uuid.uuid4().hex}".encode("utf-8"))
            block = self._next("block")
            problem = self._execute(operation, idempotency_key, tx_hash, block)
            self.txs.insert_one({
                "_id": tx_hash,
                "key": idempotency_key,
                "op": {"type": type(operation).__name__, **asdict(operation)},
                "status": "reverted" if problem else "mined",
                "reason": problem,
                "block": block,
                "created_at": utcnow(),
            })
        except ConnectionFailure as e:
            raise LedgerUnavailableError(str(e)) from e
        logger.info("dry_run_tx", tx_hash=tx_hash, idempotency_key=idempotency_key, block=block,
                    reverted=problem)
        return CallHandle(tx_hash=tx_hash)

    def wait_for_outcome(self, idempotency_key: str, handle: CallHandle, timeout: float):
        return self.query_outcome(idempotency_key, handle.tx_hash)

    def query_outcome(self, idempotency_key: str, tx_hash=None):
        try:
            done = self.executed.find_one({"_id": idempotency_key})
            if done:
                return Confirmed(LedgerRef(token_id=int(done["token_id"]), last_tx_hash=done["tx_hash"],
                                           last_confirmed_block=done["block"]))
            tx = self.txs.find_one({"_id": tx_hash}) if tx_hash else None
            if tx is None:
                tx = self.txs.find_one({"key": idempotency_key}, sort=[("block", DESCENDING)])
        except ConnectionFailure as e:
            raise LedgerUnavailableError(str(e)) from e
        # transactions are written already mined, so anything else is unknown
        if tx is None or tx["status"] != "reverted":
            return NotFound()
        return Rejected(tx["reason"])

    def read_project_state(self, ledger_ref: LedgerRef) -> PublicProjectView:
        t = self.tokens.find_one({"_id": int(ledger_ref.token_id)})
        if t is None:
            raise LedgerRejectedError(f"unknown token {ledger_ref.token_id}")
        return PublicProjectView(token_id=int(t["_id"]), project_id=t["project_id"], owner_address=t["owner"],
                                 credits=t["credits"], credits_retired=t["retired"],
                                 metadata_uri=t.get("metadata_uri") or "")

    def statistics(self) -> dict:
        tokens = list(self.tokens.find({}))
        total = sum(t["credits"] for t in tokens)
        retired = sum(t["retired"] for t in tokens)
        return {"total_projects": len(tokens), "total_credits": total,
                "total_retired": retired, "active_credits": total - retired}

    # ---- contract semantics ----
    def _next(self, name: str) -> int:
        doc = self.counters.find_one_and_update({"_id": name}, {"$inc": {"seq": 1}}, upsert=True,
                                                return_document=ReturnDocument.AFTER)
        return int(doc["seq"])

    def _problem(self, op, key):
        token = self.tokens.find_one({"_id": int(op.token_id)}) if isinstance(op, RetireCredits) else None
        registered = (isinstance(op, RegisterProject)
                      and self.tokens.find_one({"project_id": op.project_id}) is not None)
        return contract_problem(op, self.executed.find_one({"_id": key}) is not None, token, registered)

    def _execute(self, op, key, tx_hash, block):
        """Apply the effect, then record the key; returns the revert reason or None."""
        if isinstance(op, RegisterProject):
            token_id = self._next("token")
            try:
                self.tokens.insert_one({"_id": token_id, "project_id": op.project_id, "owner": op.owner_address,
                                        "credits": op.credits, "retired": 0, "metadata_uri": op.metadata_uri})
            except DuplicateKeyError:
                return "duplicate project"
        else:
            token_id = int(op.token_id)
            if not self._burn(token_id, op.amount):
                return "exceeds available credits"

        try:
            self.executed.insert_one({"_id": key, "token_id": token_id, "tx_hash": tx_hash, "block": block})
        except DuplicateKeyError:
            # same key mined concurrently by another process
            if isinstance(op, RegisterProject):
                self.tokens.delete_one({"_id": token_id})
            else:
                self.tokens.update_one({"_id": token_id}, {"$inc": {"retired": -op.amount}})
            return "operation already executed"
        return None

    def _burn(self, token_id: int, amount: int) -> bool:
        while True:
            t = self.tokens.find_one({"_id": token_id})
            if t is None or amount <= 0 or t["retired"] + amount > t["credits"]:
                return False
            res = self.tokens.update_one({"_id": token_id, "retired": t["retired"]}, {"$inc": {"retired": amount}})
            if res.modified_count == 1:
                return True
