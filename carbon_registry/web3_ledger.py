# web3_ledger.py — LedgerClient over the CarbonCreditRegistry contract (web3.py)
#
# Transactions are EIP-1559, signed locally with the registrar key and sent
# raw. Outcomes are looked up by idempotency key through the contract's
# executed(bytes32) view and the logs indexed by that key, so they can be
# recovered without the tx hash.
from time import sleep

import requests
import structlog
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError

from .contract import ABI
from .errors import LedgerRejectedError, LedgerUnavailableError
from .models import LedgerRef
from .ports import CallHandle, Confirmed, NotFound, Pending, PublicProjectView, RegisterProject, Rejected
from .utils import hex0x

logger = structlog.get_logger(__name__)

NETWORK_ERRORS = (requests.exceptions.ConnectionError, requests.exceptions.Timeout)
# JSON-RPC error replies from the node
RPC_ERRORS = (Web3RPCError, ValueError)


# --- Chain helpers ---
def _bump(fee):
    # ~12.5% bump (clients typically require >=10%)
    return int(fee + fee // 8)


def revert_reason(exc) -> str:
    msg = str(exc.args[0]) if exc.args else str(exc)
    for prefix in ("execution reverted: ", "execution reverted"):
        if msg.startswith(prefix):
            msg = msg[len(prefix):]
    return msg.strip() or "execution reverted"


def send_with_bump(w3, acct, fn, chain_id, gas, attempts=3):
    """Sign and broadcast ``fn``; returns the 0x tx hash without waiting.

    Bumps both fees on "underpriced" and refreshes the nonce on
    "nonce too low". Raises the last error when every attempt failed.
    """
    base = w3.eth.get_block("pending")["baseFeePerGas"]
    max_priority = w3.to_wei(2, "gwei")
    max_fee = base * 2 + max_priority

    # pending nonce, so a mined nonce is never reused
    nonce = w3.eth.get_transaction_count(acct.address, "pending")

    last_exc = None
    for _ in range(attempts):
        tx = fn.build_transaction({
            "from": acct.address,
            "nonce": nonce,
            "gas": gas,
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": max_priority,
            "chainId": chain_id,
        })
        signed = w3.eth.account.sign_transaction(tx, acct.key)
        try:
            return hex0x(w3.eth.send_raw_transaction(signed.raw_transaction))
        except RPC_ERRORS as e:
            msg = str(e)
            if "already known" in msg:
                return hex0x(signed.hash)
            if "underpriced" in msg or "fee too low" in msg:
                max_fee = _bump(max_fee)
                max_priority = _bump(max_priority)
                last_exc = e
                sleep(2)
                continue
            if "nonce too low" in msg:
                nonce = w3.eth.get_transaction_count(acct.address, "pending")
                last_exc = e
                sleep(1)
                continue
            raise
    raise last_exc if last_exc else RuntimeError("transaction not sent after retries")


class Web3LedgerClient:
    def __init__(self, w3, private_key: str, contract_address: str, chain_name: str = "sepolia",
                 from_block: int = 0, attempts: int = 3, poll_latency: float = 2.0):
        self.w3 = w3
        self.acct = w3.eth.account.from_key(private_key)
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=ABI)
        self.chain_name = chain_name
        self.from_block = from_block
        self.attempts = attempts
        self.poll_latency = poll_latency
        self._chain_id = None
        self._log = logger.bind(component="web3_ledger", chain=chain_name, contract=self.contract.address)

    @classmethod
    def from_settings(cls, settings):
        w3 = Web3(Web3.HTTPProvider(settings.web3_rpc_url, request_kwargs={"timeout": 30}))
        return cls(w3, settings.private_key, settings.registry_contract_address,
                   chain_name=settings.chain_name, from_block=settings.registry_from_block)

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.w3.eth.chain_id
        return self._chain_id

    def _function_for(self, operation, op_key: bytes):
        if isinstance(operation, RegisterProject):
            return self.contract.functions.registerProject(
                op_key, operation.project_id, Web3.to_checksum_address(operation.owner_address),
                int(operation.credits), operation.metadata_uri or "")
        return self.contract.functions.retireCredits(
            op_key, int(operation.token_id), int(operation.amount), operation.reason)

    # ---- LedgerClient ----
    def submit(self, operation, idempotency_key: str) -> CallHandle:
        op_key = Web3.to_bytes(hexstr=idempotency_key)
        fn = self._function_for(operation, op_key)
        try:
            # a revert here is the contract refusing the call; nothing is broadcast
            gas = fn.estimate_gas({"from": self.acct.address})
        except ContractLogicError as exc:
            raise LedgerRejectedError(revert_reason(exc)) from exc
        except NETWORK_ERRORS as exc:
            raise LedgerUnavailableError(str(exc)) from exc

        try:
            tx_hash = send_with_bump(self.w3, self.acct, fn, self.chain_id, gas=int(gas * 1.2) + 10_000,
                                     attempts=self.attempts)
        except NETWORK_ERRORS + RPC_ERRORS as exc:
            # the node did not take the transaction (funds, nonce races, transport)
            raise LedgerUnavailableError(str(exc)) from exc
        self._log.info("ledger_tx_sent", idempotency_key=idempotency_key, tx_hash=tx_hash)
        return CallHandle(tx_hash=tx_hash)

    def wait_for_outcome(self, idempotency_key: str, handle: CallHandle, timeout: float):
        try:
            self.w3.eth.wait_for_transaction_receipt(handle.tx_hash, timeout=timeout,
                                                     poll_latency=self.poll_latency)
        except TimeExhausted:
            return Pending()
        except NETWORK_ERRORS as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        return self.query_outcome(idempotency_key, handle.tx_hash)

    def query_outcome(self, idempotency_key: str, tx_hash=None):
        op_key = Web3.to_bytes(hexstr=idempotency_key)
        try:
            token_id = self.contract.functions.executed(op_key).call()
            if token_id:
                return Confirmed(self._confirmed_ref(idempotency_key, token_id, tx_hash))
            if not tx_hash:
                return NotFound()
            try:
                rcpt = self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                rcpt = None
            if rcpt is not None:
                if rcpt["status"] == 0:
                    return Rejected(self._replay_reason(tx_hash, rcpt))
                # mined, but the view lags behind the receipt on this node
                return Pending()
            try:
                self.w3.eth.get_transaction(tx_hash)
            except TransactionNotFound:
                return NotFound()
            return Pending()
        except NETWORK_ERRORS as exc:
            raise LedgerUnavailableError(str(exc)) from exc

    def read_project_state(self, ledger_ref: LedgerRef) -> PublicProjectView:
        try:
            project_id, owner, credits, retired, meta_uri, exists = \
                self.contract.functions.projects(int(ledger_ref.token_id)).call()
        except NETWORK_ERRORS as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        if not exists:
            raise LedgerRejectedError(f"unknown token {ledger_ref.token_id}")
        return PublicProjectView(token_id=int(ledger_ref.token_id), project_id=project_id, owner_address=owner,
                                 credits=credits, credits_retired=retired, metadata_uri=meta_uri)

    def statistics(self) -> dict:
        try:
            fns = self.contract.functions
            total = fns.totalCredits().call()
            retired = fns.totalRetired().call()
            count = fns.nextTokenId().call() - 1
        except NETWORK_ERRORS as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        return {"total_projects": count, "total_credits": total, "total_retired": retired,
                "active_credits": total - retired}

    # ---- helpers ----
    def _confirmed_ref(self, idempotency_key, token_id, tx_hash) -> LedgerRef:
        logs = self.w3.eth.get_logs({
            "address": self.contract.address,
            "fromBlock": self.from_block,
            "toBlock": "latest",
            "topics": [None, idempotency_key],
        })
        if logs:
            last = logs[-1]
            return LedgerRef(token_id=int(token_id), last_tx_hash=hex0x(last["transactionHash"]),
                             last_confirmed_block=last["blockNumber"])
        self._log.warning("ledger_log_missing", idempotency_key=idempotency_key, token_id=token_id)
        return LedgerRef(token_id=int(token_id), last_tx_hash=tx_hash)

    def _replay_reason(self, tx_hash, rcpt) -> str:
        tx = self.w3.eth.get_transaction(tx_hash)
        try:
            self.w3.eth.call({"from": tx["from"], "to": tx["to"], "data": tx["input"]}, rcpt["blockNumber"] - 1)
        except ContractLogicError as exc:
            return revert_reason(exc)
        return "transaction reverted"
