# accounts.py — registry accounts (role + Ed25519 key) and role capabilities
from bson import ObjectId
from bson.errors import InvalidId

from .errors import PreconditionFailed
from .utils import load_pubkey

SUBMIT = "submit"
EVIDENCE = "evidence"
APPROVE = "approve"
REJECT = "reject"
RETRY = "retry"
RETIRE = "retire"

ROLE_CAPABILITIES = {
    "ADMIN": frozenset({SUBMIT, EVIDENCE, APPROVE, REJECT, RETRY, RETIRE}),
    "VERIFIER": frozenset({APPROVE, REJECT, RETRY, EVIDENCE}),
    "INSPECTOR": frozenset({EVIDENCE}),
    "OWNER": frozenset({SUBMIT, RETIRE, RETRY}),
}

_ROLE_ALIASES = {
    "register": "OWNER",
    "registrar": "OWNER",
    "project_owner": "OWNER",
    "administrator": "ADMIN",
}


def normalize_role(role) -> str:
    """'Verifier' / 'verifier' / 'VERIFIER' -> 'VERIFIER'."""
    key = str(role or "").strip().lower().replace(" ", "_").replace("-", "_")
    key = _ROLE_ALIASES.get(key, key.upper())
    if key not in ROLE_CAPABILITIES:
        raise ValueError(f"unknown role: {role!r}")
    return key


def _oid(account_id):
    try:
        return ObjectId(account_id)
    except (InvalidId, TypeError):
        return None


class MongoAccountDirectory:
    def __init__(self, db):
        self.col = db.accounts

    def ensure_indexes(self):
        self.col.create_index("name")

    def create_account(self, name: str, role: str, public_key_pem: str) -> dict:
        if not all([name, role, public_key_pem]):
            raise PreconditionFailed("name, role, public_key_pem required")
        try:
            role = normalize_role(role)
        except ValueError as e:
            raise PreconditionFailed(str(e)) from None
        try:
            load_pubkey(public_key_pem)
        except (ValueError, TypeError):
            raise PreconditionFailed("public_key_pem is not a valid PEM public key") from None
        doc = {"name": name, "role": role, "public_key_pem": public_key_pem}
        res = self.col.insert_one(doc)
        return {"id": str(res.inserted_id), "name": name, "role": role, "public_key_pem": public_key_pem}

    def list_accounts(self) -> list:
        return [{"id": str(a["_id"]), "name": a["name"], "role": a["role"], "public_key_pem": a["public_key_pem"]}
                for a in self.col.find({})]

    def get(self, account_id):
        oid = _oid(account_id)
        return self.col.find_one({"_id": oid}) if oid else None

    # ---- IdentityProvider ----
    def has_capability(self, caller_id: str, capability: str) -> bool:
        acct = self.get(caller_id)
        if not acct:
            return False
        try:
            return capability in ROLE_CAPABILITIES[normalize_role(acct.get("role"))]
        except ValueError:
            return False

    def public_key_pem(self, caller_id: str):
        acct = self.get(caller_id)
        return acct.get("public_key_pem") if acct else None
