# config.py — environment-driven settings (python-dotenv)
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _flag(value, default: bool) -> bool:
    if value is None or value == "":
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    mongodb_uri: str = "mongodb://localhost:27017"
    db_name: str = "carbon_registry"
    evidence_dir: str = "evidence_store"

    # Optional chain env; all three or the dry-run ledger is used
    web3_rpc_url: Optional[str] = None
    private_key: Optional[str] = None
    registry_contract_address: Optional[str] = None
    registry_from_block: int = 0
    chain_name: str = "sepolia"

    ledger_timeout_seconds: float = 90.0
    reconcile_grace_seconds: float = 300.0
    reconcile_interval_seconds: float = 60.0
    registration_workers: int = 4
    require_signatures: bool = True

    pinata_jwt: Optional[str] = None
    pinata_api_url: str = "https://api.pinata.cloud"

    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def chain_configured(self) -> bool:
        return bool(self.web3_rpc_url and self.private_key and self.registry_contract_address)

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        env = os.getenv
        return cls(
            mongodb_uri=env("MONGODB_URI", cls.mongodb_uri),
            db_name=env("DB_NAME", cls.db_name),
            evidence_dir=env("EVIDENCE_DIR", cls.evidence_dir),
            web3_rpc_url=env("WEB3_RPC_URL") or None,
            private_key=env("PRIVATE_KEY") or None,
            registry_contract_address=env("REGISTRY_CONTRACT_ADDRESS") or None,
            registry_from_block=int(env("REGISTRY_FROM_BLOCK", "0")),
            chain_name=env("CHAIN_NAME", cls.chain_name),
            ledger_timeout_seconds=float(env("LEDGER_TIMEOUT_SECONDS", cls.ledger_timeout_seconds)),
            reconcile_grace_seconds=float(env("RECONCILE_GRACE_SECONDS", cls.reconcile_grace_seconds)),
            reconcile_interval_seconds=float(env("RECONCILE_INTERVAL_SECONDS", cls.reconcile_interval_seconds)),
            registration_workers=int(env("REGISTRATION_WORKERS", cls.registration_workers)),
            require_signatures=_flag(env("REQUIRE_SIGNATURES"), True),
            pinata_jwt=env("PINATA_JWT") or None,
            pinata_api_url=env("PINATA_API_URL", cls.pinata_api_url),
            log_level=env("LOG_LEVEL", cls.log_level),
            log_format=env("LOG_FORMAT", cls.log_format),
        )
