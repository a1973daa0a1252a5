"""Import of project documents written by the previous registry backend.

Those documents use free-text statuses ("Pending", "Verified", "Completed",
"Retired") and a loose ``blockchain`` sub-document. They are translated once,
here, into :class:`~carbon_registry.models.Project` values.
"""
import math
from datetime import datetime

import structlog

from .lifecycle import LEDGER_BACKED_STATES, LifecycleState, state_from_external
from .models import LedgerRef, Project
from .utils import as_utc, parse_iso

logger = structlog.get_logger(__name__)


def _when(value):
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, dict) and "$date" in value:
        value = value["$date"]
    try:
        return parse_iso(str(value))
    except ValueError:
        return None


def _credits(doc) -> int:
    issued = doc.get("Carbon_Credits_Issued")
    if issued is not None:
        return int(issued)
    co2 = doc.get("Carbon_Sequestration_tCO2")
    if co2 is not None and math.isfinite(float(co2)):
        return max(0, math.floor(float(co2)))
    return 0


def _compact(d: dict) -> dict:
    return {k: v for k, v in d.items() if v not in (None, "")}


def legacy_project(doc: dict, now) -> Project:
    """One legacy document -> Project (version 0, not yet stored).

    A document claiming an on-chain status without a token id is brought back
    to APPROVED so registration is driven again by the reconciliation sweep.
    """
    legacy_id = doc.get("_id")
    if isinstance(legacy_id, dict):
        legacy_id = legacy_id.get("$oid")
    project_id = doc.get("Project_ID") or f"PROJ_{legacy_id}"
    state = state_from_external(doc.get("status") or "Pending")
    credits = _credits(doc)

    bc = doc.get("blockchain") or {}
    ledger_ref = None
    if state in LEDGER_BACKED_STATES:
        token = bc.get("tokenId")
        if token not in (None, ""):
            ledger_ref = LedgerRef(token_id=int(token), last_tx_hash=bc.get("transactionHash"),
                                   last_confirmed_block=bc.get("blockNumber"))
        else:
            logger.warning("legacy_project_missing_token", project_id=project_id, status=doc.get("status"))
            state = LifecycleState.APPROVED

    submitted_at = _when(doc.get("createdAt")) or now
    approved_at = None
    if state != LifecycleState.SUBMITTED and state != LifecycleState.REJECTED:
        approved_at = _when(doc.get("Verified_Date")) or submitted_at

    return Project(
        project_id=project_id,
        name=doc.get("Project_Name") or doc.get("name") or project_id,
        credits_claimed=credits,
        state=state,
        credits_retired=credits if state == LifecycleState.RETIRED else 0,
        owner_address=doc.get("owner_address") or bc.get("ownerAddress"),
        ledger_ref=ledger_ref,
        ecosystem_type=doc.get("Ecosystem_Type") or "",
        location=_compact({
            "state_ut": doc.get("State_UT"),
            "district": doc.get("District"),
            "village": doc.get("Village_Coastal_Panchayat"),
            "lat_long": doc.get("Latitude_Longitude"),
            "text": doc.get("location") if isinstance(doc.get("location"), str) else None,
        }),
        area_hectares=float(doc.get("Area_Hectares") or doc.get("area") or 0.0),
        metadata=_compact({
            "species_planted": doc.get("Species_Planted"),
            "plantation_date": doc.get("Plantation_Date"),
            "verification_agency": doc.get("Verification_Agency"),
            "supporting_ngo": doc.get("Supporting_NGO_Community"),
            "method": doc.get("method"),
            "legacy_status": doc.get("status"),
            "legacy_id": str(legacy_id) if legacy_id else None,
        }),
        metadata_uri=doc.get("metaURI") or None,
        submitted_by=str(doc.get("createdBy")) if doc.get("createdBy") else None,
        submitted_at=submitted_at,
        approved_at=approved_at,
        updated_at=now,
    )
