from datetime import datetime, timezone

from carbon_registry.legacy import legacy_project
from carbon_registry.lifecycle import LifecycleState

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


def test_pending_document():
    project = legacy_project({
        "_id": {"$oid": "65f0c0ffee"},
        "Project_Name": "Sundarbans block 7",
        "status": "Pending",
        "Carbon_Sequestration_tCO2": 812.9,
        "State_UT": "West Bengal",
        "District": "",
        "Area_Hectares": "14.2",
        "createdAt": {"$date": "2024-11-02T08:00:00Z"},
    }, NOW)
    assert project.project_id == "PROJ_65f0c0ffee"
    assert project.state == LifecycleState.SUBMITTED
    assert project.credits_claimed == 812
    assert project.location == {"state_ut": "West Bengal"}
    assert project.area_hectares == 14.2
    assert project.submitted_at == datetime(2024, 11, 2, 8, tzinfo=timezone.utc)
    assert project.approved_at is None
    assert project.violations() == []


def test_completed_document_keeps_token():
    project = legacy_project({
        "Project_ID": "PROJ_1700000000000_abcd1234",
        "Project_Name": "Seagrass",
        "status": "Completed",
        "Carbon_Credits_Issued": 300,
        "blockchain": {"tokenId": "7", "transactionHash": "0xfeed", "blockNumber": 99},
    }, NOW)
    assert project.state == LifecycleState.REGISTERED
    assert project.ledger_ref.token_id == 7
    assert project.ledger_ref.last_tx_hash == "0xfeed"
    assert project.approved_at == NOW
    assert project.violations() == []


def test_ledger_status_without_token_goes_back_to_approved():
    project = legacy_project({"Project_ID": "P", "status": "Completed", "Carbon_Credits_Issued": 10}, NOW)
    assert project.state == LifecycleState.APPROVED
    assert project.ledger_ref is None
    assert project.metadata["legacy_status"] == "Completed"


def test_retired_document_is_fully_retired():
    project = legacy_project({"Project_ID": "P", "status": "Retired", "Carbon_Credits_Issued": 50,
                              "blockchain": {"tokenId": 3}}, NOW)
    assert project.state == LifecycleState.RETIRED
    assert project.credits_retired == 50
    assert project.violations() == []
