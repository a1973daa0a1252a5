import os
from dataclasses import replace
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from carbon_registry.errors import EvidenceNotFound, PreconditionFailed, ProjectNotFound, VersionConflict
from carbon_registry.lifecycle import LifecycleState, OperationKind
from carbon_registry.models import Evidence, LedgerRef, PendingOperation, Project
from carbon_registry.mongo_store import MongoEvidenceStore, MongoProjectStore
from carbon_registry.utils import sha256_hex
from tests.fakes import OWNER_ADDRESS


@pytest.fixture
def db():
    return MagicMock()


def sample_project(clock, **changes):
    project = Project(project_id="PROJ_1", name="Mangroves", credits_claimed=500, owner_address=OWNER_ADDRESS,
                      submitted_at=clock(), updated_at=clock())
    return project.evolve(**changes)


class TestProjectStore:
    def test_create_sets_first_version(self, db, clock):
        store = MongoProjectStore(db)
        created = store.create(sample_project(clock))
        assert created.version == 1
        doc = db.projects.insert_one.call_args.args[0]
        assert doc["_id"] == "PROJ_1"
        assert doc["version"] == 1
        assert doc["state"] == "SUBMITTED"

    def test_duplicate_create(self, db, clock):
        db.projects.insert_one.side_effect = DuplicateKeyError("dup")
        with pytest.raises(PreconditionFailed):
            MongoProjectStore(db).create(sample_project(clock))

    def test_load_roundtrips_nested_values(self, db, clock):
        marker = PendingOperation(kind=OperationKind.RETIRE, requested_at=clock(), idempotency_key="0xabc",
                                  amount=5, reason="offset")
        project = sample_project(clock, state=LifecycleState.REGISTERED, version=3,
                                 ledger_ref=LedgerRef(token_id=2 ** 200, last_tx_hash="0x1"),
                                 pending_operation=marker)
        doc = project.to_document()
        assert doc["ledger_ref"]["token_id"] == str(2 ** 200)
        db.projects.find_one.return_value = doc

        loaded = MongoProjectStore(db).load("PROJ_1")
        assert loaded == project

    def test_load_missing(self, db):
        db.projects.find_one.return_value = None
        with pytest.raises(ProjectNotFound):
            MongoProjectStore(db).load("nope")

    def test_compare_and_swap_filters_on_version(self, db, clock):
        db.projects.replace_one.return_value = MagicMock(matched_count=1)
        new = MongoProjectStore(db).compare_and_swap("PROJ_1", 4, sample_project(clock, name="renamed"))
        assert new.version == 5
        flt, doc = db.projects.replace_one.call_args.args
        assert flt == {"_id": "PROJ_1", "version": 4}
        assert doc["version"] == 5 and doc["name"] == "renamed"

    def test_compare_and_swap_conflict(self, db, clock):
        db.projects.replace_one.return_value = MagicMock(matched_count=0)
        db.projects.count_documents.return_value = 1
        with pytest.raises(VersionConflict):
            MongoProjectStore(db).compare_and_swap("PROJ_1", 4, sample_project(clock))

    def test_compare_and_swap_missing(self, db, clock):
        db.projects.replace_one.return_value = MagicMock(matched_count=0)
        db.projects.count_documents.return_value = 0
        with pytest.raises(ProjectNotFound):
            MongoProjectStore(db).compare_and_swap("PROJ_1", 4, sample_project(clock))

    def test_find_pending_query(self, db, clock):
        marker = PendingOperation(kind=OperationKind.REGISTER, requested_at=clock(), idempotency_key="0xk")
        db.projects.find.return_value.sort.return_value = [
            sample_project(clock, state=LifecycleState.APPROVED, pending_operation=marker).to_document()]
        found = list(MongoProjectStore(db).find_pending(clock()))
        assert found[0].pending_operation == marker
        query = db.projects.find.call_args.args[0]
        assert query["pending_operation.requested_at"] == {"$lte": clock()}

    def test_stalled_approvals_need_an_owner(self, db, clock):
        db.projects.find.return_value.sort.return_value = []
        assert list(MongoProjectStore(db).find_stalled_approvals(clock())) == []
        query = db.projects.find.call_args.args[0]
        assert query["state"] == "APPROVED"
        assert query["pending_operation"] is None
        assert query["owner_address"] == {"$ne": None}

    def test_list_projects_by_state(self, db, clock):
        db.projects.find.return_value.sort.return_value = []
        assert list(MongoProjectStore(db).list_projects(LifecycleState.RETIRED)) == []
        assert db.projects.find.call_args.args[0] == {"state": "RETIRED"}


class TestEvidenceStore:
    def evidence(self, clock, content=b"", **changes):
        ev = Evidence(project_id="PROJ_1", submitted_by="inspector-1", sha256_hex=sha256_hex(content),
                      created_at=clock(), kind="file", filename="../../etc/survey report.pdf")
        return replace(ev, **changes)

    def test_file_is_written_under_evidence_dir(self, db, clock, tmp_path):
        db.evidence.find_one.return_value = None
        db.evidence.insert_one.return_value = MagicMock(inserted_id=ObjectId())
        store = MongoEvidenceStore(db, str(tmp_path / "files"))

        content = b"%PDF-1.7"
        evidence_id = store.store(self.evidence(clock, content), content)

        doc = db.evidence.insert_one.call_args.args[0]
        assert doc["filename"] == "etc_survey_report.pdf"
        assert os.path.dirname(doc["stored_path"]) == str(tmp_path / "files")
        with open(doc["stored_path"], "rb") as fh:
            assert fh.read() == content
        assert ObjectId.is_valid(evidence_id)

    def test_duplicate_digest_returns_existing_id(self, db, clock, tmp_path):
        existing = ObjectId()
        db.evidence.find_one.return_value = {"_id": existing}
        store = MongoEvidenceStore(db, str(tmp_path))
        assert store.store(self.evidence(clock, b"x"), b"x") == str(existing)
        db.evidence.insert_one.assert_not_called()

    def test_fetch_invalid_id(self, db, tmp_path):
        with pytest.raises(EvidenceNotFound):
            MongoEvidenceStore(db, str(tmp_path)).fetch("not-an-object-id")

    def test_fetch(self, db, clock, tmp_path):
        oid = ObjectId()
        doc = self.evidence(clock, b"x").to_document()
        doc["_id"] = oid
        db.evidence.find_one.return_value = doc
        ev = MongoEvidenceStore(db, str(tmp_path)).fetch(str(oid))
        assert ev.evidence_id == str(oid)
        assert ev.project_id == "PROJ_1"
