# mongo_store.py — MongoDB adapters for projects and evidence (pymongo)
import os
from dataclasses import replace

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError
from werkzeug.utils import secure_filename

from .errors import EvidenceNotFound, PreconditionFailed, ProjectNotFound, VersionConflict
from .lifecycle import LifecycleState
from .models import Evidence, Project

logger = structlog.get_logger(__name__)


def connect(settings):
    # tz_aware so datetimes read back compare with utcnow()
    client = MongoClient(settings.mongodb_uri, tz_aware=True)
    return client, client[settings.db_name]


class MongoProjectStore:
    """Projects keyed by project_id; every write is a compare-and-swap on version."""

    def __init__(self, db):
        self.col = db.projects

    def ensure_indexes(self):
        # idempotent
        self.col.create_index([("state", ASCENDING), ("approved_at", ASCENDING)])
        self.col.create_index("pending_operation.requested_at", sparse=True)
        self.col.create_index("pending_operation.idempotency_key", sparse=True)
        self.col.create_index([("submitted_at", DESCENDING)])

    def create(self, project: Project) -> Project:
        new = project.evolve(version=1)
        try:
            self.col.insert_one(new.to_document())
        except DuplicateKeyError:
            raise PreconditionFailed(f"project {project.project_id} already exists") from None
        return new

    def load(self, project_id: str) -> Project:
        doc = self.col.find_one({"_id": project_id})
        if not doc:
            raise ProjectNotFound(project_id)
        return Project.from_document(doc)

    def compare_and_swap(self, project_id: str, expected_version: int, project: Project) -> Project:
        new = project.evolve(version=expected_version + 1)
        res = self.col.replace_one({"_id": project_id, "version": expected_version}, new.to_document())
        if res.matched_count != 1:
            if self.col.count_documents({"_id": project_id}, limit=1) == 0:
                raise ProjectNotFound(project_id)
            # concurrent change
            logger.info("project_version_conflict", project_id=project_id, expected_version=expected_version)
            raise VersionConflict(project_id, expected_version)
        return new

    def find_pending(self, older_than):
        cur = self.col.find({
            "pending_operation": {"$ne": None},
            "pending_operation.requested_at": {"$lte": older_than},
        }).sort("pending_operation.requested_at", ASCENDING)
        for doc in cur:
            yield Project.from_document(doc)

    def find_stalled_approvals(self, older_than):
        cur = self.col.find({
            "state": LifecycleState.APPROVED.value,
            "pending_operation": None,
            # registration of these waits for set_owner_address
            "owner_address": {"$ne": None},
            "approved_at": {"$lte": older_than},
        }).sort("approved_at", ASCENDING)
        for doc in cur:
            yield Project.from_document(doc)

    def list_projects(self, state=None):
        q = {"state": state.value} if state is not None else {}
        for doc in self.col.find(q).sort("submitted_at", DESCENDING):
            yield Project.from_document(doc)


class MongoEvidenceStore:
    """Evidence metadata in Mongo; uploaded files under ``evidence_dir``."""

    def __init__(self, db, evidence_dir: str):
        self.col = db.evidence
        self.evidence_dir = evidence_dir
        os.makedirs(evidence_dir, exist_ok=True)

    def ensure_indexes(self):
        self.col.create_index([("project_id", ASCENDING), ("sha256_hex", ASCENDING)], unique=True)
        self.col.create_index([("project_id", ASCENDING), ("created_at", ASCENDING)])

    def store(self, evidence: Evidence, content=None) -> str:
        ex = self.col.find_one({"project_id": evidence.project_id, "sha256_hex": evidence.sha256_hex})
        if ex:
            return str(ex["_id"])

        if content is not None:
            filename = secure_filename(evidence.filename or "evidence.bin") or "evidence.bin"
            stored_path = os.path.join(self.evidence_dir, f"{evidence.sha256_hex[:12]}_{filename}")
            with open(stored_path, "wb") as out:
                out.write(content)
            evidence = replace(evidence, filename=filename, stored_path=stored_path)

        try:
            res = self.col.insert_one(evidence.to_document())
        except DuplicateKeyError:
            # same bytes raced in from another request
            ex = self.col.find_one({"project_id": evidence.project_id, "sha256_hex": evidence.sha256_hex})
            return str(ex["_id"])
        return str(res.inserted_id)

    def fetch(self, evidence_id: str) -> Evidence:
        try:
            oid = ObjectId(evidence_id)
        except (InvalidId, TypeError):
            raise EvidenceNotFound(f"evidence not found: {evidence_id}") from None
        doc = self.col.find_one({"_id": oid})
        if not doc:
            raise EvidenceNotFound(f"evidence not found: {evidence_id}")
        return Evidence.from_document(doc)

    def list_for_project(self, project_id: str):
        for doc in self.col.find({"project_id": project_id}).sort("created_at", ASCENDING):
            yield Evidence.from_document(doc)
