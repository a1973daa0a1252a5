"""
Shared fixtures: the registry core wired to in-memory collaborators.

The dry-run ledger auto-mines every transaction unless a test scripts it
otherwise (ledger.script("timeout"), ("reject", reason), ...).
"""
import pytest

from carbon_registry.engine import ReconciliationEngine
from carbon_registry.lifecycle import LifecycleState
from carbon_registry.memory_ledger import InMemoryLedger
from carbon_registry.models import Project
from carbon_registry.workflow import ApprovalWorkflow, run_inline
from tests.fakes import (
    GRACE,
    OWNER_ADDRESS,
    FakeClock,
    InMemoryEvidenceStore,
    InMemoryProjectStore,
    StaticIdentity,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryProjectStore()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def engine(store, ledger, clock):
    return ReconciliationEngine(store, ledger, ledger_timeout=1.0, grace_period=GRACE, clock=clock)


@pytest.fixture
def identity():
    ident = StaticIdentity()
    ident.add("owner-1", "Owner")
    ident.add("verifier-1", "Verifier")
    ident.add("inspector-1", "Inspector")
    ident.add("admin-1", "Admin")
    return ident


@pytest.fixture
def evidence():
    return InMemoryEvidenceStore()


@pytest.fixture
def scheduled():
    """Collects scheduled background calls instead of running them."""
    return []


@pytest.fixture
def workflow(store, engine, identity, evidence, ledger, clock):
    return ApprovalWorkflow(store, engine, identity, evidence, ledger=ledger, schedule=run_inline, clock=clock)


@pytest.fixture
def deferred_workflow(store, engine, identity, evidence, ledger, clock, scheduled):
    def schedule(fn, *args):
        scheduled.append((fn, args))

    return ApprovalWorkflow(store, engine, identity, evidence, ledger=ledger, schedule=schedule, clock=clock)


@pytest.fixture
def approved_project(store, clock):
    """Factory: an APPROVED project ready for registration."""
    counter = iter(range(1, 10_000))

    def make(credits=1000, owner_address=OWNER_ADDRESS):
        n = next(counter)
        project = Project(
            project_id=f"PROJ_TEST_{n}",
            name=f"Mangrove block {n}",
            credits_claimed=credits,
            state=LifecycleState.APPROVED,
            owner_address=owner_address,
            submitted_by="owner-1",
            submitted_at=clock(),
            approved_at=clock(),
            updated_at=clock(),
        )
        return store.create(project)

    return make


@pytest.fixture
def registered_project(approved_project, engine):
    def make(credits=1000):
        project = approved_project(credits=credits)
        return engine.register_on_ledger(project.project_id)

    return make
