from datetime import datetime, timezone

from hypothesis import given, settings
from hypothesis import strategies as st

from carbon_registry.engine import ReconciliationEngine
from carbon_registry.errors import AlreadyInFlight, Indeterminate, LedgerRejected, PreconditionFailed
from carbon_registry.lifecycle import LifecycleState, OperationKind, state_from_external
from carbon_registry.memory_ledger import InMemoryLedger
from carbon_registry.models import LedgerRef, PendingOperation, Project
from carbon_registry.utils import canonical_json
from tests.fakes import GRACE, OWNER_ADDRESS, FakeClock, InMemoryProjectStore

steps = st.lists(
    st.tuples(st.integers(min_value=-5, max_value=400),
              st.sampled_from([None, "timeout", "unavailable", ("reject", "refused"), ("revert", "reverted")])),
    max_size=12,
)


def registered(credits):
    clock = FakeClock()
    store, ledger = InMemoryProjectStore(), InMemoryLedger()
    engine = ReconciliationEngine(store, ledger, grace_period=GRACE, clock=clock)
    store.create(Project(project_id="P", name="p", credits_claimed=credits, state=LifecycleState.APPROVED,
                         owner_address=OWNER_ADDRESS, submitted_at=clock(), approved_at=clock()))
    engine.register_on_ledger("P")
    return clock, store, ledger, engine


@settings(max_examples=60, deadline=None)
@given(credits=st.integers(min_value=1, max_value=1000), plan=steps)
def test_offchain_and_ledger_retirements_always_agree(credits, plan):
    clock, store, ledger, engine = registered(credits)

    for amount, behaviour in plan:
        project = store.load("P")
        if project.state == LifecycleState.RETIREMENT_FAILED:
            store.compare_and_swap("P", project.version, project.evolve(state=LifecycleState.REGISTERED))
        if behaviour is not None:
            ledger.script(behaviour)
        try:
            engine.retire_credits("P", amount, "offset")
        except (AlreadyInFlight, Indeterminate, LedgerRejected, PreconditionFailed):
            pass
        clock.advance(GRACE + 1)
        ledger.mine_pending()
        engine.reconcile_indeterminate()

        project = store.load("P")
        view = ledger.read_project_state(project.ledger_ref)
        assert project.violations() == []
        assert 0 <= project.credits_retired <= credits
        if project.pending_operation is None:
            assert view.credits_retired == project.credits_retired
        assert sum(r.amount for r in project.retirements) == project.credits_retired


@given(st.dictionaries(st.text(max_size=8), st.one_of(st.integers(), st.text(max_size=8), st.booleans()),
                       max_size=6))
def test_canonical_json_ignores_key_order(payload):
    reordered = dict(reversed(list(payload.items())))
    assert canonical_json(payload) == canonical_json(reordered)


@given(st.sampled_from(["Pending", "pending", " PENDING ", "Verified", "Completed", "Retired", "Rejected"]))
def test_external_statuses_map_to_one_state(raw):
    assert isinstance(state_from_external(raw), LifecycleState)


@given(token_id=st.integers(min_value=1, max_value=2 ** 256 - 1), amount=st.integers(min_value=1, max_value=10 ** 9))
def test_documents_preserve_uint256_token_ids(token_id, amount):
    when = datetime(2025, 1, 1, tzinfo=timezone.utc)
    project = Project(project_id="P", name="p", credits_claimed=amount, state=LifecycleState.REGISTERED,
                      ledger_ref=LedgerRef(token_id=token_id),
                      pending_operation=PendingOperation(kind=OperationKind.RETIRE, requested_at=when,
                                                         idempotency_key="0x1", amount=amount, reason="r"))
    assert Project.from_document(project.to_document()) == project
