"""End-to-end orchestration tests over the in-memory transport."""

import asyncio
import uuid

import pytest

from durableflow.config import DurableflowConfig, WorkflowConfig
from durableflow.errors import (
    RegistryFrozen,
    WorkflowRunFailed,
    WorkflowVersionConflict,
    WorkflowVersionNotFound,
)
from durableflow.executor import FunctionRPCInvoker
from durableflow.graph.models import WorkflowRuntimeMeta
from durableflow.orchestrator import WorkflowOrchestrator
from durableflow.persistence import InMemoryWorkflowStateStore, SQLiteWorkflowStateStore
from durableflow.persistence.models import WorkflowRun
from durableflow.registry import WorkflowRegistry
from durableflow.transports.inmemory import InMemoryTransport
from durableflow.worker import WorkflowWorker


@pytest.fixture(params=["inmemory", "sqlite"])
def state_store(request, tmp_path):
    options = dict(lock_timeout=2.0, lock_retry_interval=0.01)
    if request.param == "inmemory":
        return InMemoryWorkflowStateStore(**options)
    return SQLiteWorkflowStateStore(tmp_path / "workflows.db", **options)


def ref(path):
    return {"type": "ref", "path": path}


def rpc(name, rpc_name=None, **kwargs):
    return {"type": "rpc", "step_name": name, "rpc_name": rpc_name or name, **kwargs}


def make_orchestrator(registry, functions, store=None, transport=None, **workflow):
    store = store or InMemoryWorkflowStateStore(lock_timeout=2.0, lock_retry_interval=0.01)
    config = DurableflowConfig(workflow=WorkflowConfig(**workflow))
    invoker = functions if isinstance(functions, FunctionRPCInvoker) else FunctionRPCInvoker(functions)
    return WorkflowOrchestrator(registry, store, invoker, transport=transport, config=config)


def onboarding_registry(graph_hash=None):
    registry = WorkflowRegistry()
    extra = {"graph_hash": graph_hash} if graph_hash else {}
    registry.register_dsl(
        "onboarding",
        [
            rpc("createOrg", input={"email": ref("trigger.output.email")}),
            rpc("sendWelcome", input={"orgId": ref("createOrg.output.orgId")}),
        ],
        **extra,
    )
    return registry


def onboarding_functions(calls):
    def create_org(data, ctx):
        calls.append("createOrg")
        return {"orgId": f"org-{data['email']}"}

    async def send_welcome(data, ctx):
        calls.append("sendWelcome")
        return {"sent": data["orgId"]}

    return {"createOrg": create_org, "sendWelcome": send_welcome}


# ----------------------------------------------------------------------
# Inline runs


@pytest.mark.asyncio
async def test_inline_sequence_passes_outputs_forward():
    calls = []
    orchestrator = make_orchestrator(onboarding_registry(), onboarding_functions(calls))

    output = await orchestrator.run_to_completion("onboarding", {"email": "ada@example.com"})

    assert output == {"sent": "org-ada@example.com"}
    assert calls == ["createOrg", "sendWelcome"]
    run = (await orchestrator.list_runs(workflow="onboarding"))[0]
    assert run.status == "completed"
    assert run.inline is True
    history = await orchestrator.get_run_history(run.id)
    assert [(h.step_name, h.status) for h in history if h.step_name == "createOrg"] == [
        ("createOrg", "pending"),
        ("createOrg", "scheduled"),
        ("createOrg", "running"),
        ("createOrg", "succeeded"),
    ]


@pytest.mark.asyncio
async def test_fan_out_joins_before_continuing():
    registry = WorkflowRegistry()
    registry.register_dsl(
        "notify",
        [
            {
                "type": "parallel",
                "step_name": "fanout",
                "children": [rpc("email"), rpc("sms")],
            },
            rpc("audit", input={"email": ref("email.output"), "sms": ref("sms.output")}),
        ],
    )
    events = []

    async def email(data, ctx):
        events.append("email-start")
        await asyncio.sleep(0.02)
        events.append("email-end")
        return "mailed"

    async def sms(data, ctx):
        events.append("sms-start")
        await asyncio.sleep(0.01)
        events.append("sms-end")
        return "texted"

    def audit(data, ctx):
        events.append("audit")
        return data

    orchestrator = make_orchestrator(registry, {"email": email, "sms": sms, "audit": audit})
    output = await orchestrator.run_to_completion("notify")

    assert output == {"email": "mailed", "sms": "texted"}
    # Both children ran concurrently and the join ran exactly once, last.
    assert events[:2] == ["email-start", "sms-start"]
    assert events.count("audit") == 1
    assert events[-1] == "audit"


def plans_registry():
    registry = WorkflowRegistry()
    registry.register_dsl(
        "plans",
        [
            {
                "type": "branch",
                "step_name": "route",
                "value": ref("trigger.output.plan"),
                "branches": {"pro": [rpc("provisionPro")], "free": []},
            },
            {"type": "return", "outputs": {"plan": ref("trigger.output.plan")}},
        ],
    )
    return registry


@pytest.mark.asyncio
async def test_branch_follows_selected_key():
    calls = []
    functions = {"provisionPro": lambda data, ctx: calls.append("pro")}
    orchestrator = make_orchestrator(plans_registry(), functions)

    assert await orchestrator.run_to_completion("plans", {"plan": "pro"}) == {"plan": "pro"}
    assert calls == ["pro"]

    assert await orchestrator.run_to_completion("plans", {"plan": "free"}) == {"plan": "free"}
    assert calls == ["pro"]


@pytest.mark.asyncio
async def test_unknown_branch_without_default_fails_run():
    orchestrator = make_orchestrator(plans_registry(), {"provisionPro": lambda d, c: None})

    run_id = await orchestrator.start_workflow("plans", {"plan": "enterprise"}, inline=True)

    run = await orchestrator.get_run(run_id)
    assert run.status == "failed"
    assert run.error.code == "MISSING_BRANCH_SELECTION"


@pytest.mark.asyncio
async def test_rpc_step_selects_branch_through_context():
    registry = WorkflowRegistry()
    registry.register_graph(
        "review",
        {
            "classify": {
                "kind": "rpc",
                "node_id": "classify",
                "rpc_name": "classify",
                "next": {"spam": "discard", "default": "publish"},
            },
            "discard": {"kind": "rpc", "node_id": "discard", "rpc_name": "discard"},
            "publish": {"kind": "rpc", "node_id": "publish", "rpc_name": "publish"},
        },
        entry_node_ids=["classify"],
    )
    calls = []

    def classify(data, ctx):
        ctx.branch("spam")
        return {"score": 0.99}

    functions = {
        "classify": classify,
        "discard": lambda d, c: calls.append("discard") or "discarded",
        "publish": lambda d, c: calls.append("publish") or "published",
    }
    orchestrator = make_orchestrator(registry, functions)

    assert await orchestrator.run_to_completion("review") == "discarded"
    assert calls == ["discard"]


@pytest.mark.asyncio
async def test_on_error_routes_failure_to_handler():
    registry = WorkflowRegistry()
    registry.register_graph(
        "checkout",
        {
            "charge": {
                "kind": "rpc",
                "node_id": "charge",
                "rpc_name": "charge",
                "next": "ship",
                "on_error": "refund",
            },
            "ship": {"kind": "rpc", "node_id": "ship", "rpc_name": "ship"},
            "refund": {
                "kind": "rpc",
                "node_id": "refund",
                "rpc_name": "refund",
                "input": {"reason": ref("charge.error.message")},
            },
        },
        entry_node_ids=["charge"],
    )

    def charge(data, ctx):
        raise RuntimeError("card declined")

    calls = []
    functions = {
        "charge": charge,
        "ship": lambda d, c: calls.append("ship"),
        "refund": lambda d, c: {"refunded": d["reason"]},
    }
    orchestrator = make_orchestrator(registry, functions)

    assert await orchestrator.run_to_completion("checkout") == {"refunded": "card declined"}
    assert calls == []


@pytest.mark.asyncio
async def test_failure_without_handler_fails_run():
    calls = []
    functions = onboarding_functions(calls)

    def broken(data, ctx):
        raise RuntimeError("org service down")

    functions["createOrg"] = broken
    orchestrator = make_orchestrator(onboarding_registry(), functions)

    with pytest.raises(WorkflowRunFailed) as exc_info:
        await orchestrator.run_to_completion("onboarding", {"email": "a@b.c"})

    assert exc_info.value.status == "failed"
    run = await orchestrator.get_run(exc_info.value.run_id)
    assert run.error.message == "org service down"
    assert calls == []


def flaky_registry(retries):
    registry = WorkflowRegistry()
    registry.register_dsl(
        "flaky", [rpc("sync", retries=retries, retry_delay="10ms")]
    )
    return registry


def flaky_function(failures):
    attempts = []

    def sync(data, ctx):
        attempts.append(ctx.attempt_count)
        if len(attempts) <= failures:
            raise RuntimeError(f"boom {len(attempts)}")
        return "synced"

    return sync, attempts


@pytest.mark.asyncio
async def test_retries_until_success():
    sync, attempts = flaky_function(failures=2)
    orchestrator = make_orchestrator(flaky_registry(retries=2), {"sync": sync})

    assert await orchestrator.run_to_completion("flaky") == "synced"
    assert attempts == [1, 2, 3]

    run = (await orchestrator.list_runs())[0]
    history = await orchestrator.get_run_history(run.id)
    assert [h.attempt_count for h in history if h.status == "failed"] == [1, 2]
    assert history[-1].status == "succeeded"
    assert history[-1].attempt_count == 3


@pytest.mark.asyncio
async def test_retry_budget_exhausted_fails_run():
    sync, attempts = flaky_function(failures=5)
    orchestrator = make_orchestrator(flaky_registry(retries=1), {"sync": sync})

    with pytest.raises(WorkflowRunFailed, match="boom 2"):
        await orchestrator.run_to_completion("flaky")
    assert attempts == [1, 2]


@pytest.mark.asyncio
async def test_engine_default_retries_apply():
    registry = WorkflowRegistry()
    registry.register_dsl("flaky", [rpc("sync")])
    sync, attempts = flaky_function(failures=1)
    orchestrator = make_orchestrator(registry, {"sync": sync}, retries=1)

    assert await orchestrator.run_to_completion("flaky") == "synced"
    assert attempts == [1, 2]


def approval_registry():
    registry = WorkflowRegistry()
    registry.register_dsl(
        "approval",
        [
            rpc("createOrg", input={"email": ref("trigger.output.email")}),
            {"type": "suspend", "step_name": "approve", "reason": "Needs approval"},
            rpc("activate", input={"orgId": ref("createOrg.output.orgId")}),
        ],
    )
    return registry


@pytest.mark.asyncio
async def test_suspend_and_resume():
    calls = []
    functions = onboarding_functions(calls)
    functions["activate"] = lambda data, ctx: calls.append("activate") or {"active": data["orgId"]}
    orchestrator = make_orchestrator(approval_registry(), functions)

    run_id = await orchestrator.start_workflow("approval", {"email": "a@b.c"}, inline=True)

    run = await orchestrator.get_run(run_id)
    assert run.status == "suspended"
    assert run.error.code == "WORKFLOW_SUSPENDED"
    assert run.error.message == "Needs approval"
    assert calls == ["createOrg"]

    assert await orchestrator.resume_workflow(run_id) is True

    run = await orchestrator.get_run(run_id)
    assert run.status == "completed"
    assert run.error is None
    assert run.output == {"active": "org-a@b.c"}
    assert calls == ["createOrg", "activate"]
    # Resuming again is a no-op
    assert await orchestrator.resume_workflow(run_id) is False


@pytest.mark.asyncio
async def test_rpc_can_suspend_with_its_result():
    registry = WorkflowRegistry()
    registry.register_dsl(
        "payment",
        [
            rpc("requestPayment"),
            rpc("fulfil", input={"ticket": ref("requestPayment.output.ticket")}),
        ],
    )

    def request_payment(data, ctx):
        ctx.suspend("Waiting for payment")
        return {"ticket": 7}

    functions = {"requestPayment": request_payment, "fulfil": lambda d, c: d["ticket"]}
    orchestrator = make_orchestrator(registry, functions)

    run_id = await orchestrator.start_workflow("payment", inline=True)
    run = await orchestrator.get_run(run_id)
    assert run.status == "suspended"
    assert run.error.message == "Waiting for payment"

    await orchestrator.resume_workflow(run_id)
    assert (await orchestrator.get_run(run_id)).output == 7


@pytest.mark.asyncio
async def test_missing_rpc_suspends_until_deployed():
    calls = []
    invoker = FunctionRPCInvoker({"createOrg": onboarding_functions(calls)["createOrg"]})
    orchestrator = make_orchestrator(onboarding_registry(), invoker)

    run_id = await orchestrator.start_workflow("onboarding", {"email": "a@b.c"}, inline=True)
    run = await orchestrator.get_run(run_id)
    assert run.status == "suspended"
    assert run.error.code == "RPC_NOT_FOUND"

    invoker.register("sendWelcome", lambda data, ctx: "welcomed")
    await orchestrator.resume_workflow(run_id)

    run = await orchestrator.get_run(run_id)
    assert run.status == "completed"
    assert run.output == "welcomed"
    step = await orchestrator.store.get_step_state(run_id, "sendWelcome")
    assert step.attempt_count == 2


@pytest.mark.asyncio
async def test_cancelled_run_ignores_in_flight_result():
    calls = []
    functions = onboarding_functions(calls)
    holder = {}

    async def create_org(data, ctx):
        calls.append("createOrg")
        await holder["orchestrator"].cancel_run(ctx.run_id, "Customer left")
        return {"orgId": "org-1"}

    functions["createOrg"] = create_org
    orchestrator = make_orchestrator(onboarding_registry(), functions)
    holder["orchestrator"] = orchestrator

    run_id = await orchestrator.start_workflow("onboarding", {"email": "a@b.c"}, inline=True)

    run = await orchestrator.get_run(run_id)
    assert run.status == "cancelled"
    assert run.error.code == "WORKFLOW_CANCELLED"
    assert run.error.message == "Customer left"
    assert calls == ["createOrg"]
    step = await orchestrator.store.get_step_state(run_id, "createOrg")
    assert step.status == "running"
    assert await orchestrator.cancel_run(run_id) is False


@pytest.mark.asyncio
async def test_unresolvable_reference_fails_run():
    registry = WorkflowRegistry()
    registry.register_graph(
        "dangling",
        {
            "start": {"kind": "rpc", "node_id": "start", "rpc_name": "start", "next": "finish"},
            "other": {"kind": "rpc", "node_id": "other", "rpc_name": "other"},
            "finish": {
                "kind": "rpc",
                "node_id": "finish",
                "rpc_name": "finish",
                "input": {"x": ref("other.output.x")},
            },
        },
        entry_node_ids=["start"],
    )
    functions = {name: (lambda d, c: None) for name in ("start", "other", "finish")}
    orchestrator = make_orchestrator(registry, functions)

    run_id = await orchestrator.start_workflow("dangling", inline=True)

    run = await orchestrator.get_run(run_id)
    assert run.status == "failed"
    assert run.error.code == "UNRESOLVED_REFERENCE"
    step = await orchestrator.store.get_step_state(run_id, "finish")
    assert step.status == "failed"


# ----------------------------------------------------------------------
# Versioning


@pytest.mark.asyncio
async def test_in_flight_run_keeps_its_original_topology(state_store):
    calls = []
    functions = onboarding_functions(calls)
    functions["sendInvoice"] = lambda data, ctx: calls.append("sendInvoice")
    store = state_store
    transport = InMemoryTransport(poll_interval=0.01)

    old = make_orchestrator(onboarding_registry("old"), functions, store, transport)
    run_id = await old.start_workflow("onboarding", {"email": "a@b.c"})

    # Redeploy with a different topology before any worker picked the run up.
    new_registry = WorkflowRegistry()
    new_registry.register_dsl(
        "onboarding",
        [
            rpc("createOrg", input={"email": ref("trigger.output.email")}),
            rpc("sendInvoice", input={"orgId": ref("createOrg.output.orgId")}),
        ],
        graph_hash="new",
    )
    new = make_orchestrator(new_registry, functions, store, transport)
    await WorkflowWorker(new, transport).run_until_idle(timeout=5)

    run = await new.get_run(run_id)
    assert run.status == "completed"
    assert run.graph_hash == "old"
    assert calls == ["createOrg", "sendWelcome"]

    # New runs pick up the live definition.
    fresh_id = await new.start_workflow("onboarding", {"email": "b@c.d"}, inline=True)
    assert (await new.get_run(fresh_id)).graph_hash == "new"
    assert calls[-1] == "sendInvoice"


@pytest.mark.asyncio
async def test_missing_version_fails_run():
    orchestrator = make_orchestrator(onboarding_registry(), {})
    run = WorkflowRun(id=str(uuid.uuid4()), workflow="onboarding", graph_hash="ghost")
    await orchestrator.store.create_run(run)

    with pytest.raises(WorkflowVersionNotFound):
        await orchestrator.advance(run.id)

    failed = await orchestrator.get_run(run.id)
    assert failed.status == "failed"
    assert failed.error.code == "VERSION_NOT_FOUND"


@pytest.mark.asyncio
async def test_complex_workflow_cannot_migrate():
    registry = WorkflowRegistry()
    registry.register(
        WorkflowRuntimeMeta.model_validate(
            {
                "name": "legacy",
                "source": "complex",
                "entry_node_ids": ["a"],
                "nodes": {"a": {"kind": "inline", "node_id": "a", "func_name": "a"}},
            }
        )
    )
    orchestrator = make_orchestrator(registry, {})
    run = WorkflowRun(id=str(uuid.uuid4()), workflow="legacy", graph_hash="previous")
    await orchestrator.store.create_run(run)

    with pytest.raises(WorkflowVersionConflict):
        await orchestrator.advance(run.id)
    assert (await orchestrator.get_run(run.id)).error.code == "VERSION_CONFLICT"


# ----------------------------------------------------------------------
# Queued runs


@pytest.mark.asyncio
async def test_queued_run_with_sleep_and_fan_out():
    registry = WorkflowRegistry()
    registry.register_dsl(
        "provision",
        [
            rpc("createOrg", input={"email": ref("trigger.output.email")}),
            {"type": "sleep", "step_name": "cooldown", "duration": "50ms"},
            {
                "type": "parallel",
                "step_name": "notify",
                "children": [
                    rpc("email", input={"orgId": ref("createOrg.output.orgId")}),
                    rpc("sms"),
                ],
            },
            rpc("audit", input={"email": ref("email.output"), "sms": ref("sms.output")}),
        ],
    )
    calls = []
    functions = onboarding_functions(calls)
    functions.update(
        {
            "email": lambda d, c: calls.append("email") or f"mail:{d['orgId']}",
            "sms": lambda d, c: calls.append("sms") or "sms",
            "audit": lambda d, c: calls.append("audit") or d,
        }
    )
    transport = InMemoryTransport(poll_interval=0.01)
    orchestrator = make_orchestrator(registry, functions, transport=transport)
    worker = WorkflowWorker(orchestrator, transport)

    run_id = await orchestrator.start_workflow("provision", {"email": "a@b.c"})
    assert (await orchestrator.get_run(run_id)).status == "running"

    await worker.run_until_idle(timeout=5)

    run = await orchestrator.get_run(run_id)
    assert run.status == "completed"
    assert run.output == {"email": "mail:org-a@b.c", "sms": "sms"}
    assert calls.count("audit") == 1
    cooldown = await orchestrator.store.get_step_state(run_id, "cooldown")
    assert cooldown.status == "succeeded"
    assert cooldown.running_at <= cooldown.succeeded_at


@pytest.mark.asyncio
async def test_duplicate_deliveries_execute_steps_once(state_store):
    calls = []
    transport = InMemoryTransport(poll_interval=0.01)
    orchestrator = make_orchestrator(
        onboarding_registry(), onboarding_functions(calls), state_store, transport
    )
    worker = WorkflowWorker(orchestrator, transport)

    run_id = await orchestrator.start_workflow("onboarding", {"email": "a@b.c"})
    await orchestrator.dispatcher.enqueue_orchestrate(run_id)
    await orchestrator.dispatcher.enqueue_orchestrate(run_id)
    await worker.run_until_idle(timeout=5)

    # Redeliver a step job after the run finished.
    await orchestrator.dispatcher.enqueue_step(run_id, "createOrg", "createOrg", {"email": "a@b.c"})
    await worker.run_until_idle(timeout=5)

    assert calls == ["createOrg", "sendWelcome"]
    assert (await orchestrator.get_run(run_id)).status == "completed"


@pytest.mark.asyncio
async def test_queued_retry_is_redelivered_after_delay():
    sync, attempts = flaky_function(failures=1)
    transport = InMemoryTransport(poll_interval=0.01)
    orchestrator = make_orchestrator(flaky_registry(retries=1), {"sync": sync}, transport=transport)

    run_id = await orchestrator.start_workflow("flaky")
    await WorkflowWorker(orchestrator, transport).run_until_idle(timeout=5)

    assert attempts == [1, 2]
    run = await orchestrator.get_run(run_id)
    assert run.status == "completed"
    assert run.output == "synced"


@pytest.mark.asyncio
async def test_lock_timeout_requeues_job():
    calls = []
    transport = InMemoryTransport(poll_interval=0.01)
    store = InMemoryWorkflowStateStore(lock_timeout=0.05, lock_retry_interval=0.01)
    orchestrator = make_orchestrator(
        onboarding_registry(), onboarding_functions(calls), store=store, transport=transport
    )
    worker = WorkflowWorker(orchestrator, transport)
    run_id = await orchestrator.start_workflow("onboarding", {"email": "a@b.c"})

    async with store.run_lock(run_id):
        raw, message = await transport.poll(orchestrator.config.workflow.orchestrator_queue_name)
        assert await worker.process(raw, message) is False

    await worker.run_until_idle(timeout=5)
    assert (await orchestrator.get_run(run_id)).status == "completed"


class CrashingRetryStore(InMemoryWorkflowStateStore):
    """Raises on the first retry creation, like a worker dying after recording the error."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.crashes = 1

    async def create_retry_attempt(self, run_id, step_name):
        if self.crashes:
            self.crashes -= 1
            raise RuntimeError("worker died")
        return await super().create_retry_attempt(run_id, step_name)


@pytest.mark.asyncio
async def test_redelivered_step_recovers_missing_retry():
    sync, attempts = flaky_function(failures=1)
    transport = InMemoryTransport(poll_interval=0.01)
    store = CrashingRetryStore(lock_timeout=2.0, lock_retry_interval=0.01)
    orchestrator = make_orchestrator(
        flaky_registry(retries=1), {"sync": sync}, store=store, transport=transport
    )

    run_id = await orchestrator.start_workflow("flaky")
    await WorkflowWorker(orchestrator, transport).run_until_idle(timeout=5)

    assert store.crashes == 0
    assert attempts == [1, 2]
    run = await orchestrator.get_run(run_id)
    assert run.status == "completed"
    assert run.output == "synced"
    step = await store.get_step_state(run_id, "sync")
    assert step.attempt_count == 2


# ----------------------------------------------------------------------
# Cancellation and registry lifecycle


@pytest.mark.asyncio
async def test_cancelled_run_is_not_suspended_by_its_step():
    registry = WorkflowRegistry()
    registry.register_dsl("payment", [rpc("requestPayment"), rpc("fulfil")])
    fulfilled = []
    holder = {}

    async def request_payment(data, ctx):
        await holder["orchestrator"].cancel_run(ctx.run_id, "Order withdrawn")
        ctx.suspend("Waiting for payment")
        return {"ticket": 7}

    functions = {"requestPayment": request_payment, "fulfil": lambda d, c: fulfilled.append(d)}
    orchestrator = make_orchestrator(registry, functions)
    holder["orchestrator"] = orchestrator

    run_id = await orchestrator.start_workflow("payment", inline=True)

    run = await orchestrator.get_run(run_id)
    assert run.status == "cancelled"
    assert run.error.message == "Order withdrawn"
    step = await orchestrator.store.get_step_state(run_id, "requestPayment")
    assert step.status == "running"
    assert fulfilled == []
    assert await orchestrator.resume_workflow(run_id) is False


def test_orchestrator_freezes_registry():
    registry = onboarding_registry()
    make_orchestrator(registry, {})

    assert registry.frozen
    with pytest.raises(RegistryFrozen):
        registry.register_dsl("late", [rpc("sync")])


def plans_switch_registry():
    registry = WorkflowRegistry()
    registry.register_dsl(
        "signup",
        [
            {
                "type": "switch",
                "step_name": "plan",
                "value": ref("trigger.output.plan"),
                "cases": [
                    {
                        "value": "free",
                        "steps": [
                            {"type": "cancel", "step_name": "reject", "reason": "Free plans are closed"}
                        ],
                    },
                    {"value": "enterprise", "steps": [rpc("assignManager")]},
                ],
            },
            rpc("provision", input={"plan": ref("trigger.output.plan")}),
        ],
    )
    return registry


@pytest.mark.asyncio
async def test_switch_case_can_cancel_the_run():
    calls = []
    functions = {
        "assignManager": lambda d, c: calls.append("assignManager"),
        "provision": lambda d, c: calls.append(f"provision:{d['plan']}") or d["plan"],
    }
    orchestrator = make_orchestrator(plans_switch_registry(), functions)

    run_id = await orchestrator.start_workflow("signup", {"plan": "free"}, inline=True)
    run = await orchestrator.get_run(run_id)
    assert run.status == "cancelled"
    assert run.error.code == "WORKFLOW_CANCELLED"
    assert run.error.message == "Free plans are closed"
    assert (await orchestrator.store.get_step_state(run_id, "reject")).status == "succeeded"
    assert calls == []

    assert await orchestrator.run_to_completion("signup", {"plan": "enterprise"}) == "enterprise"
    assert calls == ["assignManager", "provision:enterprise"]

    # Unlisted values fall through to the steps after the switch.
    assert await orchestrator.run_to_completion("signup", {"plan": "pro"}) == "pro"
    assert calls[-1] == "provision:pro"


@pytest.mark.asyncio
async def test_queued_cancel_step_stops_the_run():
    calls = []
    transport = InMemoryTransport(poll_interval=0.01)
    orchestrator = make_orchestrator(
        plans_switch_registry(),
        {"provision": lambda d, c: calls.append("provision")},
        transport=transport,
    )

    run_id = await orchestrator.start_workflow("signup", {"plan": "free"})
    await WorkflowWorker(orchestrator, transport).run_until_idle(timeout=5)

    run = await orchestrator.get_run(run_id)
    assert run.status == "cancelled"
    assert calls == []


# ----------------------------------------------------------------------
# Fanout and templates


def invites_registry(**fanout):
    registry = WorkflowRegistry()
    registry.register_dsl(
        "invites",
        [
            {
                "type": "fanout",
                "step_name": "invite",
                "source": ref("trigger.output.emails"),
                "child": {
                    "rpc_name": "sendInvite",
                    "input": {
                        "email": ref("item"),
                        "subject": {
                            "type": "template",
                            "template": "Join $0 on $1",
                            "paths": ["trigger.output.org", "trigger.output.product"],
                        },
                    },
                },
                **fanout,
            },
            rpc("report", input={"sent": ref("invite.output")}),
        ],
    )
    return registry


def invite_function(events):
    async def send_invite(data, ctx):
        events.append(("start", data["email"]))
        await asyncio.sleep(0.01)
        events.append(("end", data["email"]))
        return f"{data['email']}: {data['subject']}"

    return send_invite


@pytest.mark.asyncio
async def test_fanout_runs_one_child_per_item():
    events = []
    functions = {"sendInvite": invite_function(events), "report": lambda d, c: d["sent"]}
    orchestrator = make_orchestrator(invites_registry(), functions)

    output = await orchestrator.run_to_completion(
        "invites", {"emails": ["a@x.io", "b@x.io"], "org": "Acme", "product": None}
    )

    assert output == ["a@x.io: Join Acme on ", "b@x.io: Join Acme on "]
    # Parallel children start before either finishes.
    assert [kind for kind, _ in events[:2]] == ["start", "start"]


@pytest.mark.asyncio
async def test_sequential_fanout_waits_between_items():
    events = []
    functions = {"sendInvite": invite_function(events), "report": lambda d, c: len(d["sent"])}
    transport = InMemoryTransport(poll_interval=0.01)
    orchestrator = make_orchestrator(
        invites_registry(mode="sequential", time_between="10ms"), functions, transport=transport
    )

    run_id = await orchestrator.start_workflow(
        "invites", {"emails": ["a@x.io", "b@x.io", "c@x.io"], "org": "Acme", "product": "Docs"}
    )
    await WorkflowWorker(orchestrator, transport).run_until_idle(timeout=5)

    run = await orchestrator.get_run(run_id)
    assert run.status == "completed"
    assert run.output == 3
    assert events == [
        ("start", "a@x.io"),
        ("end", "a@x.io"),
        ("start", "b@x.io"),
        ("end", "b@x.io"),
        ("start", "c@x.io"),
        ("end", "c@x.io"),
    ]
    step = await orchestrator.store.get_step_state(run_id, "invite")
    assert step.rpc_name == "sendInvite"
    assert step.result[2] == "c@x.io: Join Acme on Docs"


@pytest.mark.asyncio
async def test_fanout_over_non_array_fails_run():
    functions = {"sendInvite": invite_function([]), "report": lambda d, c: d}
    orchestrator = make_orchestrator(invites_registry(), functions)

    run_id = await orchestrator.start_workflow("invites", {"emails": "a@x.io"}, inline=True)

    run = await orchestrator.get_run(run_id)
    assert run.status == "failed"
    assert run.error.code == "INVALID_PATH"
