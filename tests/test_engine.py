"""
Tests for the execution state and the wave executor.
"""

import asyncio

import pytest

from dagflow.engine.executor import WorkflowExecutor, create_execution, execute_workflow
from dagflow.engine.models import (
    ExecutionStatus,
    NodeDefinition,
    NodeStatus,
    RetryPolicy,
    WebhookSubscription,
    Workflow,
)
from dagflow.engine.state import ExecutionState
from dagflow.errors import StateTransitionError
from dagflow.storage.memory import ExecutionStore


def node(node_id, type="echo", depends_on=(), config=None, **kwargs):
    return NodeDefinition(
        id=node_id,
        type=type,
        depends_on=list(depends_on),
        config=config or {},
        **kwargs,
    )


def workflow(*nodes):
    return Workflow(id="wf", nodes=list(nodes))


def make_executor(wf, registry, input=None, webhooks=None, **kwargs):
    state = ExecutionState(create_execution(wf, input, webhooks))
    return WorkflowExecutor(wf, state, registry=registry, **kwargs)


# ============================================================
# Execution State
# ============================================================

class TestExecutionState:
    """Tests for NodeResult transitions."""

    def setup_method(self):
        self.wf = workflow(node("a"), node("b", depends_on=["a"]))

    @pytest.mark.asyncio
    async def test_forward_transitions(self):
        """Test Pending -> Running -> Succeeded records timestamps and output."""
        state = ExecutionState(create_execution(self.wf))

        await state.transition("a", NodeStatus.RUNNING)
        result = await state.transition("a", NodeStatus.SUCCEEDED, output={"x": 1}, attempts=1)

        assert result.status == NodeStatus.SUCCEEDED
        assert result.output == {"x": 1}
        assert result.started_at is not None
        assert result.completed_at >= result.started_at
        assert state.outputs_of(["a", "b"]) == {"a": {"x": 1}}

    @pytest.mark.asyncio
    async def test_terminal_is_final(self):
        """Test a terminal result cannot change again."""
        state = ExecutionState(create_execution(self.wf))
        await state.transition("a", NodeStatus.SKIPPED, error="skip")

        with pytest.raises(StateTransitionError):
            await state.transition("a", NodeStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_no_backwards_transition(self):
        """Test Running cannot go back to Pending."""
        state = ExecutionState(create_execution(self.wf))
        await state.transition("a", NodeStatus.RUNNING)

        with pytest.raises(StateTransitionError):
            await state.transition("a", NodeStatus.PENDING)

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self):
        """Test snapshots do not share state with the live record."""
        state = ExecutionState(create_execution(self.wf, {"k": "v"}))
        snapshot = state.snapshot()
        snapshot.input["k"] = "changed"

        await state.transition("a", NodeStatus.RUNNING)

        assert state.input["k"] == "v"
        assert snapshot.node_results["a"].status == NodeStatus.PENDING

    @pytest.mark.asyncio
    async def test_reset_and_retry(self):
        """Test reset gives fresh Pending results and begin_retry counts."""
        state = ExecutionState(create_execution(self.wf))
        await state.transition("a", NodeStatus.FAILED, error="x")
        await state.set_status(ExecutionStatus.FAILED, "x")

        await state.reset_nodes(["a"])
        await state.begin_retry()

        snapshot = state.snapshot()
        assert snapshot.node_results["a"].status == NodeStatus.PENDING
        assert snapshot.node_results["a"].error is None
        assert snapshot.status == ExecutionStatus.PENDING
        assert snapshot.retry_count == 1
        assert snapshot.error is None


# ============================================================
# Wave Executor
# ============================================================

class TestWorkflowExecutor:
    """Tests for wave execution."""

    @pytest.mark.asyncio
    async def test_simple_execution(self, registry, echo):
        """Test a single node workflow completes."""
        execution = await make_executor(workflow(node("a")), registry).run()

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.node_results["a"].status == NodeStatus.SUCCEEDED
        assert execution.node_results["a"].attempts == 1
        assert execution.started_at is not None
        assert execution.completed_at is not None
        assert echo.calls == ["a"]

    @pytest.mark.asyncio
    async def test_fan_out_waves(self, registry, echo):
        """Test 1 -> {2, 3} runs 1 alone, then 2 and 3 concurrently."""
        wf = workflow(
            node("1", config={"sleep": 0.02}),
            node("2", depends_on=["1"], config={"sleep": 0.1}),
            node("3", depends_on=["1"], config={"sleep": 0.1}),
        )

        execution = await make_executor(wf, registry).run()

        assert execution.status == ExecutionStatus.COMPLETED
        assert echo.calls[0] == "1"
        assert sorted(echo.calls[1:]) == ["2", "3"]
        assert echo.peak == 2

        first = execution.node_results["1"]
        for node_id in ("2", "3"):
            assert execution.node_results[node_id].started_at >= first.completed_at

    @pytest.mark.asyncio
    async def test_failure_skips_dependents_only(self, registry, echo):
        """Test a failed node skips its dependents while independent branches finish."""
        wf = workflow(
            node("a", type="fail"),
            node("b", depends_on=["a"]),
            node("c", depends_on=["b"]),
            node("d"),
            node("e", depends_on=["d"]),
        )

        execution = await make_executor(wf, registry).run()
        results = execution.node_results

        assert execution.status == ExecutionStatus.FAILED
        assert results["a"].status == NodeStatus.FAILED
        assert results["a"].error_kind == "node_execution"
        assert results["b"].status == NodeStatus.SKIPPED
        assert results["c"].status == NodeStatus.SKIPPED
        assert results["d"].status == NodeStatus.SUCCEEDED
        assert results["e"].status == NodeStatus.SUCCEEDED
        assert sorted(echo.calls) == ["d", "e"]
        assert "a" in execution.error

    @pytest.mark.asyncio
    async def test_template_from_input(self, registry, upstream_app):
        """Test {{.user_id}} resolves to "123" in the request."""
        wf = workflow(node("fetch", type="http", config={"url": "http://upstream/users/{{.user_id}}"}))

        execution = await make_executor(wf, registry, {"user_id": "123"}).run()

        output = execution.node_results["fetch"].output
        assert execution.status == ExecutionStatus.COMPLETED
        assert output["status"] == 200
        assert output["body"]["id"] == "123"

    @pytest.mark.asyncio
    async def test_upstream_output_flows_downstream(self, registry, upstream_app):
        """Test a dependent node reads its dependency's output."""
        wf = workflow(
            node("fetch", type="http", config={"url": "http://upstream/users/{{.user_id}}"}),
            node("billing", type="http", depends_on=["fetch"], config={
                "method": "POST",
                "url": "http://upstream/billing/customers",
                "body": {"user_id": "{{.user_id}}", "email": "{{.fetch.body.email}}"},
            }),
        )

        execution = await make_executor(wf, registry, {"user_id": "7"}).run()

        assert execution.status == ExecutionStatus.COMPLETED
        assert upstream_app.state.requests == [("billing", {"user_id": "7", "email": "user7@example.com"})]
        assert execution.node_results["billing"].output["body"]["customer_id"] == "cus_7"

    @pytest.mark.asyncio
    async def test_unknown_template_path_fails_node(self, registry, echo):
        """Test an unresolvable placeholder fails the node with a configuration error."""
        wf = workflow(
            node("a", config={"value": "{{.missing.path}}"}),
            node("b", depends_on=["a"]),
        )

        execution = await make_executor(wf, registry).run()

        assert execution.status == ExecutionStatus.FAILED
        assert execution.node_results["a"].status == NodeStatus.FAILED
        assert execution.node_results["a"].error_kind == "node_configuration"
        assert "missing.path" in execution.node_results["a"].error
        assert execution.node_results["b"].status == NodeStatus.SKIPPED
        assert echo.calls == []

    @pytest.mark.asyncio
    async def test_scope_limited_to_ancestors(self, registry):
        """Test a node cannot read outputs of nodes it does not depend on."""
        wf = workflow(
            node("a"),
            node("b"),
            node("c", depends_on=["a"], config={"from_a": "{{.a.node}}", "from_b": "{{.b.node}}"}),
        )

        execution = await make_executor(wf, registry).run()

        assert execution.node_results["c"].status == NodeStatus.FAILED
        assert execution.node_results["c"].error_kind == "node_configuration"

    @pytest.mark.asyncio
    async def test_unknown_node_type(self, registry):
        """Test an unregistered type fails the node without running it."""
        wf = workflow(node("a", type="ghost"), node("b"))

        execution = await make_executor(wf, registry).run()

        assert execution.node_results["a"].status == NodeStatus.FAILED
        assert execution.node_results["a"].error_kind == "node_configuration"
        assert execution.node_results["a"].attempts == 0
        assert execution.node_results["b"].status == NodeStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_node_timeout(self, registry):
        """Test a node exceeding its timeout fails with node_timeout."""
        wf = workflow(node("slow", type="slow", timeout=0.05))

        execution = await make_executor(wf, registry).run()

        result = execution.node_results["slow"]
        assert result.status == NodeStatus.FAILED
        assert result.error_kind == "node_timeout"

    @pytest.mark.asyncio
    async def test_default_node_timeout(self, registry):
        """Test the executor-wide timeout applies when the node has none."""
        wf = workflow(node("slow", type="slow"))

        execution = await make_executor(wf, registry, node_timeout=0.05).run()

        assert execution.node_results["slow"].error_kind == "node_timeout"

    @pytest.mark.asyncio
    async def test_retry_policy_recovers(self, registry, flaky):
        """Test retryable failures are retried up to max_attempts."""
        wf = workflow(node("a", type="flaky", retry=RetryPolicy(max_attempts=3)))

        execution = await make_executor(wf, registry).run()

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.node_results["a"].attempts == 3
        assert execution.node_results["a"].output == {"attempt": 3}
        assert flaky.attempts == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_retry_policy_exhausted(self, registry, flaky):
        """Test the node fails once attempts run out."""
        wf = workflow(node("a", type="flaky", retry=RetryPolicy(max_attempts=2)))

        execution = await make_executor(wf, registry).run()

        assert execution.node_results["a"].status == NodeStatus.FAILED
        assert execution.node_results["a"].attempts == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error(self, registry, failing):
        """Test non-retryable errors skip the retry policy."""
        wf = workflow(node("a", type="fail", retry=RetryPolicy(max_attempts=5)))

        execution = await make_executor(wf, registry).run()

        assert execution.node_results["a"].attempts == 1
        assert failing.calls == ["a"]

    @pytest.mark.asyncio
    async def test_unexpected_exception(self, registry):
        """Test exceptions outside the taxonomy are recorded as internal failures."""
        execution = await make_executor(workflow(node("a", type="crash")), registry).run()

        assert execution.node_results["a"].status == NodeStatus.FAILED
        assert execution.node_results["a"].error_kind == "internal"
        assert "RuntimeError" in execution.node_results["a"].error

    @pytest.mark.asyncio
    async def test_cycle_runs_nothing(self, registry, echo):
        """Test a cyclic workflow fails before any node runs."""
        wf = workflow(node("a", depends_on=["b"]), node("b", depends_on=["a"]), node("c"))

        execution = await make_executor(wf, registry).run()

        assert execution.status == ExecutionStatus.FAILED
        assert "cycle" in execution.error
        assert all(r.status == NodeStatus.SKIPPED for r in execution.node_results.values())
        assert echo.calls == []

    @pytest.mark.asyncio
    async def test_cycle_emits_node_skipped(self, registry, dispatcher, delivery):
        """Test an aborted run still reports every skipped node."""
        wf = workflow(node("a", depends_on=["b"]), node("b", depends_on=["a"]), node("c"))
        hooks = [WebhookSubscription(url="http://hooks/all")]
        store = ExecutionStore()

        execution = await make_executor(wf, registry, webhooks=hooks, dispatcher=dispatcher, store=store).run()
        await dispatcher.drain()

        skipped = [p for p in delivery.payloads if p["event"] == "node.skipped"]
        assert sorted(p["node_id"] for p in skipped) == ["a", "b", "c"]
        assert all("cycle" in p["reason"] for p in skipped)
        assert delivery.events()[-1] == "execution.failed"
        assert (await store.get(execution.id)).node_results["c"].status == NodeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_workflow_variables(self, registry):
        """Test workflow variables feed templates and the input overrides them."""
        wf = Workflow(
            id="wf",
            nodes=[node("a", config={"env": "{{.env}}", "user": "{{.user}}"})],
            variables={"env": "prod", "user": "nobody"},
        )

        execution = await make_executor(wf, registry, input={"user": "42"}).run()

        assert execution.node_results["a"].output["config"] == {"env": "prod", "user": "42"}
        assert execution.input == {"user": "42"}

    @pytest.mark.asyncio
    async def test_execution_timeout(self, registry, echo):
        """Test the run budget fails in-flight nodes and skips the rest."""
        wf = workflow(
            node("a"),
            node("slow", type="slow"),
            node("after", depends_on=["slow"]),
        )
        executor = make_executor(wf, registry, execution_timeout=0.1)

        execution = await asyncio.wait_for(executor.run(), timeout=2)

        assert executor.timed_out
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == "Execution timed out after 0.1s"
        assert execution.node_results["a"].status == NodeStatus.SUCCEEDED
        assert execution.node_results["slow"].status == NodeStatus.FAILED
        assert execution.node_results["slow"].error_kind == "node_timeout"
        assert execution.node_results["after"].status == NodeStatus.SKIPPED
        assert execution.node_results["after"].error == "Execution timed out after 0.1s"
        assert echo.calls == ["a"]

    @pytest.mark.asyncio
    async def test_execution_timeout_not_reached(self, registry):
        """Test a run that finishes in time is unaffected by the budget."""
        execution = await make_executor(workflow(node("a")), registry, execution_timeout=5).run()

        assert execution.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_max_output_size(self, registry, echo):
        """Test oversized outputs fail the node without a retry."""
        wf = workflow(
            node("big", config={"blob": "x" * 200}, retry=RetryPolicy(max_attempts=3)),
            node("small"),
        )

        execution = await make_executor(wf, registry, max_output_size=100).run()

        big = execution.node_results["big"]
        assert big.status == NodeStatus.FAILED
        assert big.error_kind == "node_execution"
        assert "exceeds limit (100 bytes)" in big.error
        assert big.attempts == 1
        assert execution.node_results["small"].status == NodeStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_unserializable_output_is_kept(self, registry, dispatcher, delivery, caplog):
        """Test an output webhooks cannot encode does not disturb the node."""
        class OpaqueExecutor:
            def validate(self, config):
                pass

            async def execute(self, ctx, config):
                return object()

        registry.add("opaque", OpaqueExecutor())
        wf = workflow(node("a", type="opaque"), node("b", depends_on=["a"]))
        hooks = [WebhookSubscription(url="http://hooks/all")]

        execution = await make_executor(wf, registry, webhooks=hooks, dispatcher=dispatcher).run()
        await dispatcher.drain()

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.node_results["a"].status == NodeStatus.SUCCEEDED
        assert "Failed to dispatch node.completed" in caplog.text
        assert delivery.events().count("node.completed") == 1
        assert delivery.events()[-1] == "execution.completed"

    @pytest.mark.asyncio
    async def test_max_parallelism(self, registry, echo):
        """Test the semaphore bounds concurrent nodes in a wave."""
        wf = workflow(*[node(f"n{i}", config={"sleep": 0.05}) for i in range(4)])

        execution = await make_executor(wf, registry, max_parallelism=2).run()

        assert execution.status == ExecutionStatus.COMPLETED
        assert echo.peak == 2

    @pytest.mark.asyncio
    async def test_records_transitions(self, registry):
        """Test the store holds the terminal record after the run."""
        store = ExecutionStore()
        executor = make_executor(workflow(node("a"), node("b", depends_on=["a"])), registry, store=store)

        execution = await executor.run()
        stored = await store.get(execution.id)

        assert stored.status == ExecutionStatus.COMPLETED
        assert stored.node_results["b"].status == NodeStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_store_errors_do_not_fail_execution(self, registry):
        """Test a failing store is logged and ignored."""
        class BrokenStore:
            async def record(self, execution):
                raise RuntimeError("disk full")

        execution = await make_executor(workflow(node("a")), registry, store=BrokenStore()).run()

        assert execution.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, registry, dispatcher, delivery):
        """Test execution, wave and node events are emitted."""
        wf = workflow(node("a"), node("b", depends_on=["a"]), node("c", type="fail"))
        hooks = [WebhookSubscription(url="http://hooks/all")]

        await make_executor(wf, registry, webhooks=hooks, dispatcher=dispatcher).run()
        await dispatcher.drain()

        events = delivery.events()
        assert events.count("execution.started") == 1
        assert events.count("wave.started") == 2
        assert events.count("wave.completed") == 2
        assert events.count("node.started") == 3
        assert events.count("node.completed") == 2
        assert events.count("node.failed") == 1
        assert events.count("execution.failed") == 1

    @pytest.mark.asyncio
    async def test_cancel(self, registry, slow, echo):
        """Test cancelling marks in-flight nodes Failed and the rest Skipped."""
        wf = workflow(
            node("a"),
            node("slow", type="slow"),
            node("after", depends_on=["slow"]),
        )
        executor = make_executor(wf, registry)

        task = asyncio.create_task(executor.run())
        await asyncio.wait_for(slow.started.wait(), timeout=2)
        executor.cancel()
        execution = await asyncio.wait_for(task, timeout=2)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.node_results["a"].status == NodeStatus.SUCCEEDED
        assert execution.node_results["slow"].status == NodeStatus.FAILED
        assert execution.node_results["slow"].error == "execution cancelled"
        assert execution.node_results["slow"].error_kind == "cancelled"
        assert execution.node_results["after"].status == NodeStatus.SKIPPED
        assert echo.calls == ["a"]

    @pytest.mark.asyncio
    async def test_execute_workflow_helper(self, registry):
        """Test the convenience function."""
        execution = await execute_workflow(workflow(node("a")), {"x": 1}, registry=registry)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.input == {"x": 1}
