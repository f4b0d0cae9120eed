"""
Async Workflow Executor.

Runs one execution of a workflow wave by wave: every node of a wave is
dispatched as its own task, the wave is joined before the next one
starts, and each node's outcome is recorded as a NodeResult.
"""

from typing import Any, Dict, List, Optional
import asyncio
import json
import logging

from pydantic import BaseModel

from dagflow.config import settings
from dagflow.engine.models import (
    Execution,
    ExecutionStatus,
    NodeDefinition,
    NodeResult,
    NodeStatus,
    RetryPolicy,
    WebhookEvent,
    WebhookSubscription,
    Workflow,
)
from dagflow.engine.scheduler import WavePlan, build_wave_plan
from dagflow.engine.state import ExecutionState
from dagflow.engine.template import build_scope, resolve_config
from dagflow.errors import (
    DAGFlowError,
    ErrorKind,
    ExecutionTimeoutError,
    GraphCycleError,
    InternalError,
    NodeConfigurationError,
    NodeExecutionError,
    NodeTimeoutError,
    ValidationFailedError,
)
from dagflow.nodes.registry import NodeContext, NodeExecutor, NodeExecutorRegistry, node_registry


# Configure logging
logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "execution cancelled"

_TERMINAL_EVENTS = {
    ExecutionStatus.COMPLETED: WebhookEvent.EXECUTION_COMPLETED,
    ExecutionStatus.FAILED: WebhookEvent.EXECUTION_FAILED,
    ExecutionStatus.CANCELLED: WebhookEvent.EXECUTION_CANCELLED,
}


def create_execution(
    workflow: Workflow,
    input: Optional[Dict[str, Any]] = None,
    webhooks: Optional[List[WebhookSubscription]] = None,
) -> Execution:
    """Build a Pending execution with one Pending NodeResult per node."""
    return Execution(
        workflow_id=workflow.id,
        input=dict(input or {}),
        webhooks=list(webhooks or []),
        node_results={n.id: NodeResult(node_id=n.id) for n in workflow.nodes},
    )


class WorkflowExecutor:
    """
    Wave-based workflow executor.

    Executes one execution of a workflow, handling:
    - Wave scheduling with a barrier between waves
    - Bounded parallelism inside a wave
    - Per-node timeouts and retry policies
    - Skipping the dependents of failed nodes
    - Cooperative cancellation and an overall execution timeout
    - Recording every transition and emitting webhook events

    Usage:
        state = ExecutionState(create_execution(workflow, {"user_id": "123"}))
        executor = WorkflowExecutor(workflow, state)
        execution = await executor.run()
    """

    def __init__(
        self,
        workflow: Workflow,
        state: ExecutionState,
        registry: Optional[NodeExecutorRegistry] = None,
        store=None,
        dispatcher=None,
        node_timeout: Optional[float] = None,
        max_parallelism: Optional[int] = None,
        execution_timeout: Optional[float] = None,
        max_output_size: Optional[int] = None,
    ):
        """
        Initialize the executor.

        Args:
            workflow: The workflow definition to run
            state: State of the execution to drive
            registry: Node executor registry (defaults to the global one)
            store: Optional object with an async record(execution) method
            dispatcher: Optional WebhookDispatcher for lifecycle events
            node_timeout: Default per-node timeout in seconds
            max_parallelism: Concurrent nodes per wave (0 = unbounded)
            execution_timeout: Budget for the whole run in seconds (0 = unlimited)
            max_output_size: Largest node output in JSON bytes (0 = unlimited)
        """
        self.workflow = workflow
        self.state = state
        self.registry = registry if registry is not None else node_registry
        self.store = store
        self.dispatcher = dispatcher
        self.node_timeout = node_timeout if node_timeout is not None else settings.NODE_TIMEOUT
        self.execution_timeout = (
            execution_timeout if execution_timeout is not None else settings.EXECUTION_TIMEOUT
        )
        self.max_output_size = max_output_size if max_output_size is not None else settings.MAX_OUTPUT_SIZE

        parallelism = max_parallelism if max_parallelism is not None else settings.MAX_PARALLELISM
        self._semaphore = asyncio.Semaphore(parallelism) if parallelism > 0 else None

        self.plan: Optional[WavePlan] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancelled = False
        self._timed_out = False

    @property
    def execution_id(self) -> str:
        return self.state.execution_id

    @property
    def status(self) -> ExecutionStatus:
        """Get the current execution status."""
        return self.state.status

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    def snapshot(self) -> Execution:
        return self.state.snapshot()

    def cancel(self) -> None:
        """
        Cancel the execution.

        No further wave starts; in-flight node tasks are cancelled and
        recorded as Failed, nodes that never started end up Skipped.
        """
        if self._cancelled:
            return
        self._cancelled = True
        logger.info(f"[{self.execution_id}] Cancelling execution")
        for task in self._tasks.values():
            task.cancel()

    def _expire(self) -> None:
        """Stop the run like cancel(), but end it Failed with a timeout."""
        if self._cancelled:
            return
        logger.warning(f"[{self.execution_id}] Execution exceeded {self.execution_timeout}s")
        self._timed_out = True
        self.cancel()

    async def run(self) -> Execution:
        """
        Execute every wave of the workflow.

        Returns:
            Snapshot of the execution in its terminal status
        """
        try:
            self.plan = build_wave_plan(self.workflow)
        except (GraphCycleError, ValidationFailedError) as e:
            await self._abort(e)
            return self.snapshot()

        await self.state.set_status(ExecutionStatus.RUNNING)
        await self._record()
        logger.info(
            f"[{self.execution_id}] Starting workflow '{self.workflow.id}' "
            f"({len(self.plan.graph)} nodes in {len(self.plan.waves)} waves)"
        )
        self._emit(WebhookEvent.EXECUTION_STARTED, waves=self.plan.waves)

        deadline = None
        if self.execution_timeout > 0:
            deadline = asyncio.get_running_loop().call_later(self.execution_timeout, self._expire)

        try:
            for index, wave in enumerate(self.plan.waves):
                if self._cancelled:
                    logger.info(f"[{self.execution_id}] Execution stopped before wave {index}")
                    break
                await self._run_wave(index, wave)
        except asyncio.CancelledError:
            self._cancelled = True
            await self._finalize()
            raise
        finally:
            if deadline is not None:
                deadline.cancel()

        await self._finalize()
        return self.snapshot()

    # ============================================================
    # Waves
    # ============================================================

    async def _run_wave(self, index: int, wave: List[str]) -> None:
        runnable: List[tuple] = []

        for node_id in wave:
            # Succeeded results survive a retry and are not re-run
            if self.state.node_status(node_id) != NodeStatus.PENDING:
                continue

            blocked = sorted(
                dep for dep in self.plan.graph.dependencies[node_id]
                if self.state.node_status(dep) in (NodeStatus.FAILED, NodeStatus.SKIPPED)
            )
            if blocked:
                await self._skip(node_id, f"upstream node(s) did not succeed: {', '.join(blocked)}")
                continue

            node = self.workflow.get_node(node_id)
            try:
                executor = self.registry.get(node.type)
            except NodeConfigurationError as e:
                await self._fail(node_id, e, attempts=0)
                continue

            runnable.append((node, executor))

        if not runnable or self._cancelled:
            return

        node_ids = [node.id for node, _ in runnable]
        logger.info(f"[{self.execution_id}] Wave {index}: running {node_ids}")
        self._emit(WebhookEvent.WAVE_STARTED, wave=index, nodes=node_ids)

        tasks = {
            node.id: asyncio.create_task(self._run_node(node, executor))
            for node, executor in runnable
        }
        self._tasks = tasks
        try:
            await asyncio.gather(*tasks.values(), return_exceptions=True)
        except asyncio.CancelledError:
            # Outer task cancelled: let the node tasks record their outcome
            self._cancelled = True
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise
        finally:
            self._tasks = {}

        statuses = {node_id: self.state.node_status(node_id).value for node_id in node_ids}
        logger.info(f"[{self.execution_id}] Wave {index} finished: {statuses}")
        self._emit(WebhookEvent.WAVE_COMPLETED, wave=index, nodes=statuses)

    # ============================================================
    # Nodes
    # ============================================================

    async def _run_node(self, node: NodeDefinition, executor: NodeExecutor) -> None:
        if self._semaphore is None:
            await self._execute_node(node, executor)
            return
        async with self._semaphore:
            await self._execute_node(node, executor)

    async def _execute_node(self, node: NodeDefinition, executor: NodeExecutor) -> None:
        """Run one node through Running to a terminal status."""
        await self.state.transition(node.id, NodeStatus.RUNNING)
        self._emit(WebhookEvent.NODE_STARTED, node_id=node.id)
        logger.debug(f"[{self.execution_id}] Node '{node.id}' ({node.type}) started")

        attempt = 0
        try:
            scope = build_scope(
                self.state.input,
                self.state.outputs_of(self.plan.ancestors(node.id)),
                self.workflow.variables,
            )
            config = resolve_config(node.config, scope)
            executor.validate(config)

            policy = node.retry or RetryPolicy()
            timeout = node.timeout or self.node_timeout

            while True:
                attempt += 1
                await self.state.set_attempts(node.id, attempt)
                ctx = NodeContext(
                    execution_id=self.execution_id,
                    workflow_id=self.workflow.id,
                    node_id=node.id,
                    attempt=attempt,
                )
                try:
                    output = await self._invoke(executor, ctx, config, timeout)
                    break
                except NodeExecutionError as e:
                    if not e.retryable or attempt >= policy.max_attempts:
                        raise
                    delay = policy.delay_for(attempt + 1)
                    logger.info(
                        f"[{self.execution_id}] Node '{node.id}' attempt {attempt} failed "
                        f"({e.message}), retrying in {delay}s"
                    )
                    self._emit(
                        WebhookEvent.NODE_RETRYING,
                        node_id=node.id,
                        attempt=attempt,
                        error=e.message,
                        delay=delay,
                    )
                    if delay > 0:
                        await asyncio.sleep(delay)

            self._check_output_size(node.id, output)

        except asyncio.CancelledError:
            if not self.state.node_status(node.id).is_terminal:
                if self._timed_out:
                    await self._fail(node.id, ExecutionTimeoutError(self.execution_timeout), attempts=attempt)
                else:
                    await self._fail(
                        node.id,
                        DAGFlowError(CANCELLED_MESSAGE),
                        attempts=attempt,
                        kind=ErrorKind.CANCELLED,
                    )
            raise
        except DAGFlowError as e:
            await self._fail(node.id, e, attempts=attempt)
        except Exception as e:
            logger.exception(f"[{self.execution_id}] Node '{node.id}' raised an unexpected error")
            await self._fail(
                node.id,
                InternalError(f"{e.__class__.__name__}: {e}"),
                attempts=attempt,
            )
        else:
            result = await self.state.transition(
                node.id,
                NodeStatus.SUCCEEDED,
                output=output,
                attempts=attempt,
            )
            await self._record()
            logger.debug(f"[{self.execution_id}] Node '{node.id}' succeeded in {result.duration_ms:.1f}ms")
            self._emit(WebhookEvent.NODE_COMPLETED, node_id=node.id, result=result)

    def _check_output_size(self, node_id: str, output: Any) -> None:
        if self.max_output_size <= 0:
            return
        size = len(json.dumps(output, default=str).encode())
        if size > self.max_output_size:
            raise NodeExecutionError(
                f"Node '{node_id}' output size ({size} bytes) exceeds limit ({self.max_output_size} bytes)",
                {"node_id": node_id, "size": size, "limit": self.max_output_size},
                retryable=False,
            )

    async def _invoke(
        self,
        executor: NodeExecutor,
        ctx: NodeContext,
        config: Dict[str, Any],
        timeout: float,
    ) -> Any:
        try:
            return await asyncio.wait_for(executor.execute(ctx, config), timeout=timeout)
        except asyncio.TimeoutError:
            raise NodeTimeoutError(ctx.node_id, timeout) from None

    async def _fail(
        self,
        node_id: str,
        error: DAGFlowError,
        attempts: int,
        kind: Optional[ErrorKind] = None,
    ) -> None:
        error_kind = (kind or error.kind).value
        result = await self.state.transition(
            node_id,
            NodeStatus.FAILED,
            error=error.message,
            error_kind=error_kind,
            attempts=attempts,
        )
        await self._record()
        logger.warning(f"[{self.execution_id}] Node '{node_id}' failed ({error_kind}): {error.message}")
        self._emit(WebhookEvent.NODE_FAILED, node_id=node_id, result=result)

    async def _skip(self, node_id: str, reason: str) -> None:
        await self.state.transition(node_id, NodeStatus.SKIPPED, error=reason)
        await self._record()
        logger.debug(f"[{self.execution_id}] Node '{node_id}' skipped: {reason}")
        self._emit(WebhookEvent.NODE_SKIPPED, node_id=node_id, reason=reason)

    # ============================================================
    # Execution outcome
    # ============================================================

    async def _finalize(self) -> None:
        error = None
        if self._timed_out:
            error = ExecutionTimeoutError(self.execution_timeout).message
            for node_id in self.snapshot().nodes_with_status(NodeStatus.PENDING):
                await self._skip(node_id, error)
            status = ExecutionStatus.FAILED
        elif self._cancelled:
            for node_id in self.snapshot().nodes_with_status(NodeStatus.PENDING):
                await self._skip(node_id, CANCELLED_MESSAGE)
            status = ExecutionStatus.CANCELLED
            error = CANCELLED_MESSAGE
        else:
            failed = self.snapshot().nodes_with_status(NodeStatus.FAILED)
            if failed:
                status = ExecutionStatus.FAILED
                error = f"{len(failed)} node(s) failed: {', '.join(failed)}"
            else:
                status = ExecutionStatus.COMPLETED

        await self.state.set_status(status, error)
        await self._record()

        execution = self.snapshot()
        logger.info(
            f"[{self.execution_id}] Execution {status.value}"
            + (f": {error}" if error else "")
        )
        self._emit(
            _TERMINAL_EVENTS[status],
            error=error,
            nodes={node_id: r.status.value for node_id, r in execution.node_results.items()},
        )

    async def _abort(self, error: DAGFlowError) -> None:
        """Fail the execution before any node runs."""
        logger.error(f"[{self.execution_id}] Workflow '{self.workflow.id}' is not runnable: {error.message}")
        for node_id in self.snapshot().nodes_with_status(NodeStatus.PENDING):
            await self._skip(node_id, error.message)

        await self.state.set_status(ExecutionStatus.FAILED, error.message)
        await self._record()
        self._emit(WebhookEvent.EXECUTION_FAILED, error=error.message, error_kind=error.kind.value)

    # ============================================================
    # Collaborators
    # ============================================================

    async def _record(self) -> None:
        if self.store is None:
            return
        try:
            await self.store.record(self.snapshot())
        except Exception:
            logger.exception(f"[{self.execution_id}] Failed to record execution")

    def _emit(self, event: WebhookEvent, node_id: Optional[str] = None, **data: Any) -> None:
        if self.dispatcher is None or not self.state.webhooks:
            return
        try:
            data = {
                key: value.model_dump(mode="json") if isinstance(value, BaseModel) else value
                for key, value in data.items()
            }
            self.dispatcher.dispatch(event, self.snapshot(), node_id=node_id, **data)
        except Exception:
            logger.exception(f"[{self.execution_id}] Failed to dispatch {event.value}")


async def execute_workflow(
    workflow: Workflow,
    input: Optional[Dict[str, Any]] = None,
    registry: Optional[NodeExecutorRegistry] = None,
    **kwargs: Any,
) -> Execution:
    """
    Convenience function to run a workflow once.

    Args:
        workflow: The workflow definition
        input: Input variables
        registry: Node executor registry
        **kwargs: Passed to WorkflowExecutor

    Returns:
        The terminal Execution
    """
    state = ExecutionState(create_execution(workflow, input))
    executor = WorkflowExecutor(workflow, state, registry=registry, **kwargs)
    return await executor.run()
