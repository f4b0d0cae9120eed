"""
Execution Manager.

The operation surface of the engine: workflow registration, starting,
inspecting, listing, cancelling and retrying executions, and turning
inbound events into executions through workflow triggers. Each execution
runs as its own asyncio task driven by a WorkflowExecutor.
"""

from typing import Any, Dict, Iterable, List, Optional, Union
from dataclasses import dataclass
import asyncio
import logging
import re
import uuid

from pydantic import ValidationError

from dagflow.config import settings
from dagflow.engine.executor import WorkflowExecutor, create_execution
from dagflow.engine.models import (
    Event,
    Execution,
    ExecutionStatus,
    NodeStatus,
    WebhookSubscription,
    Workflow,
)
from dagflow.engine.scheduler import build_wave_plan, validate_workflow
from dagflow.engine.state import ExecutionState
from dagflow.engine.trigger import find_matching_triggers
from dagflow.errors import (
    DAGFlowError,
    ErrorKind,
    ExecutionNotFoundError,
    InvalidIDError,
    ValidationFailedError,
    WorkflowExistsError,
    WorkflowNotFoundError,
)
from dagflow.nodes.registry import NodeExecutorRegistry, node_registry
from dagflow.storage.memory import (
    ExecutionStore,
    WorkflowStore,
    execution_store,
    workflow_store,
)
from dagflow.webhooks.dispatcher import WebhookDispatcher


logger = logging.getLogger(__name__)

WORKFLOW_ID_PATTERN = re.compile(r"[A-Za-z0-9_.:-]+")


@dataclass
class ExecutionPage:
    """One page of a filtered execution listing."""
    items: List[Execution]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [e.model_dump(mode="json") for e in self.items],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass
class RunningExecution:
    """An execution whose task has not finished yet."""
    executor: WorkflowExecutor
    task: asyncio.Task


def _validation_failed(message: str, error: ValidationError) -> ValidationFailedError:
    return ValidationFailedError(
        f"{message}: {error.error_count()} validation error(s)",
        {"errors": error.errors(include_url=False, include_context=False)},
    )


def check_workflow_id(value: Any) -> str:
    """
    Raises:
        InvalidIDError: Unless value is a non-empty [A-Za-z0-9_.:-] string
    """
    if not isinstance(value, str) or not WORKFLOW_ID_PATTERN.fullmatch(value):
        raise InvalidIDError(value, "workflow id")
    return value


def check_execution_id(value: Any) -> str:
    """
    Raises:
        InvalidIDError: Unless value is a UUID string
    """
    try:
        uuid.UUID(value)
    except (TypeError, ValueError, AttributeError):
        raise InvalidIDError(value, "execution id") from None
    return value


class ExecutionManager:
    """
    Runs workflow executions concurrently.

    Usage:
        manager = ExecutionManager()
        await manager.create_workflow(workflow)
        execution = await manager.start_execution(workflow.id, {"user_id": "123"})
        execution = await manager.wait_for_execution(execution.id)
    """

    def __init__(
        self,
        workflows: Optional[WorkflowStore] = None,
        executions: Optional[ExecutionStore] = None,
        registry: Optional[NodeExecutorRegistry] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        node_timeout: Optional[float] = None,
        max_parallelism: Optional[int] = None,
        execution_timeout: Optional[float] = None,
        max_output_size: Optional[int] = None,
    ):
        self.workflows = workflows if workflows is not None else workflow_store
        self.executions = executions if executions is not None else execution_store
        self.registry = registry if registry is not None else node_registry
        self.dispatcher = dispatcher if dispatcher is not None else WebhookDispatcher()
        self.node_timeout = node_timeout
        self.max_parallelism = max_parallelism
        self.execution_timeout = execution_timeout
        self.max_output_size = max_output_size

        self._running: Dict[str, RunningExecution] = {}

    @property
    def active_executions(self) -> List[str]:
        return list(self._running)

    # ============================================================
    # Workflows
    # ============================================================

    async def create_workflow(self, workflow: Union[Workflow, Dict[str, Any]]) -> Workflow:
        """
        Validate and register a workflow definition.

        Args:
            workflow: Workflow model or its dict form

        Returns:
            The registered workflow

        Raises:
            ValidationFailedError: Malformed definition or structural error
            GraphCycleError: If the dependency relation has a cycle
            InvalidIDError: If the workflow id is malformed
            WorkflowExistsError: If the id is already registered
        """
        if not isinstance(workflow, Workflow):
            try:
                workflow = Workflow.model_validate(workflow)
            except ValidationError as e:
                raise _validation_failed("Invalid workflow definition", e) from None

        check_workflow_id(workflow.id)
        validate_workflow(workflow)

        if await self.workflows.exists(workflow.id):
            raise WorkflowExistsError(workflow.id)

        await self.workflows.save(workflow)
        logger.info(f"Registered workflow '{workflow.id}' ({workflow.name}, {len(workflow.nodes)} nodes)")
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow:
        check_workflow_id(workflow_id)
        workflow = await self.workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list_workflows(self) -> List[Workflow]:
        return await self.workflows.list_all()

    async def delete_workflow(self, workflow_id: str) -> None:
        """Remove a workflow. Executions already running keep their definition."""
        check_workflow_id(workflow_id)
        if not await self.workflows.delete(workflow_id):
            raise WorkflowNotFoundError(workflow_id)
        logger.info(f"Deleted workflow '{workflow_id}'")

    # ============================================================
    # Executions
    # ============================================================

    async def start_execution(
        self,
        workflow_id: str,
        input: Optional[Dict[str, Any]] = None,
        webhooks: Optional[Iterable[Union[WebhookSubscription, Dict[str, Any]]]] = None,
    ) -> Execution:
        """
        Start a new execution of a registered workflow.

        Args:
            workflow_id: Workflow to run
            input: Input variables available to node templates
            webhooks: Subscriptions for lifecycle events of this execution

        Returns:
            Snapshot of the new execution (usually still Pending)

        Raises:
            InvalidIDError: Malformed workflow id
            WorkflowNotFoundError: Unknown workflow
            ValidationFailedError: Bad input or webhook subscription
        """
        workflow = await self.get_workflow(workflow_id)

        if input is not None and not isinstance(input, dict):
            raise ValidationFailedError(
                "Execution input must be an object",
                {"input_type": type(input).__name__},
            )
        subscriptions = self._parse_webhooks(webhooks)

        state = ExecutionState(create_execution(workflow, input, subscriptions))
        await self._record(state.snapshot())
        self._launch(workflow, state)

        logger.info(f"Started execution {state.execution_id} of workflow '{workflow.id}'")
        return state.snapshot()

    async def get_execution(self, execution_id: str) -> Execution:
        """
        Get the current view of an execution.

        Raises:
            InvalidIDError: Malformed execution id
            ExecutionNotFoundError: Unknown execution
        """
        check_execution_id(execution_id)

        running = self._running.get(execution_id)
        if running is not None:
            return running.executor.snapshot()

        execution = await self.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[Union[ExecutionStatus, str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> ExecutionPage:
        """
        List executions, newest first.

        Args:
            workflow_id: Only executions of this workflow
            status: Only executions in this status
            limit: Page size (defaults to settings.DEFAULT_PAGE_LIMIT)
            offset: Number of matches to skip

        Raises:
            InvalidIDError: Malformed workflow id
            ValidationFailedError: Unknown status or bad paging values
        """
        if workflow_id is not None:
            check_workflow_id(workflow_id)

        if status is not None and not isinstance(status, ExecutionStatus):
            try:
                status = ExecutionStatus(status)
            except ValueError:
                raise ValidationFailedError(
                    f"Unknown execution status '{status}'",
                    {"allowed": [s.value for s in ExecutionStatus]},
                ) from None

        if limit is None:
            limit = settings.DEFAULT_PAGE_LIMIT
        if limit < 1 or offset < 0:
            raise ValidationFailedError(
                "limit must be positive and offset non-negative",
                {"limit": limit, "offset": offset},
            )

        items, total = await self.executions.list(workflow_id, status, limit, offset)
        return ExecutionPage(items=items, total=total, limit=limit, offset=offset)

    async def cancel_execution(self, execution_id: str) -> Execution:
        """
        Cancel a pending or running execution and wait for it to settle.

        Raises:
            InvalidIDError: Malformed execution id
            ExecutionNotFoundError: Unknown execution
            ValidationFailedError: The execution is already terminal
        """
        execution = await self.get_execution(execution_id)
        running = self._running.get(execution_id)

        if running is None or execution.status.is_terminal:
            raise ValidationFailedError(
                f"Execution '{execution_id}' is {execution.status.value} and cannot be cancelled",
                {"execution_id": execution_id, "status": execution.status.value},
            )

        running.executor.cancel()
        await asyncio.gather(running.task, return_exceptions=True)
        return await self.get_execution(execution_id)

    async def retry_execution(self, execution_id: str) -> Execution:
        """
        Re-run the Failed and Skipped nodes of a Failed execution.

        Succeeded results are kept and feed the re-run nodes' templates.

        Raises:
            InvalidIDError: Malformed execution id
            ExecutionNotFoundError: Unknown execution
            ValidationFailedError: The execution is not Failed
            ValidationFailedError: The workflow was redefined with other nodes
            WorkflowNotFoundError: The workflow was deleted
        """
        check_execution_id(execution_id)

        running = self._running.get(execution_id)
        if running is not None:
            if not running.executor.status.is_terminal:
                raise ValidationFailedError(
                    f"Execution '{execution_id}' is still {running.executor.status.value}",
                    {"execution_id": execution_id, "status": running.executor.status.value},
                )
            # Terminal but still flushing its last record
            await asyncio.gather(running.task, return_exceptions=True)

        execution = await self.get_execution(execution_id)
        if execution.status != ExecutionStatus.FAILED:
            raise ValidationFailedError(
                f"Only failed executions can be retried (status: {execution.status.value})",
                {"execution_id": execution_id, "status": execution.status.value},
            )

        workflow = await self.workflows.get(execution.workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(execution.workflow_id)

        if set(workflow.node_ids) != set(execution.node_results):
            raise ValidationFailedError(
                f"Workflow '{workflow.id}' was redefined since execution '{execution_id}' ran",
                {
                    "execution_id": execution_id,
                    "added": sorted(set(workflow.node_ids) - set(execution.node_results)),
                    "removed": sorted(set(execution.node_results) - set(workflow.node_ids)),
                },
            )

        plan = build_wave_plan(workflow)
        to_reset = set()
        for node_id in execution.nodes_with_status(NodeStatus.FAILED, NodeStatus.SKIPPED):
            to_reset.add(node_id)
            to_reset.update(plan.descendants(node_id))

        state = ExecutionState(execution)
        await state.reset_nodes(sorted(to_reset))
        await state.begin_retry()
        await self._record(state.snapshot())
        self._launch(workflow, state)

        logger.info(
            f"Retrying execution {execution_id} (attempt {execution.retry_count + 1}): "
            f"re-running {sorted(to_reset)}"
        )
        return state.snapshot()

    async def ingest_event(
        self,
        source: str,
        status: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> List[Execution]:
        """
        Start an execution for every workflow with a matching trigger.

        The event payload becomes the execution input. Workflows that
        fail to start are logged and skipped.

        Returns:
            The started executions (empty if nothing matched)
        """
        try:
            event = Event(source=source, status=status, payload=payload or {})
        except ValidationError as e:
            raise _validation_failed("Invalid event", e) from None

        started = []
        for workflow, trigger in find_matching_triggers(await self.workflows.list_all(), event):
            logger.info(f"Event {event.source}/{event.status} triggered workflow '{workflow.id}'")
            try:
                started.append(await self.start_execution(workflow.id, input=dict(event.payload)))
            except DAGFlowError as e:
                # Other matching workflows still start
                logger.warning(f"Could not start workflow '{workflow.id}' for event: {e.message}")

        if not started:
            logger.debug(f"Event {event.source}/{event.status} matched no trigger")
        return started

    async def wait_for_execution(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """
        Wait until an execution's task has finished.

        Raises:
            asyncio.TimeoutError: If it is still running after timeout seconds
        """
        check_execution_id(execution_id)

        running = self._running.get(execution_id)
        if running is not None:
            done, _ = await asyncio.wait({running.task}, timeout=timeout)
            if not done:
                raise asyncio.TimeoutError(f"Execution '{execution_id}' still running after {timeout}s")

        return await self.get_execution(execution_id)

    async def shutdown(self) -> None:
        """Cancel running executions and flush webhook deliveries."""
        running = list(self._running.values())
        for entry in running:
            entry.executor.cancel()
        await asyncio.gather(*(entry.task for entry in running), return_exceptions=True)
        await self.dispatcher.drain()
        logger.info(f"Execution manager stopped ({len(running)} execution(s) cancelled)")

    # ============================================================
    # Internals
    # ============================================================

    def _parse_webhooks(self, webhooks) -> List[WebhookSubscription]:
        subscriptions = []
        for item in webhooks or []:
            if isinstance(item, WebhookSubscription):
                subscriptions.append(item)
                continue
            try:
                subscriptions.append(WebhookSubscription.model_validate(item))
            except ValidationError as e:
                raise _validation_failed("Invalid webhook subscription", e) from None
        return subscriptions

    def _launch(self, workflow: Workflow, state: ExecutionState) -> None:
        executor = WorkflowExecutor(
            workflow,
            state,
            registry=self.registry,
            store=self.executions,
            dispatcher=self.dispatcher,
            node_timeout=self.node_timeout,
            max_parallelism=self.max_parallelism,
            execution_timeout=self.execution_timeout,
            max_output_size=self.max_output_size,
        )
        task = asyncio.create_task(self._run(executor), name=f"execution-{state.execution_id}")
        self._running[state.execution_id] = RunningExecution(executor=executor, task=task)

    async def _run(self, executor: WorkflowExecutor) -> None:
        execution_id = executor.execution_id
        try:
            await executor.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Execution {execution_id} crashed")
            message = f"internal error: {e}"
            await executor.state.settle_open_nodes(message, ErrorKind.INTERNAL.value)
            await executor.state.set_status(ExecutionStatus.FAILED, message)
            await self._record(executor.snapshot())
        finally:
            current = self._running.get(execution_id)
            if current is not None and current.executor is executor:
                del self._running[execution_id]

    async def _record(self, execution: Execution) -> None:
        try:
            await self.executions.record(execution)
        except Exception:
            logger.exception(f"Failed to record execution {execution.id}")
