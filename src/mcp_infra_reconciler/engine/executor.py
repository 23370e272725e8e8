"""Executor for applying plans through providers.

Runs plan steps concurrently where the plan allows it, records state after
every successful provider operation, and contains failures to the steps
that depend on them.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..providers import (
    ProviderError,
    ProviderRegistry,
    ResourceNotFoundError,
    UnknownResourceTypeError,
)
from ..state_store import StateLock, StateRecord, StateStore
from ..utils.audit_log import ChangeTracker
from ..utils.logging_config import timed_section
from ..utils.retry import with_retry
from .graph import GraphError, ResourceGraph
from .schema import (
    ApplySummary,
    ExecuteOptions,
    Plan,
    PlanStep,
    StepAction,
    StepOutcome,
    StepStatus,
)

logger = logging.getLogger(__name__)


class OperationTimeoutError(Exception):
    """A provider call did not finish within the operation timeout."""
    pass


class PlanExecutor:
    """
    Execute plans against providers and the state store.

    Usage:
        executor = PlanExecutor(store, registry, ExecuteOptions(concurrency=4))
        summary = await executor.execute(plan, graph, lock, records)
    """

    def __init__(
        self,
        store: StateStore,
        registry: ProviderRegistry,
        options: Optional[ExecuteOptions] = None,
        tracker: Optional[ChangeTracker] = None,
    ):
        """
        Initialize executor.

        Args:
            store: State store the lock was taken on
            registry: Providers by resource type
            options: Concurrency, retry and timeout settings
            tracker: Audit tracker (one is created per executor if omitted)
        """
        self.store = store
        self.registry = registry
        self.options = options or ExecuteOptions()
        self.tracker = tracker or ChangeTracker(run_id=uuid.uuid4().hex[:12])
        self._cancelled = False
        self._records: dict[str, StateRecord] = {}
        self._known: dict[str, dict[str, Any]] = {}
        self._state_writes: Optional[asyncio.Lock] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop starting new steps. Steps already running finish normally."""
        if not self._cancelled:
            logger.warning("Cancellation requested; no new steps will be started")
        self._cancelled = True

    async def execute(
        self,
        plan: Plan,
        graph: ResourceGraph,
        lock: StateLock,
        state: dict[str, StateRecord],
    ) -> ApplySummary:
        """
        Execute a plan.

        A step starts once every step it depends on has been applied. When a
        step fails, every step that depends on it is skipped; unrelated steps
        keep going.

        Args:
            plan: Plan to execute
            graph: Desired resources, used to resolve inputs at apply time
            lock: Live state lock
            state: Recorded state the plan was computed from

        Returns:
            ApplySummary with the outcome of every step
        """
        summary = ApplySummary(outcomes={
            step.key: StepOutcome(key=step.key, address=step.address, action=step.action)
            for step in plan.steps
        })
        self._state_writes = asyncio.Lock()
        self._records = dict(state)
        self._known = {addr: dict(rec.attributes) for addr, rec in state.items()}
        semaphore = asyncio.Semaphore(max(1, self.options.concurrency))
        running: dict[asyncio.Task, str] = {}

        logger.info(
            f"Applying {len(plan.steps)} steps "
            f"(run {self.tracker.run_id}, concurrency {self.options.concurrency})"
        )

        try:
            while True:
                self._skip_blocked(plan, summary)
                if not self._cancelled:
                    for step in plan.steps:
                        outcome = summary.outcomes[step.key]
                        if outcome.status != StepStatus.PENDING:
                            continue
                        if all(summary.outcomes[d].status == StepStatus.APPLIED for d in step.deps):
                            outcome.status = StepStatus.IN_PROGRESS
                            task = asyncio.create_task(
                                self._run_step(step, graph, lock, outcome, summary, semaphore)
                            )
                            running[task] = step.key

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    summary.completed.append(running.pop(task))

        except asyncio.CancelledError:
            self.cancel()
            if running:
                # Let in-flight provider calls finish so their state is recorded
                await asyncio.wait(running)
                summary.completed.extend(running.values())
            self._finish(summary)
            raise

        self._finish(summary)
        logger.info(
            f"Apply finished: {len(summary.applied)} applied, "
            f"{len(summary.failed)} failed, {len(summary.skipped)} skipped"
        )
        return summary

    def _skip_blocked(self, plan: Plan, summary: ApplySummary) -> None:
        # Plan order is topological, so one pass propagates transitively
        for step in plan.steps:
            outcome = summary.outcomes[step.key]
            if outcome.status != StepStatus.PENDING:
                continue
            for dep in sorted(step.deps):
                dep_status = summary.outcomes[dep].status
                if dep_status in (StepStatus.FAILED, StepStatus.SKIPPED):
                    outcome.status = StepStatus.SKIPPED
                    outcome.reason = f"dependency {dep} {dep_status.value}"
                    logger.info(f"Skipping {step.key}: {outcome.reason}")
                    break

    def _finish(self, summary: ApplySummary) -> None:
        summary.cancelled = self._cancelled
        for outcome in summary.outcomes.values():
            if outcome.status in (StepStatus.PENDING, StepStatus.IN_PROGRESS):
                outcome.status = StepStatus.SKIPPED
                outcome.reason = "cancelled"

    async def _run_step(
        self,
        step: PlanStep,
        graph: ResourceGraph,
        lock: StateLock,
        outcome: StepOutcome,
        summary: ApplySummary,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            if self._cancelled:
                outcome.status = StepStatus.SKIPPED
                outcome.reason = "cancelled"
                return

            summary.started.append(step.key)
            logger.info(f"Starting {step.key}")
            try:
                if step.action == StepAction.CREATE:
                    await self._create(step, graph, lock, outcome)
                elif step.action == StepAction.UPDATE:
                    await self._update(step, graph, lock, outcome)
                else:
                    await self._delete(step, lock, outcome)
            except (ProviderError, GraphError, OperationTimeoutError, UnknownResourceTypeError) as e:
                self._fail(step, outcome, str(e))
                return
            except Exception as e:
                logger.exception(f"Unexpected error in {step.key}: {e}")
                self._fail(step, outcome, f"{type(e).__name__}: {e}")
                return

            outcome.status = StepStatus.APPLIED
            logger.info(f"Applied {step.key} after {outcome.attempts} attempt(s)")

    def _fail(self, step: PlanStep, outcome: StepOutcome, error: str) -> None:
        outcome.status = StepStatus.FAILED
        outcome.error = error
        logger.error(f"Step {step.key} failed: {error}")
        record = self._records.get(step.address)
        self.tracker.log_change(
            address=step.address,
            operation=step.action.value,
            success=False,
            attempts=outcome.attempts,
            resource_id=record.resource_id if record else None,
            error=error,
        )

    async def _call(self, step: PlanStep, outcome: StepOutcome, func: Callable, *args: Any) -> Any:
        """Call a provider operation with retry and a per-attempt timeout."""
        timeout = self.options.operation_timeout

        @with_retry(
            max_attempts=self.options.max_attempts,
            min_wait=self.options.backoff_min,
            max_wait=self.options.backoff_max,
        )
        async def call_provider():
            outcome.attempts += 1
            async with timed_section(
                f"provider_{step.action.value}", address=step.address, attempt=outcome.attempts
            ):
                if timeout:
                    return await asyncio.wait_for(func(*args), timeout=timeout)
                return await func(*args)

        try:
            return await call_provider()
        except asyncio.TimeoutError:
            raise OperationTimeoutError(f"{step.key} timed out after {timeout}s")

    async def _persist(
        self,
        lock: StateLock,
        address: str,
        record: Optional[StateRecord] = None,
    ) -> None:
        """Write (or with no record, drop) one state record in a worker thread.

        Journal appends fsync, so they run off the event loop; one at a time,
        since the store numbers entries sequentially.
        """
        async with self._state_writes:
            if record is None:
                await asyncio.to_thread(self.store.delete, lock, address)
            else:
                await asyncio.to_thread(self.store.write, lock, address, record)

    async def _create(
        self,
        step: PlanStep,
        graph: ResourceGraph,
        lock: StateLock,
        outcome: StepOutcome,
    ) -> None:
        provider = self.registry.get(step.resource_type)
        inputs = graph.evaluate(step.address, self._known, strict=True)

        attributes = await self._call(step, outcome, provider.create, step.resource_type, inputs)
        resource_id = attributes.get("id")
        if not resource_id:
            raise ProviderError(
                f"Provider {provider.name} returned no id for {step.address}",
                resource_type=step.resource_type,
            )

        record = StateRecord(
            address=step.address,
            resource_type=step.resource_type,
            resource_id=str(resource_id),
            inputs=inputs,
            attributes=dict(attributes),
            dependencies=sorted(graph.dependencies_of(step.address)),
        )
        await self._persist(lock, step.address, record)
        self._records[step.address] = record
        self._known[step.address] = dict(attributes)

        self.tracker.log_change(
            address=step.address,
            operation=step.action.value,
            success=True,
            attempts=outcome.attempts,
            resource_id=record.resource_id,
            after=record.attributes,
        )

    async def _update(
        self,
        step: PlanStep,
        graph: ResourceGraph,
        lock: StateLock,
        outcome: StepOutcome,
    ) -> None:
        provider = self.registry.get(step.resource_type)
        current = self._records[step.address]
        inputs = graph.evaluate(step.address, self._known, strict=True)

        attributes = await self._call(
            step, outcome, provider.update, step.resource_type, current.resource_id, inputs
        )
        attributes = {"id": current.resource_id, **attributes}

        record = StateRecord(
            address=step.address,
            resource_type=step.resource_type,
            resource_id=current.resource_id,
            inputs=inputs,
            attributes=attributes,
            dependencies=sorted(graph.dependencies_of(step.address)),
            created_at=current.created_at,
            updated_at=datetime.now(timezone.utc).isoformat(),
        )
        await self._persist(lock, step.address, record)
        self._records[step.address] = record
        self._known[step.address] = dict(attributes)

        self.tracker.log_change(
            address=step.address,
            operation=step.action.value,
            success=True,
            attempts=outcome.attempts,
            resource_id=record.resource_id,
            before=current.attributes,
            after=record.attributes,
        )

    async def _delete(self, step: PlanStep, lock: StateLock, outcome: StepOutcome) -> None:
        current = self._records.get(step.address)
        if current is None:
            logger.warning(f"{step.address} has no state record; nothing to delete")
            return

        provider = self.registry.get(current.resource_type)
        try:
            await self._call(step, outcome, provider.delete, current.resource_type, current.resource_id)
        except ResourceNotFoundError:
            logger.warning(
                f"{step.address} ({current.resource_id}) was already gone at the provider"
            )

        await self._persist(lock, step.address)
        self._records.pop(step.address, None)
        self._known.pop(step.address, None)

        self.tracker.log_change(
            address=step.address,
            operation=step.action.value,
            success=True,
            attempts=outcome.attempts,
            resource_id=current.resource_id,
            before=current.attributes,
        )
