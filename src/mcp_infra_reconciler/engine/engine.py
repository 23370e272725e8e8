"""Main Reconcile Engine - orchestrates the plan/apply/destroy workflow.

Provides a single entry point for:
1. Parsing the declaration
2. Validating it and building the dependency graph
3. Taking the state lock and reading recorded state
4. Calculating the change set and ordering it into a plan
5. Executing the plan and compacting state
"""
import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional, Union

from ..config.inventory import ProviderInventory
from ..config.settings import EngineSettings
from ..providers import ProviderRegistry
from ..state_store import (
    FileStateStore,
    GitError,
    StateCorruptionError,
    StateLock,
    StateLockError,
    StateRecord,
    StateStore,
)
from ..utils.logging_config import timed_section
from .diff import DiffEngine
from .executor import PlanExecutor
from .graph import GraphBuilder, GraphError, ResourceGraph
from .parser import ConfigParser, ParseError
from .planner import PlanError, Planner
from .schema import ApplyResult, ExecuteOptions, Plan, ResourceSpec
from .validator import ConfigValidator

logger = logging.getLogger(__name__)

Declaration = Union[dict[str, Any], str, Path]


def _release_if_acquired(future: "asyncio.Future[StateLock]") -> None:
    if not future.cancelled() and future.exception() is None:
        future.result().release()


class ReconcileEngine:
    """
    Main engine for reconciling declarations with recorded state.

    Usage:
        engine = ReconcileEngine(store, registry)
        result = await engine.apply("stack.yaml", variables={"project": "valheim"})
    """

    def __init__(
        self,
        store: StateStore,
        registry: ProviderRegistry,
        settings: Optional[EngineSettings] = None,
        user: Optional[str] = None,
    ):
        """
        Initialize the Reconcile Engine.

        Args:
            store: State store holding recorded actual state
            registry: Providers by resource type
            settings: Lock, concurrency and retry settings
            user: Holder name for the lock and audit log
        """
        self.store = store
        self.registry = registry
        self.settings = settings or EngineSettings()
        self.user = user
        self.parser = ConfigParser()
        self.graph_builder = GraphBuilder()
        self.validator = ConfigValidator(registry)
        self.diff_engine = DiffEngine(registry)
        self.planner = Planner()
        self._executor: Optional[PlanExecutor] = None

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        inventory: ProviderInventory,
        user: Optional[str] = None,
    ) -> "ReconcileEngine":
        """Build an engine with a file state store under ``settings.home``."""
        store = FileStateStore(settings.state_dir, git_enabled=settings.state_git)
        return cls(store, inventory.build_registry(), settings=settings, user=user)

    def execute_options(self, concurrency: Optional[int] = None) -> ExecuteOptions:
        return ExecuteOptions(
            concurrency=concurrency or self.settings.concurrency,
            max_attempts=self.settings.max_attempts,
            backoff_min=self.settings.backoff_min,
            backoff_max=self.settings.backoff_max,
            operation_timeout=self.settings.operation_timeout,
        )

    def cancel(self) -> None:
        """Stop starting new steps in the apply that is running, if any."""
        if self._executor is not None:
            self._executor.cancel()

    # === Public operations ===

    async def plan(
        self,
        declaration: Declaration,
        variables: Optional[dict[str, Any]] = None,
        lock_timeout: Optional[float] = None,
    ) -> ApplyResult:
        """Compute the plan without applying it."""
        return await self._run(
            "plan", declaration, variables, destroy=False, dry_run=True,
            lock_timeout=lock_timeout,
        )

    async def apply(
        self,
        declaration: Declaration,
        variables: Optional[dict[str, Any]] = None,
        dry_run: bool = False,
        concurrency: Optional[int] = None,
        lock_timeout: Optional[float] = None,
    ) -> ApplyResult:
        """
        Reconcile recorded state with a declaration.

        This is the main entry point. It:
        1. Parses and validates the declaration, builds the graph
        2. Takes the state lock (held until the apply completes)
        3. Diffs against recorded state and plans the steps
        4. Executes (or dry-runs) the plan

        Args:
            declaration: Declaration mapping or path to a YAML file
            variables: Values for ``${var.NAME}`` expressions
            dry_run: If True, return the plan without calling providers
            concurrency: Override of the settings' concurrency
            lock_timeout: Override of the settings' lock timeout

        Returns:
            ApplyResult with the plan, per-step outcomes, or the fatal error
        """
        return await self._run(
            "apply", declaration, variables, destroy=False, dry_run=dry_run,
            concurrency=concurrency, lock_timeout=lock_timeout,
        )

    async def destroy(
        self,
        declaration: Optional[Declaration] = None,
        variables: Optional[dict[str, Any]] = None,
        dry_run: bool = False,
        concurrency: Optional[int] = None,
        lock_timeout: Optional[float] = None,
    ) -> ApplyResult:
        """Destroy every recorded resource, dependents first.

        The declaration, when given, is still parsed and checked so a broken
        file is reported, but the plan is computed against an empty desired
        state.
        """
        return await self._run(
            "destroy", declaration, variables, destroy=True, dry_run=dry_run,
            concurrency=concurrency, lock_timeout=lock_timeout,
        )

    async def read_state(self, lock_timeout: Optional[float] = None) -> dict[str, StateRecord]:
        """Read all recorded state under the lock."""
        lock = await self._acquire_lock("state read", lock_timeout)
        with lock:
            return self.store.read_all(lock)

    def load_specs(
        self,
        declaration: Declaration,
        variables: Optional[dict[str, Any]] = None,
    ) -> list[ResourceSpec]:
        """Parse a declaration mapping or file (for external use)."""
        if isinstance(declaration, (str, Path)):
            return self.parser.load(declaration, variables)
        return self.parser.parse(declaration, variables)

    def build_graph(self, specs: list[ResourceSpec]) -> ResourceGraph:
        """Build the dependency graph (for external use)."""
        return self.graph_builder.build(specs)

    # === Workflow ===

    async def _run(
        self,
        operation: str,
        declaration: Optional[Declaration],
        variables: Optional[dict[str, Any]],
        destroy: bool,
        dry_run: bool,
        concurrency: Optional[int] = None,
        lock_timeout: Optional[float] = None,
    ) -> ApplyResult:
        result = ApplyResult(operation=operation, dry_run=dry_run)

        # Step 1: Parse, validate, build graph. Nothing is locked yet.
        logger.info(f"Preparing {operation}")
        try:
            specs = self.load_specs(declaration, variables) if declaration is not None else []
            validation = self.validator.validate(specs)
            result.warnings.extend(validation.warnings)
            if not validation.valid:
                return self._fatal(
                    result,
                    f"Validation failed: {'; '.join(validation.errors)}",
                    "ValidationError",
                )
            graph = self.graph_builder.build(specs)
        except (ParseError, GraphError) as e:
            return self._fatal(result, str(e), type(e).__name__)

        if destroy:
            graph = self.graph_builder.build([])

        # Step 2: Lock. Held across plan and apply.
        try:
            lock = await self._acquire_lock(operation, lock_timeout)
        except StateLockError as e:
            return self._fatal(result, str(e), type(e).__name__)

        with lock:
            # Step 3: Diff and plan against recorded state
            try:
                async with timed_section(f"{operation}_plan"):
                    records = self.store.read_all(lock)
                    state_check = self.validator.validate_state(graph, records)
                    if not state_check.valid:
                        return self._fatal(
                            result,
                            f"Validation failed: {'; '.join(state_check.errors)}",
                            "ValidationError",
                        )
                    plan = self._compute_plan(graph, records, destroy)
            except (StateCorruptionError, StateLockError, PlanError) as e:
                return self._fatal(result, str(e), type(e).__name__)

            result.plan = plan
            result.warnings.extend(self.validator.check_changes(plan.changes))

            if not dry_run:
                self._refresh_dependencies(lock, plan, records)

            if dry_run or plan.no_change:
                if plan.no_change:
                    logger.info("No changes needed - recorded state matches the declaration")
                if not dry_run and plan.stale_dependencies():
                    self._compact(lock, f"{operation}: refresh dependencies", result)
                result.success = True
                return result

            # Step 4: Execute
            executor = PlanExecutor(
                self.store,
                self.registry,
                self.execute_options(concurrency),
            )
            if self.user:
                executor.tracker.user = self.user
            self._executor = executor
            try:
                async with timed_section(f"{operation}_execute", steps=len(plan.steps)):
                    summary = await executor.execute(plan, graph, lock, records)
            finally:
                self._executor = None
                self._compact(lock, f"{operation} run {executor.tracker.run_id}", result)

            result.summary = summary
            result.success = summary.success

        return result

    def _compute_plan(
        self,
        graph: ResourceGraph,
        records: dict[str, StateRecord],
        destroy: bool,
    ) -> Plan:
        changes = self.diff_engine.calculate(graph, records)
        return self.planner.plan(changes, graph, records, destroy=destroy)

    def _refresh_dependencies(
        self,
        lock: StateLock,
        plan: Plan,
        records: dict[str, StateRecord],
    ) -> None:
        """Rewrite the dependency list of records whose resource is unchanged.

        Dependencies only affect ordering, so an added or retargeted
        ``depends_on`` never reaches the provider. The record still has to
        carry it, since later destroys order deletes from recorded state.
        """
        for change in plan.stale_dependencies():
            record = replace(
                records[change.address], dependencies=change.refresh_dependencies
            )
            self.store.write(lock, change.address, record)
            records[change.address] = record
            logger.info(
                f"Refreshed recorded dependencies of {change.address}: "
                f"{', '.join(record.dependencies) or '(none)'}"
            )

    async def _acquire_lock(self, operation: str, lock_timeout: Optional[float]) -> StateLock:
        timeout = self.settings.lock_timeout if lock_timeout is None else lock_timeout
        acquire = asyncio.ensure_future(
            asyncio.to_thread(self.store.acquire_lock, timeout, operation, self.user)
        )
        try:
            return await asyncio.shield(acquire)
        except asyncio.CancelledError:
            # The waiting thread may still win the lock after we give up
            acquire.add_done_callback(_release_if_acquired)
            raise

    def _compact(self, lock: StateLock, message: str, result: ApplyResult) -> None:
        try:
            self.store.compact(lock, message)
        except (OSError, GitError) as e:
            # Journal already holds every mutation; the snapshot can wait
            logger.warning(f"State compaction failed: {e}")
            result.warnings.append(f"State compaction failed: {e}")

    @staticmethod
    def _fatal(result: ApplyResult, error: str, error_type: str) -> ApplyResult:
        logger.error(f"{result.operation} failed: {error}")
        result.success = False
        result.error = error
        result.error_type = error_type
        return result
