"""Planner: change set -> ordered provider steps.

Expands each change into provider actions (a replace becomes a delete
followed by a create) and orders them:

- create/update of N after the create/update of N's dependencies
- delete of N after the deletes of everything that depended on N
- delete of N after the create/update of a former dependent that moves off N

Ordering is Kahn's algorithm with a lexicographic tie-break, so the same
change set always gives the same plan.
"""
import logging
from typing import Optional

from ..state_store import StateRecord
from .graph import ResourceGraph
from .schema import Change, ChangeType, Plan, PlanStep, StepAction

logger = logging.getLogger(__name__)


class PlanError(Exception):
    """The change set cannot be ordered."""
    pass


ACTIONS = {
    ChangeType.CREATE: (StepAction.CREATE,),
    ChangeType.UPDATE: (StepAction.UPDATE,),
    ChangeType.REPLACE: (StepAction.DELETE, StepAction.CREATE),
    ChangeType.DESTROY: (StepAction.DELETE,),
    ChangeType.NO_OP: (),
}


class Planner:
    """Order a change set into a Plan."""

    def plan(
        self,
        changes: list[Change],
        graph: ResourceGraph,
        state: dict[str, StateRecord],
        destroy: bool = False,
    ) -> Plan:
        """
        Build the execution plan for a change set.

        Args:
            changes: Output of DiffEngine.calculate
            graph: Desired resources (dependencies of created/updated steps)
            state: Recorded state (dependencies of deleted resources)
            destroy: Plan was built for a full destroy

        Returns:
            Plan with steps in execution order

        Raises:
            PlanError: If the step dependencies contain a cycle
        """
        steps: dict[str, PlanStep] = {}
        for change in changes:
            for action in ACTIONS[change.change_type]:
                key = PlanStep.make_key(action, change.address)
                steps[key] = PlanStep(
                    key=key,
                    address=change.address,
                    resource_type=change.resource_type,
                    action=action,
                    change=change,
                )

        old_dependents = self._old_dependents(graph, state)

        for step in steps.values():
            if step.action == StepAction.DELETE:
                step.deps = self._delete_deps(step.address, steps, graph, old_dependents)
            else:
                step.deps = self._apply_deps(step.address, steps, graph)

        ordered = self._order(steps)
        logger.info(
            f"Planned {len(ordered)} steps for "
            f"{sum(1 for c in changes if c.change_type != ChangeType.NO_OP)} changes"
        )
        return Plan(changes=changes, steps=ordered, destroy=destroy)

    def _old_dependents(
        self,
        graph: ResourceGraph,
        state: dict[str, StateRecord],
    ) -> dict[str, set[str]]:
        """Reverse edges of the recorded dependency graph."""
        dependents: dict[str, set[str]] = {}
        for address, record in state.items():
            for dep in record.dependencies:
                dependents.setdefault(dep, set()).add(address)
        return dependents

    def _apply_deps(
        self,
        address: str,
        steps: dict[str, PlanStep],
        graph: ResourceGraph,
    ) -> set[str]:
        deps = set()
        replace_delete = PlanStep.make_key(StepAction.DELETE, address)
        if replace_delete in steps:
            deps.add(replace_delete)

        for dependency in graph.dependencies_of(address):
            for action in (StepAction.CREATE, StepAction.UPDATE):
                key = PlanStep.make_key(action, dependency)
                if key in steps:
                    deps.add(key)
        return deps

    def _delete_deps(
        self,
        address: str,
        steps: dict[str, PlanStep],
        graph: ResourceGraph,
        old_dependents: dict[str, set[str]],
    ) -> set[str]:
        deps = set()
        dependents = set(old_dependents.get(address, set()))
        if address in graph:
            dependents |= graph.dependents_of(address)

        for dependent in dependents:
            key = PlanStep.make_key(StepAction.DELETE, dependent)
            if key in steps:
                deps.add(key)
                continue
            # A dependent that stays but no longer references this resource
            # must be moved off it before the delete.
            if dependent in graph and address not in graph.dependencies_of(dependent):
                for action in (StepAction.CREATE, StepAction.UPDATE):
                    key = PlanStep.make_key(action, dependent)
                    if key in steps:
                        deps.add(key)
        return deps

    def _order(self, steps: dict[str, PlanStep]) -> list[PlanStep]:
        """Deterministic Kahn ordering; assigns position and wave."""
        incoming = {key: len(step.deps) for key, step in steps.items()}
        outgoing: dict[str, set[str]] = {key: set() for key in steps}
        for key, step in steps.items():
            for dep in step.deps:
                outgoing[dep].add(key)

        ready = sorted(key for key, count in incoming.items() if count == 0)
        ordered: list[PlanStep] = []

        while ready:
            key = ready.pop(0)
            step = steps[key]
            step.position = len(ordered)
            step.wave = 1 + max((steps[d].wave for d in step.deps), default=-1)
            ordered.append(step)
            for child in outgoing[key]:
                incoming[child] -= 1
                if incoming[child] == 0:
                    ready.append(child)
            ready.sort()

        if len(ordered) != len(steps):
            stuck = sorted(key for key, count in incoming.items() if count > 0)
            raise PlanError(f"Cycle between plan steps: {', '.join(stuck)}")

        return ordered


def find_step(plan: Plan, action: StepAction, address: str) -> Optional[PlanStep]:
    """Look up a step by action and address."""
    key = PlanStep.make_key(action, address)
    try:
        return plan.get(key)
    except KeyError:
        return None
