"""Diff engine for calculating changes between desired and recorded state.

Computes one Change per address in the graph or in state.
"""
import logging
from typing import Any, Optional

from ..providers import ProviderRegistry
from ..state_store import StateRecord, fingerprint_inputs
from .graph import ResourceGraph
from .schema import UNKNOWN, Change, ChangeType, Plan, contains_unknown, render_value

logger = logging.getLogger(__name__)


# Fields that cannot be changed in place; a change forces replacement
REPLACE_ON_CHANGE: dict[str, set[str]] = {
    "aws_vpc": {"cidr_block", "instance_tenancy"},
    "aws_subnet": {"vpc_id", "cidr_block", "availability_zone"},
    "aws_route_table": {"vpc_id"},
    "aws_route_table_association": {"subnet_id", "route_table_id"},
    "aws_internet_gateway": set(),
    "aws_security_group": {"name", "vpc_id", "description"},
    "aws_instance": {"ami", "subnet_id", "availability_zone", "key_name", "private_ip"},
    "aws_eip": {"domain"},
    "aws_key_pair": {"key_name", "public_key"},
    "aws_s3_bucket": {"bucket"},
    "aws_dynamodb_table": {"name", "hash_key", "range_key"},
}


class DiffEngine:
    """Calculate differences between a resource graph and recorded state."""

    def __init__(self, registry: Optional[ProviderRegistry] = None):
        self.registry = registry

    def replace_fields(self, resource_type: str) -> set[str]:
        """Replace-only fields: static table plus provider additions."""
        fields = set(REPLACE_ON_CHANGE.get(resource_type, set()))
        if self.registry is not None:
            fields |= self.registry.replace_fields(resource_type)
        return fields

    def calculate(
        self,
        graph: ResourceGraph,
        state: dict[str, StateRecord],
    ) -> list[Change]:
        """
        Calculate the change for every address in the graph or in state.

        Nodes are visited in dependency order so that each node's inputs can
        be evaluated against what is known about its dependencies: recorded
        attributes for resources left alone or updated, only declared
        inputs for resources about to be (re)created.

        Args:
            graph: Desired resources
            state: Recorded actual state, by address

        Returns:
            Changes in dependency order, destroys last
        """
        known: dict[str, dict[str, Any]] = {}
        changes: list[Change] = []

        for address in graph.topological_order():
            spec = graph.spec(address)
            inputs = graph.evaluate(address, known)
            record = state.get(address)

            change = self._diff_resource(address, spec.resource_type, inputs, record)
            changes.append(change)

            if change.change_type in (ChangeType.CREATE, ChangeType.REPLACE):
                # Provider-computed attributes are unknown until applied
                known[address] = dict(inputs)
            elif change.change_type == ChangeType.UPDATE:
                known[address] = {**record.attributes, **inputs}
            else:
                known[address] = dict(record.attributes)
                dependencies = sorted(graph.dependencies_of(address))
                if dependencies != sorted(record.dependencies):
                    change.refresh_dependencies = dependencies

        for address in sorted(state):
            if address in graph:
                continue
            record = state[address]
            reason = "disabled" if address in graph.disabled else "no longer declared"
            changes.append(Change(
                address=address,
                resource_type=record.resource_type,
                change_type=ChangeType.DESTROY,
                before=dict(record.inputs),
                reason=reason,
            ))

        logger.debug(
            f"Diff: {sum(1 for c in changes if c.change_type != ChangeType.NO_OP)} "
            f"changes across {len(changes)} addresses"
        )
        return changes

    def _diff_resource(
        self,
        address: str,
        resource_type: str,
        inputs: dict[str, Any],
        record: Optional[StateRecord],
    ) -> Change:
        """Calculate the change for one desired resource."""
        if record is None:
            return Change(
                address=address,
                resource_type=resource_type,
                change_type=ChangeType.CREATE,
                after=inputs,
                changed_fields=sorted(inputs),
                reason="not in state",
            )

        if not contains_unknown(inputs) and fingerprint_inputs(inputs) == record.fingerprint:
            return Change(
                address=address,
                resource_type=resource_type,
                change_type=ChangeType.NO_OP,
                before=dict(record.inputs),
                after=inputs,
            )

        changed = sorted(
            name for name in set(inputs) | set(record.inputs)
            if name not in record.inputs
            or name not in inputs
            or contains_unknown(inputs[name])
            or inputs[name] != record.inputs[name]
        )
        if not changed:
            # Fingerprint scheme differs but values match
            return Change(
                address=address,
                resource_type=resource_type,
                change_type=ChangeType.NO_OP,
                before=dict(record.inputs),
                after=inputs,
            )

        forcing = sorted(set(changed) & self.replace_fields(resource_type))
        if forcing:
            return Change(
                address=address,
                resource_type=resource_type,
                change_type=ChangeType.REPLACE,
                before=dict(record.inputs),
                after=inputs,
                changed_fields=changed,
                replace_fields=forcing,
                reason=f"{', '.join(forcing)} cannot be changed in place",
            )

        return Change(
            address=address,
            resource_type=resource_type,
            change_type=ChangeType.UPDATE,
            before=dict(record.inputs),
            after=inputs,
            changed_fields=changed,
        )


CHANGE_SYMBOLS = {
    ChangeType.CREATE: "+",
    ChangeType.UPDATE: "~",
    ChangeType.REPLACE: "-/+",
    ChangeType.DESTROY: "-",
}


def _format_value(value: Any) -> str:
    if value is UNKNOWN:
        return repr(UNKNOWN)
    return repr(render_value(value))


def summarize_plan(plan: Plan) -> str:
    """
    Create a human-readable summary of a plan.

    Useful for dry-run output and logging.
    """
    if plan.no_change:
        return "No changes. Recorded state matches the declaration."

    counts = plan.counts()
    lines = [
        f"Plan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['replace']} to replace, {counts['destroy']} to destroy.",
        "",
    ]

    for change in plan.changes:
        if change.change_type == ChangeType.NO_OP:
            continue
        symbol = CHANGE_SYMBOLS[change.change_type]
        line = f"  [{symbol}] {change.address}"
        if change.reason:
            line += f" ({change.reason})"
        lines.append(line)

        if change.change_type == ChangeType.CREATE:
            for name in sorted(change.after or {}):
                lines.append(f"      {name}: {_format_value(change.after[name])}")
        elif change.change_type in (ChangeType.UPDATE, ChangeType.REPLACE):
            before = change.before or {}
            after = change.after or {}
            for name in change.changed_fields:
                marker = " (forces replacement)" if name in change.replace_fields else ""
                old = _format_value(before[name]) if name in before else "(none)"
                new = _format_value(after[name]) if name in after else "(removed)"
                lines.append(f"      {name}: {old} -> {new}{marker}")

    lines.append("")
    lines.append(f"Execution order ({len(plan.steps)} steps, {len(plan.waves())} waves):")
    for step in plan.steps:
        lines.append(f"  {step.position + 1}. {step.key} (wave {step.wave})")

    return "\n".join(lines)
