"""Schema definitions for the reconcile engine.

Defines the desired-state declaration types, changes, plans and
apply results.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


class ChangeType(str, Enum):
    """Kind of change computed for one address."""
    CREATE = "create"
    UPDATE = "update"       # in place
    REPLACE = "replace"     # destroy, then create
    DESTROY = "destroy"
    NO_OP = "no_op"


class StepAction(str, Enum):
    """Provider operation carried out by one plan step."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class StepStatus(str, Enum):
    """Lifecycle of a plan step during apply."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StepStatus.APPLIED, StepStatus.FAILED, StepStatus.SKIPPED)


class _Unknown:
    """Value not known until a dependency has been applied."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()


# --- Declaration ---

@dataclass(frozen=True)
class Reference:
    """Reference to an attribute of another resource: ${type.name.attr}."""
    address: str
    attribute: str

    def __str__(self) -> str:
        return f"${{{self.address}.{self.attribute}}}"


@dataclass(frozen=True)
class Template:
    """String with embedded references, e.g. "${aws_vpc.main.id}-sg"."""
    parts: tuple

    @property
    def references(self) -> list[Reference]:
        return [p for p in self.parts if isinstance(p, Reference)]

    def __str__(self) -> str:
        return "".join(str(p) for p in self.parts)


Expression = Union[Reference, Template]


def collect_references(value: Any) -> set[str]:
    """Addresses referenced anywhere inside an attribute value."""
    found: set[str] = set()
    if isinstance(value, Reference):
        found.add(value.address)
    elif isinstance(value, Template):
        found.update(ref.address for ref in value.references)
    elif isinstance(value, dict):
        for v in value.values():
            found |= collect_references(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            found |= collect_references(v)
    return found


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def render_value(value: Any) -> Any:
    """JSON-friendly form of a value that may hold expressions or UNKNOWN."""
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, (Reference, Template)):
        return str(value)
    if isinstance(value, dict):
        return {k: render_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(v) for v in value]
    return value


@dataclass(frozen=True)
class ResourceSpec:
    """Desired state of one resource, as declared."""
    resource_type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    tags: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    enabled: bool = True

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    def inferred_references(self) -> set[str]:
        """Addresses referenced from attribute and tag expressions."""
        return collect_references(self.attributes) | collect_references(self.tags)

    def references(self) -> set[str]:
        """All addresses this resource depends on, explicit and inferred."""
        return set(self.depends_on) | self.inferred_references()


# --- Validation ---

@dataclass
class ValidationResult:
    """Result of pre-flight validation."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# --- Changes and plans ---

@dataclass
class Change:
    """Change computed for one address."""
    address: str
    resource_type: str
    change_type: ChangeType
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    changed_fields: list[str] = field(default_factory=list)
    replace_fields: list[str] = field(default_factory=list)
    reason: str = ""
    # Set on a no-op whose recorded dependencies differ from the graph
    refresh_dependencies: Optional[list[str]] = None

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "resource_type": self.resource_type,
            "change_type": self.change_type.value,
            "before": render_value(self.before),
            "after": render_value(self.after),
            "changed_fields": self.changed_fields,
            "replace_fields": self.replace_fields,
            "reason": self.reason,
        }


@dataclass
class PlanStep:
    """One provider operation in a plan."""
    key: str
    address: str
    resource_type: str
    action: StepAction
    change: Change
    deps: set[str] = field(default_factory=set)
    position: int = 0
    wave: int = 0

    @staticmethod
    def make_key(action: StepAction, address: str) -> str:
        return f"{action.value}:{address}"

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "address": self.address,
            "action": self.action.value,
            "deps": sorted(self.deps),
            "position": self.position,
            "wave": self.wave,
        }


@dataclass
class Plan:
    """Ordered set of steps that reconciles actual state with desired state."""
    changes: list[Change] = field(default_factory=list)
    steps: list[PlanStep] = field(default_factory=list)
    destroy: bool = False

    def __post_init__(self):
        self._by_key = {s.key: s for s in self.steps}
        self._ancestors: dict[str, set[str]] = {}

    @property
    def no_change(self) -> bool:
        return len(self.steps) == 0

    def stale_dependencies(self) -> list[Change]:
        """No-op changes whose recorded dependency list needs rewriting."""
        return [c for c in self.changes if c.refresh_dependencies is not None]

    @property
    def total_changes(self) -> int:
        return sum(1 for c in self.changes if c.change_type != ChangeType.NO_OP)

    @property
    def order(self) -> list[str]:
        """Step keys in execution order."""
        return [s.key for s in self.steps]

    def get(self, key: str) -> PlanStep:
        return self._by_key[key]

    def steps_for(self, address: str) -> list[PlanStep]:
        return [s for s in self.steps if s.address == address]

    def counts(self) -> dict[str, int]:
        counts = {t.value: 0 for t in ChangeType}
        for change in self.changes:
            counts[change.change_type.value] += 1
        return counts

    def ancestors(self, key: str) -> set[str]:
        """Every step that must finish before ``key`` may start."""
        if key not in self._ancestors:
            result: set[str] = set()
            stack = list(self._by_key[key].deps)
            while stack:
                dep = stack.pop()
                if dep in result:
                    continue
                result.add(dep)
                stack.extend(self._by_key[dep].deps)
            self._ancestors[key] = result
        return self._ancestors[key]

    def independent(self, key_a: str, key_b: str) -> bool:
        """True when neither step transitively depends on the other."""
        if key_a == key_b:
            return False
        return key_a not in self.ancestors(key_b) and key_b not in self.ancestors(key_a)

    def waves(self) -> list[list[str]]:
        """Step keys grouped by dependency depth; each group can run in parallel."""
        grouped: dict[int, list[str]] = {}
        for step in self.steps:
            grouped.setdefault(step.wave, []).append(step.key)
        return [grouped[w] for w in sorted(grouped)]

    def to_dict(self) -> dict:
        return {
            "destroy": self.destroy,
            "counts": self.counts(),
            "changes": [c.to_dict() for c in self.changes if c.change_type != ChangeType.NO_OP],
            "steps": [s.to_dict() for s in self.steps],
            "waves": self.waves(),
        }


# --- Execution ---

@dataclass
class ExecuteOptions:
    """Options for plan execution."""
    concurrency: int = 4
    max_attempts: int = 4
    backoff_min: float = 1.0
    backoff_max: float = 30.0
    operation_timeout: Optional[float] = 300.0


@dataclass
class StepOutcome:
    """Terminal result of one plan step."""
    key: str
    address: str
    action: StepAction
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "address": self.address,
            "action": self.action.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "reason": self.reason,
        }


@dataclass
class ApplySummary:
    """Per-step and per-address outcome of an apply."""
    outcomes: dict[str, StepOutcome] = field(default_factory=dict)
    started: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    cancelled: bool = False

    def _addresses(self) -> list[str]:
        seen: list[str] = []
        for outcome in self.outcomes.values():
            if outcome.address not in seen:
                seen.append(outcome.address)
        return seen

    def _statuses(self, address: str) -> list[StepStatus]:
        return [o.status for o in self.outcomes.values() if o.address == address]

    @property
    def applied(self) -> list[str]:
        return [
            a for a in self._addresses()
            if all(s == StepStatus.APPLIED for s in self._statuses(a))
        ]

    @property
    def failed(self) -> list[str]:
        return [a for a in self._addresses() if StepStatus.FAILED in self._statuses(a)]

    @property
    def skipped(self) -> list[str]:
        failed = set(self.failed)
        return [
            a for a in self._addresses()
            if a not in failed and StepStatus.SKIPPED in self._statuses(a)
        ]

    @property
    def success(self) -> bool:
        return all(o.status == StepStatus.APPLIED for o in self.outcomes.values())

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "applied": self.applied,
            "failed": self.failed,
            "skipped": self.skipped,
            "steps": [o.to_dict() for o in self.outcomes.values()],
        }


@dataclass
class ApplyResult:
    """Result of a plan, apply or destroy run."""
    operation: str = "apply"
    success: bool = False
    dry_run: bool = False
    plan: Optional[Plan] = None
    summary: Optional[ApplySummary] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def fatal(self) -> bool:
        """An error stopped the run before or outside change execution."""
        return self.error is not None

    @property
    def exit_code(self) -> int:
        if self.fatal:
            return 2
        return 0 if self.success else 1

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "operation": self.operation,
            "success": self.success,
            "dry_run": self.dry_run,
        }
        if self.plan is not None:
            data["plan"] = self.plan.to_dict()
        if self.summary is not None:
            data["summary"] = self.summary.to_dict()
        if self.error:
            data["error"] = self.error
            data["error_type"] = self.error_type
        if self.warnings:
            data["warnings"] = self.warnings
        return data
