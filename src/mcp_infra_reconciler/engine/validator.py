"""Pre-flight validation for resource declarations.

Catches logical errors before the state lock is taken or any provider is
called.
"""
from typing import Optional

from ..providers import ProviderRegistry
from ..state_store import StateRecord
from .graph import ResourceGraph
from .schema import ChangeType, Change, ResourceSpec, ValidationResult

# Attributes the provider assigns; declaring them is an error
RESERVED_ATTRIBUTES = {"id"}

# Change set size above which a warning is added
LARGE_CHANGE_SET = 50


class ConfigValidator:
    """Validate resource specs for logical errors before execution."""

    def __init__(self, registry: Optional[ProviderRegistry] = None):
        """
        Initialize validator.

        Args:
            registry: Provider registry for resource type coverage checks
        """
        self.registry = registry

    def validate(self, specs: list[ResourceSpec]) -> ValidationResult:
        """
        Validate parsed resource specs.

        Performs pre-flight checks:
        - A provider handles every enabled resource type
        - No reserved attribute names
        - Tag keys are non-empty
        - Redundant or self dependencies

        Args:
            specs: Parsed resource specs

        Returns:
            ValidationResult with valid flag, errors, and warnings
        """
        errors: list[str] = []
        warnings: list[str] = []

        for spec in specs:
            self._validate_spec(spec, errors, warnings)

        return ValidationResult(valid=len(errors) == 0, errors=errors, warnings=warnings)

    def _validate_spec(
        self,
        spec: ResourceSpec,
        errors: list[str],
        warnings: list[str],
    ) -> None:
        address = spec.address

        if not spec.enabled:
            warnings.append(f"{address} is disabled and will be destroyed if it exists")
            return

        if self.registry is not None and not self.registry.handles(spec.resource_type):
            errors.append(f"{address}: no provider handles resource type '{spec.resource_type}'")

        for name in RESERVED_ATTRIBUTES & set(spec.attributes):
            errors.append(f"{address}: attribute '{name}' is assigned by the provider")

        for key in spec.tags:
            if not key.strip():
                errors.append(f"{address}: tag keys must not be empty")

        if address in spec.depends_on:
            errors.append(f"{address} lists itself in depends_on")

        inferred = spec.inferred_references()
        for dep in spec.depends_on:
            if dep in inferred:
                warnings.append(
                    f"{address}: depends_on entry {dep} is already implied by a reference"
                )

    def validate_state(
        self,
        graph: ResourceGraph,
        records: dict[str, StateRecord],
    ) -> ValidationResult:
        """Check that recorded resources pending destroy can still be reached."""
        errors: list[str] = []
        if self.registry is not None:
            for address, record in sorted(records.items()):
                if address in graph:
                    continue
                if not self.registry.handles(record.resource_type):
                    errors.append(
                        f"{address} must be destroyed but no provider handles "
                        f"resource type '{record.resource_type}'"
                    )
        return ValidationResult(valid=len(errors) == 0, errors=errors)

    def check_changes(self, changes: list[Change]) -> list[str]:
        """Warnings about the computed change set."""
        warnings = []
        active = [c for c in changes if c.change_type != ChangeType.NO_OP]
        if len(active) > LARGE_CHANGE_SET:
            warnings.append(
                f"Large change set ({len(active)} changes). Consider applying in smaller steps."
            )

        replaced = [c.address for c in active if c.change_type == ChangeType.REPLACE]
        if replaced:
            warnings.append(f"Resources will be replaced: {', '.join(replaced)}")
        return warnings
