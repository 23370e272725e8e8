"""Parser for resource declarations.

Converts dict/YAML input to ResourceSpec objects. Variables (``${var.NAME}``)
are substituted here; references (``${type.name.attr}``) are kept as
Reference/Template values for the graph to resolve.
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml

from .schema import Reference, ResourceSpec, Template

logger = logging.getLogger(__name__)

VAR_ENV_PREFIX = "STACKCRAFT_VAR_"
META_KEYS = ("enabled", "depends_on", "tags")
BOOLEAN_STRINGS = {"true": True, "false": False}

TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
ADDRESS_PATTERN = re.compile(r"^([a-z][a-z0-9_]*)\.([A-Za-z_][A-Za-z0-9_-]*)$")

# "$${" escapes a literal "${"
EXPRESSION_PATTERN = re.compile(r"(?<!\$)\$\{([^}]*)\}")
VAR_EXPRESSION = re.compile(r"^var\.([A-Za-z_][A-Za-z0-9_]*)$")
REF_EXPRESSION = re.compile(
    r"^([a-z][a-z0-9_]*)\.([A-Za-z_][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_]*)$"
)


class ParseError(Exception):
    """Error parsing a resource declaration."""
    pass


class ConfigParser:
    """Parse resource declarations from dict/YAML format."""

    def __init__(self, environ: Optional[dict[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    def load(
        self,
        path: str | Path,
        variables: Optional[dict[str, Any]] = None,
    ) -> list[ResourceSpec]:
        """Read and parse a declaration file."""
        path = Path(path)
        try:
            with open(path) as f:
                config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ParseError(f"Declaration file not found: {path}")
        except yaml.YAMLError as e:
            raise ParseError(f"Invalid YAML in {path}: {e}")

        logger.debug(f"Loaded declaration from {path}")
        return self.parse(config or {}, variables)

    def parse(
        self,
        config: dict[str, Any],
        variables: Optional[dict[str, Any]] = None,
    ) -> list[ResourceSpec]:
        """
        Parse a declaration dict into resource specs.

        Args:
            config: Dict with optional ``variables`` and a ``resources``
                mapping of resource type -> name -> body
            variables: Caller-supplied variable values (highest precedence)

        Returns:
            ResourceSpecs in declaration order

        Raises:
            ParseError: If the declaration is malformed or a variable is missing
        """
        if not isinstance(config, dict):
            raise ParseError("Declaration must be a mapping")

        unknown = set(config) - {"variables", "resources"}
        if unknown:
            raise ParseError(f"Unknown top-level keys: {', '.join(sorted(map(str, unknown)))}")

        values = self._resolve_variables(config.get("variables") or {}, variables or {})

        resources = config.get("resources") or {}
        if not isinstance(resources, dict):
            raise ParseError("'resources' must be a mapping of resource type to resources")

        specs = []
        for resource_type, entries in resources.items():
            resource_type = str(resource_type)
            if not TYPE_PATTERN.match(resource_type):
                raise ParseError(f"Invalid resource type: {resource_type}")
            if entries is None:
                continue
            if not isinstance(entries, dict):
                raise ParseError(f"Resources of type {resource_type} must be a mapping")

            for name, body in entries.items():
                specs.append(self._parse_resource(resource_type, str(name), body, values))

        logger.debug(f"Parsed {len(specs)} resources")
        return specs

    def _resolve_variables(
        self,
        declared: dict[str, Any],
        provided: dict[str, Any],
    ) -> dict[str, Any]:
        """Resolve variable values: caller, then environment, then default."""
        if not isinstance(declared, dict):
            raise ParseError("'variables' must be a mapping")

        values: dict[str, Any] = {}
        names = set(map(str, declared)) | set(provided)
        for name in names:
            if name in provided:
                values[name] = provided[name]
                continue

            env_key = f"{VAR_ENV_PREFIX}{name}"
            if env_key in self.environ:
                values[name] = self.environ[env_key]
                continue

            definition = declared.get(name)
            if isinstance(definition, dict):
                if "default" in definition:
                    values[name] = definition["default"]
            elif definition is not None:
                # Shorthand: "name: value" declares a default
                values[name] = definition

        return values

    def _parse_resource(
        self,
        resource_type: str,
        name: str,
        body: Optional[dict[str, Any]],
        variables: dict[str, Any],
    ) -> ResourceSpec:
        """Parse a single resource body."""
        address = f"{resource_type}.{name}"
        if not NAME_PATTERN.match(name):
            raise ParseError(f"Invalid resource name: {address}")

        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise ParseError(f"Resource {address} must be a mapping")

        enabled = body.get("enabled", True)
        if isinstance(enabled, str):
            enabled = self._substitute(enabled, variables, address)
        if isinstance(enabled, str) and enabled.strip().lower() in BOOLEAN_STRINGS:
            # --var and environment values always arrive as strings
            enabled = BOOLEAN_STRINGS[enabled.strip().lower()]
        if not isinstance(enabled, bool):
            raise ParseError(f"'enabled' for {address} must be true or false, got {enabled!r}")

        depends_on = body.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        for dep in depends_on:
            if not isinstance(dep, str) or not ADDRESS_PATTERN.match(dep):
                raise ParseError(f"Invalid depends_on entry for {address}: {dep!r}")

        tags = body.get("tags") or {}
        if not isinstance(tags, dict):
            raise ParseError(f"'tags' for {address} must be a mapping")

        attributes = {
            str(k): self._parse_value(v, variables, f"{address}.{k}")
            for k, v in body.items()
            if k not in META_KEYS
        }

        return ResourceSpec(
            resource_type=resource_type,
            name=name,
            attributes=attributes,
            tags={str(k): self._parse_value(v, variables, f"{address}.tags.{k}") for k, v in tags.items()},
            depends_on=tuple(dict.fromkeys(depends_on)),
            enabled=enabled,
        )

    def _parse_value(self, value: Any, variables: dict[str, Any], where: str) -> Any:
        """Parse an attribute value, recursing into lists and mappings."""
        if isinstance(value, str):
            return self._substitute(value, variables, where)
        if isinstance(value, dict):
            return {
                str(k): self._parse_value(v, variables, f"{where}.{k}")
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [self._parse_value(v, variables, f"{where}[{i}]") for i, v in enumerate(value)]
        return value

    def _substitute(self, text: str, variables: dict[str, Any], where: str) -> Any:
        """
        Expand expressions in a string.

        A string that is exactly one expression keeps the expression's type
        (a variable's value, or a Reference). Otherwise expressions are
        rendered into a plain string or a Template.
        """
        parts: list[Any] = []
        pos = 0
        for match in EXPRESSION_PATTERN.finditer(text):
            if match.start() > pos:
                parts.append(text[pos:match.start()])
            parts.append(self._expression(match.group(1).strip(), variables, where))
            pos = match.end()
        if pos < len(text):
            parts.append(text[pos:])

        if not parts:
            return text

        parts = [p.replace("$${", "${") if isinstance(p, str) else p for p in parts]

        if len(parts) == 1 and isinstance(parts[0], Reference):
            return parts[0]

        whole = EXPRESSION_PATTERN.fullmatch(text)
        if whole and not isinstance(parts[0], Reference):
            # Whole-string variable keeps its type
            return parts[0]

        merged: list[Any] = []
        for part in parts:
            if not isinstance(part, Reference):
                part = str(part)
                if merged and isinstance(merged[-1], str):
                    merged[-1] += part
                    continue
            merged.append(part)

        if len(merged) == 1 and isinstance(merged[0], str):
            return merged[0]
        return Template(parts=tuple(merged))

    def _expression(self, expr: str, variables: dict[str, Any], where: str) -> Any:
        var_match = VAR_EXPRESSION.match(expr)
        if var_match:
            name = var_match.group(1)
            if name not in variables and f"{VAR_ENV_PREFIX}{name}" in self.environ:
                return self.environ[f"{VAR_ENV_PREFIX}{name}"]
            if name not in variables:
                raise ParseError(
                    f"Variable '{name}' used in {where} has no value "
                    f"(pass it, set {VAR_ENV_PREFIX}{name}, or declare a default)"
                )
            return variables[name]

        ref_match = REF_EXPRESSION.match(expr)
        if ref_match:
            resource_type, name, attribute = ref_match.groups()
            return Reference(address=f"{resource_type}.{name}", attribute=attribute)

        raise ParseError(f"Invalid expression '${{{expr}}}' in {where}")
