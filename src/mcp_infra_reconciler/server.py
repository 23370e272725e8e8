"""MCP Server for declarative infrastructure reconciliation.

Exposes the reconcile engine to MCP clients:

Tools exposed:
- plan: Show the changes needed to reach a declaration
- apply: Apply a declaration (or dry-run it)
- destroy: Destroy every recorded resource
- state_list: List recorded resource addresses
- state_show: Show the recorded state of one resource
- state_history: List versions of the state snapshot
- lock_info: Show who holds the state lock
- force_unlock: Remove a stale state lock
- get_audit_log: Recent provider operations from the audit log

Resources:
- state://<address>: Recorded state of one resource
"""
import asyncio
import json
import logging
import os
from typing import Any, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    TextContent,
    Tool,
    Resource,
)
from pydantic import AnyUrl

from .config import EngineSettings, ProviderInventory
from .engine import ReconcileEngine, summarize_plan
from .utils.logging_config import setup_logging, timed_section
from .utils.audit_log import setup_audit_logging, get_recent_changes

logger = logging.getLogger(__name__)

# Global engine (initialized on first use)
inventory: Optional[ProviderInventory] = None
engine: Optional[ReconcileEngine] = None


def get_inventory() -> ProviderInventory:
    """Get or create the provider inventory."""
    global inventory
    if inventory is None:
        inventory = ProviderInventory(os.environ.get("STACKCRAFT_PROVIDERS"))
    return inventory


def get_engine() -> ReconcileEngine:
    """Get or create the reconcile engine."""
    global engine
    if engine is None:
        engine = ReconcileEngine.from_settings(EngineSettings.from_env(), get_inventory())
    return engine


# Create MCP server
server = Server("stackcraft")


DECLARATION_PROPERTIES = {
    "declaration": {
        "type": "object",
        "description": (
            "Declaration with optional 'variables' and a 'resources' mapping "
            "of resource type -> name -> attributes"
        ),
    },
    "file": {
        "type": "string",
        "description": "Path to a YAML declaration (alternative to 'declaration')",
    },
    "variables": {
        "type": "object",
        "description": "Values for ${var.NAME} expressions",
    },
    "lock_timeout": {
        "type": "number",
        "description": "Seconds to wait for the state lock",
    },
}


# === TOOLS ===

@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available tools."""
    return [
        Tool(
            name="plan",
            description=(
                "Compute the changes (create, update, replace, destroy) needed to "
                "reach a declaration, in execution order. Makes no provider calls."
            ),
            inputSchema={
                "type": "object",
                "properties": DECLARATION_PROPERTIES,
                "required": []
            }
        ),
        Tool(
            name="apply",
            description=(
                "Apply a declaration: takes the state lock, plans, and runs provider "
                "operations in dependency order. Failed changes skip their dependents."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    **DECLARATION_PROPERTIES,
                    "dry_run": {
                        "type": "boolean",
                        "description": "Preview the plan without applying",
                        "default": False
                    },
                    "concurrency": {
                        "type": "integer",
                        "description": "Max provider operations in flight"
                    },
                },
                "required": []
            }
        ),
        Tool(
            name="destroy",
            description="Destroy every recorded resource, dependents first",
            inputSchema={
                "type": "object",
                "properties": {
                    **DECLARATION_PROPERTIES,
                    "dry_run": {
                        "type": "boolean",
                        "description": "Preview the destroy plan without applying",
                        "default": False
                    },
                    "concurrency": {
                        "type": "integer",
                        "description": "Max provider operations in flight"
                    },
                },
                "required": []
            }
        ),
        Tool(
            name="state_list",
            description="List recorded resource addresses with their provider ids",
            inputSchema={
                "type": "object",
                "properties": {},
                "required": []
            }
        ),
        Tool(
            name="state_show",
            description="Show the recorded state of one resource",
            inputSchema={
                "type": "object",
                "properties": {
                    "address": {
                        "type": "string",
                        "description": "Resource address (e.g., 'aws_vpc.main')"
                    }
                },
                "required": ["address"]
            }
        ),
        Tool(
            name="state_history",
            description="List versions of the state snapshot (git history)",
            inputSchema={
                "type": "object",
                "properties": {
                    "limit": {
                        "type": "integer",
                        "description": "Max versions to return",
                        "default": 20
                    }
                },
                "required": []
            }
        ),
        Tool(
            name="lock_info",
            description="Show the current state lock holder, if any",
            inputSchema={
                "type": "object",
                "properties": {},
                "required": []
            }
        ),
        Tool(
            name="force_unlock",
            description=(
                "Remove a stale state lock left by a crashed run. "
                "The lock id must match the current lock."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "lock_id": {
                        "type": "string",
                        "description": "Id of the lock to remove (see lock_info)"
                    }
                },
                "required": ["lock_id"]
            }
        ),
        Tool(
            name="get_audit_log",
            description="Get recent provider operations from the audit log",
            inputSchema={
                "type": "object",
                "properties": {
                    "address": {
                        "type": "string",
                        "description": "Filter by resource address"
                    },
                    "operation": {
                        "type": "string",
                        "description": "Filter by operation (create, update, delete)"
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Max records to return",
                        "default": 20
                    }
                },
                "required": []
            }
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    address = arguments.get("address")

    async with timed_section(f"tool:{name}", address=address):
        try:
            if name == "plan":
                return await handle_plan(get_engine(), arguments)

            elif name == "apply":
                return await handle_apply(get_engine(), arguments)

            elif name == "destroy":
                return await handle_destroy(get_engine(), arguments)

            elif name == "state_list":
                return await handle_state_list(get_engine())

            elif name == "state_show":
                return await handle_state_show(get_engine(), arguments["address"])

            elif name == "state_history":
                return await handle_state_history(get_engine(), arguments.get("limit", 20))

            elif name == "lock_info":
                return await handle_lock_info(get_engine())

            elif name == "force_unlock":
                return await handle_force_unlock(get_engine(), arguments["lock_id"])

            elif name == "get_audit_log":
                return await handle_get_audit_log(
                    address=arguments.get("address"),
                    operation=arguments.get("operation"),
                    limit=arguments.get("limit", 20),
                )

            else:
                return [TextContent(type="text", text=f"Unknown tool: {name}")]

        except Exception as e:
            logger.exception(f"Tool {name} failed")
            return [TextContent(type="text", text=f"Error: {str(e)}")]


def _text(data: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data, indent=2, default=str))]


def _declaration(arguments: dict) -> Any:
    if arguments.get("declaration") is not None:
        return arguments["declaration"]
    if arguments.get("file"):
        return arguments["file"]
    raise ValueError("Provide either 'declaration' or 'file'")


# === TOOL HANDLERS ===

async def handle_plan(eng: ReconcileEngine, arguments: dict) -> list[TextContent]:
    """Plan a declaration without applying it."""
    result = await eng.plan(
        _declaration(arguments),
        arguments.get("variables"),
        lock_timeout=arguments.get("lock_timeout"),
    )
    response = result.to_dict()
    if result.plan is not None:
        response["summary_text"] = summarize_plan(result.plan)
    return _text(response)


async def handle_apply(eng: ReconcileEngine, arguments: dict) -> list[TextContent]:
    """
    Apply a declaration.

    This is the primary tool for making changes. It:
    1. Validates the declaration and builds the dependency graph
    2. Takes the state lock and diffs against recorded state
    3. Runs provider operations in dependency order
    4. Returns per-step outcomes

    Use dry_run=True to preview changes without applying.
    """
    result = await eng.apply(
        _declaration(arguments),
        arguments.get("variables"),
        dry_run=arguments.get("dry_run", False),
        concurrency=arguments.get("concurrency"),
        lock_timeout=arguments.get("lock_timeout"),
    )
    response = result.to_dict()
    if result.plan is not None and result.dry_run:
        response["summary_text"] = summarize_plan(result.plan)
    return _text(response)


async def handle_destroy(eng: ReconcileEngine, arguments: dict) -> list[TextContent]:
    """Destroy all recorded resources.

    A declaration is optional; when given it is parsed and validated first
    so a broken file stops the destroy.
    """
    declaration = None
    if arguments.get("declaration") is not None or arguments.get("file"):
        declaration = _declaration(arguments)
    result = await eng.destroy(
        declaration,
        arguments.get("variables"),
        dry_run=arguments.get("dry_run", False),
        concurrency=arguments.get("concurrency"),
        lock_timeout=arguments.get("lock_timeout"),
    )
    return _text(result.to_dict())


async def handle_state_list(eng: ReconcileEngine) -> list[TextContent]:
    """List recorded addresses."""
    records = await eng.read_state()
    return _text({
        "total": len(records),
        "resources": [
            {
                "address": address,
                "resource_type": record.resource_type,
                "resource_id": record.resource_id,
                "updated_at": record.updated_at,
            }
            for address, record in sorted(records.items())
        ],
    })


async def handle_state_show(eng: ReconcileEngine, address: str) -> list[TextContent]:
    """Show one recorded resource."""
    records = await eng.read_state()
    record = records.get(address)
    if record is None:
        return _text({"address": address, "error": "No state recorded for this address"})
    return _text(record.to_dict())


async def handle_state_history(eng: ReconcileEngine, limit: int) -> list[TextContent]:
    """List state snapshot versions."""
    history = eng.store.history(limit=limit) if hasattr(eng.store, "history") else []
    return _text({"total": len(history), "versions": history})


async def handle_lock_info(eng: ReconcileEngine) -> list[TextContent]:
    """Show the current lock holder."""
    info = eng.store.lock_info()
    if info is None:
        return _text({"locked": False})
    return _text({"locked": True, **info.__dict__, "description": info.describe()})


async def handle_force_unlock(eng: ReconcileEngine, lock_id: str) -> list[TextContent]:
    """Remove a stale lock."""
    removed = eng.store.force_unlock(lock_id)
    return _text({"action": "force_unlock", "lock_id": lock_id, "removed": removed})


async def handle_get_audit_log(
    address: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 20
) -> list[TextContent]:
    """Get recent provider operations from the audit log."""
    records = get_recent_changes(
        address=address,
        operation=operation,
        limit=limit
    )

    return _text({
        "total_records": len(records),
        "filters": {
            "address": address,
            "operation": operation,
            "limit": limit,
        },
        "records": [r.__dict__ for r in records],
    })


# === RESOURCES ===

@server.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    records = await get_engine().read_state()
    return [
        Resource(
            uri=AnyUrl(f"state://{address}"),
            name=f"{address} state",
            description=f"Recorded state of {address} ({record.resource_id})",
            mimeType="application/json",
        )
        for address, record in sorted(records.items())
    ]


@server.read_resource()
async def read_resource(uri: AnyUrl) -> str:
    """Read a resource."""
    # Parse URI: state://aws_vpc.main
    uri_str = str(uri)
    if uri_str.startswith("state://"):
        address = uri_str[len("state://"):].rstrip("/")
        result = await handle_state_show(get_engine(), address)
        return result[0].text

    return json.dumps({"error": f"Unknown resource: {uri}"})


def main():
    """Run the MCP server."""
    setup_logging()
    setup_audit_logging(str(EngineSettings.from_env().home))

    async def run():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
    finally:
        # Cleanup
        if inventory:
            asyncio.run(inventory.close_all())


if __name__ == "__main__":
    main()
