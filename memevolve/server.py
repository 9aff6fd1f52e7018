"""
MCP Server - How an agent triggers memory evolution.

Eight tools:

1. memevolve_session_start - "A session is starting here"
2. memevolve_session_end - "This session is over, tidy up"
3. memevolve_tool_event - "Remember what that command just did"
4. memevolve_run_maintenance - "Run a light/full/reflect pass now"
5. memevolve_access - "I just used this memory"
6. memevolve_mark_useful - "That search result helped (or didn't)"
7. memevolve_promote_to_user - "This should follow me across projects"
8. memevolve_status - "How healthy is my memory?"

Reports come back as JSON text. Errors come back as text, never as a crash.
"""

import json

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from memevolve.config import load_config
from memevolve.errors import EvolutionError
from memevolve.log import get_logger
from memevolve.models import MaintenanceMode, Scope
from memevolve.scheduler import EvolutionScheduler

logger = get_logger("memevolve.server")

# Create the MCP server
server = Server("memevolve")

# Created lazily on first tool call
_scheduler: EvolutionScheduler | None = None

SCOPE_VALUES = [s.value for s in Scope]


def get_scheduler() -> EvolutionScheduler:
    """Get the scheduler, creating it (and its store) if needed."""
    global _scheduler
    if _scheduler is None:
        _scheduler = EvolutionScheduler(config=load_config())
    return _scheduler


def _json(data) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data, indent=2, default=str))]


# =============================================================================
# TOOL DEFINITIONS
# =============================================================================

@server.list_tools()
async def list_tools() -> list[Tool]:
    """Tell the agent what tools are available."""
    return [
        Tool(
            name="memevolve_session_start",
            description="Signal the start of a session. Sets up evolution state for the scope on first use.",
            inputSchema={
                "type": "object",
                "properties": {
                    "scope": {"type": "string", "enum": SCOPE_VALUES, "default": "project"},
                },
            },
        ),
        Tool(
            name="memevolve_session_end",
            description="""Signal the end of a session.

Counts the session and runs the maintenance it is due: a light promotion
pass every time, a full pass every 5th session, a reflection pass every 20th.
Returns the run report.""",
            inputSchema={
                "type": "object",
                "properties": {
                    "session_id": {"type": "string", "description": "The session that ended"},
                    "scope": {
                        "type": "string",
                        "enum": SCOPE_VALUES,
                        "default": "project",
                        "description": "Scope whose sessions are counted",
                    },
                },
                "required": ["session_id"],
            },
        ),
        Tool(
            name="memevolve_tool_event",
            description="""Store what a tool call did as a memory and grow the knowledge graph from it.

Use kind="error" for failed commands; the memory is tagged "error".""",
            inputSchema={
                "type": "object",
                "properties": {
                    "content": {"type": "string", "description": "What happened"},
                    "scope": {"type": "string", "enum": SCOPE_VALUES, "default": "session"},
                    "kind": {"type": "string", "default": "tool_use"},
                    "session_id": {"type": "string"},
                    "tags": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["content"],
            },
        ),
        Tool(
            name="memevolve_run_maintenance",
            description="""Run a maintenance pass immediately.

- light: promote well-used session memories to project scope
- full: lifecycle + consolidation + promotion + graph pruning
- reflect: full + strategy adaptation + self-reflection""",
            inputSchema={
                "type": "object",
                "properties": {
                    "scope": {"type": "string", "enum": SCOPE_VALUES, "default": "project"},
                    "mode": {
                        "type": "string",
                        "enum": [m.value for m in MaintenanceMode],
                        "default": "full",
                    },
                    "session_id": {"type": "string", "description": "Limit promotion to one session"},
                },
            },
        ),
        Tool(
            name="memevolve_access",
            description="Record that a memory was retrieved and used. Strengthens it and slows its decay.",
            inputSchema={
                "type": "object",
                "properties": {
                    "memory_id": {"type": "string"},
                    "session_id": {"type": "string"},
                },
                "required": ["memory_id"],
            },
        ),
        Tool(
            name="memevolve_mark_useful",
            description="Mark the most recent search for a query as useful or not. Feeds retrieval strategy adaptation.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "was_useful": {"type": "boolean", "default": True},
                    "reason": {"type": "string"},
                },
                "required": ["query"],
            },
        ),
        Tool(
            name="memevolve_promote_to_user",
            description="Promote a project memory to user scope. Requires reuse in at least 3 distinct sessions.",
            inputSchema={
                "type": "object",
                "properties": {"memory_id": {"type": "string"}},
                "required": ["memory_id"],
            },
        ),
        Tool(
            name="memevolve_status",
            description="Memory counts by scope and status, queue depth, open contradictions, graph stats and recent runs.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


# =============================================================================
# TOOL HANDLERS
# =============================================================================

@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    try:
        return _dispatch(name, arguments or {})
    except (EvolutionError, KeyError, ValueError) as e:
        logger.warning(f"{name} failed: {e}")
        return [TextContent(type="text", text=f"Error in {name}: {e}")]
    except Exception as e:
        logger.exception(f"{name} crashed: {e}")
        return [TextContent(type="text", text=f"Error in {name}: {type(e).__name__}: {e}")]


def _dispatch(name: str, arguments: dict) -> list[TextContent]:
    scheduler = get_scheduler()

    if name == "memevolve_session_start":
        state = scheduler.on_session_start(Scope(arguments.get("scope", "project")))
        return _json(state.to_dict())

    elif name == "memevolve_session_end":
        report = scheduler.on_session_end(
            Scope(arguments.get("scope", "project")),
            arguments["session_id"],
        )
        return _json(report.to_dict())

    elif name == "memevolve_tool_event":
        memory = scheduler.on_tool_event(
            Scope(arguments.get("scope", "session")),
            {
                "content": arguments.get("content", ""),
                "kind": arguments.get("kind", "tool_use"),
                "session_id": arguments.get("session_id"),
                "tags": arguments.get("tags", []),
            },
        )
        return _json({
            "id": memory.id,
            "scope": memory.scope.value,
            "status": memory.status.value,
            "tags": memory.tags,
        })

    elif name == "memevolve_run_maintenance":
        report = scheduler.run_maintenance(
            Scope(arguments.get("scope", "project")),
            MaintenanceMode(arguments.get("mode", "full")),
            session_id=arguments.get("session_id"),
        )
        return _json(report.to_dict())

    elif name == "memevolve_access":
        memory = scheduler.access(arguments["memory_id"], arguments.get("session_id"))
        return _json({
            "id": memory.id,
            "status": memory.status.value,
            "access_count": memory.access_count,
            "importance": round(memory.importance, 4),
        })

    elif name == "memevolve_mark_useful":
        log_id = scheduler.mark_retrieval_useful(
            arguments["query"],
            arguments.get("was_useful", True),
            arguments.get("reason"),
        )
        if log_id is None:
            return [TextContent(type="text", text=f"No search found for query: {arguments['query']}")]
        return [TextContent(type="text", text=f"Feedback recorded on {log_id}")]

    elif name == "memevolve_promote_to_user":
        result = scheduler.promote_to_user(arguments["memory_id"])
        return _json(result.to_dict())

    elif name == "memevolve_status":
        return _json(scheduler.status())

    return [TextContent(type="text", text=f"Unknown tool: {name}")]


# =============================================================================
# SERVER STARTUP
# =============================================================================

def serve():
    """Start the MCP server on stdio."""
    import asyncio

    async def main():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )

    asyncio.run(main())


if __name__ == "__main__":
    serve()
