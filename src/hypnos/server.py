"""
Hypnos MCP Server - persistent memory with sleep consolidation.

Exposes the MemoryEngine over MCP (stdio):
- Short-term buffering and episodic commits
- Hybrid retrieval (similarity, importance, recency, association graph)
- Procedural rules
- Sleep consolidation, run on demand or by a background loop inside the
  configured sleep window

MCP Tools:
- record_message: Buffer a conversational turn
- commit_episode: Commit the buffer as an episodic memory
- retrieve_context: Ranked, explained retrieval
- upsert_procedural_rule / list_procedural_rules: Standing rules
- add_associative_edge: Link two memories
- note_access: Mark memories as used
- consolidate: Run one sleep consolidation pass
- rebuild_graph: Re-link associations for all episodics
- delete_memory: Delete a memory and its edges
- get_memory_stats: Database statistics
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from loguru import logger
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from hypnos.core.engine import MemoryEngine
from hypnos.core.models import MessageRole
from hypnos.utils.exceptions import HypnosError

if TYPE_CHECKING:
    from hypnos.config.settings import Settings, SleepSettings


# Global state
engine: Optional[MemoryEngine] = None
sleep_loop: Optional[SleepLoop] = None
_settings: Optional[Settings] = None
server = Server("hypnos")


class SleepLoop:
    """
    Background consolidation ticker.

    Every ``tick_interval_seconds`` it asks the engine to consolidate; the
    engine itself decides whether the clock is inside the sleep window.
    """

    def __init__(self, memory_engine: MemoryEngine, settings: SleepSettings):
        self.engine = memory_engine
        self.settings = settings
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._task is not None:
            logger.debug("Sleep loop already started")
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def tick(self) -> None:
        """One consolidation attempt; failures are logged and the loop goes on."""
        self.ticks += 1
        try:
            report = await self.engine.nightly_consolidate(self.settings.budget_seconds_per_tick)
        except (HypnosError, sqlite3.Error) as e:
            logger.error(f"Sleep tick {self.ticks} failed: {e}")
            return
        if report.ran:
            logger.info(f"Sleep tick {self.ticks}: {report.reason}")

    async def _run(self) -> None:
        self._running = True
        logger.info(
            f"Sleep loop started (every {self.settings.tick_interval_seconds}s, "
            f"window {self.settings.window_start}-{self.settings.window_end})"
        )
        try:
            while self._running:
                await self.tick()
                await asyncio.sleep(self.settings.tick_interval_seconds)
        except asyncio.CancelledError:
            logger.debug("Sleep loop cancelled")
            raise
        finally:
            self._running = False


def _ensure_initialized() -> MemoryEngine:
    """Ensure server components are initialized."""
    if engine is None:
        raise RuntimeError("Server not initialized")
    return engine


@server.list_tools()
async def list_tools() -> List[Tool]:
    """List available MCP tools."""
    return [
        Tool(
            name="record_message",
            description="Add a conversational turn to the short-term buffer",
            inputSchema={
                "type": "object",
                "properties": {
                    "text": {"type": "string", "description": "Message text"},
                    "role": {
                        "type": "string",
                        "enum": [r.value for r in MessageRole],
                        "default": "user",
                    },
                    "tags": {"type": "array", "items": {"type": "string"}},
                    "commit": {
                        "type": "boolean",
                        "description": "Commit the buffer as an episode afterwards",
                        "default": False,
                    },
                },
                "required": ["text"],
            },
        ),
        Tool(
            name="commit_episode",
            description="Commit the short-term buffer as one episodic memory",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="retrieve_context",
            description="Retrieve memories relevant to a query, with reasons",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query"},
                    "limit": {"type": "integer", "default": 5, "minimum": 1},
                    "mark_accessed": {
                        "type": "boolean",
                        "description": "Record the results as accessed",
                        "default": False,
                    },
                },
                "required": ["query"],
            },
        ),
        Tool(
            name="upsert_procedural_rule",
            description="Insert or refresh a standing rule (matched by exact text)",
            inputSchema={
                "type": "object",
                "properties": {
                    "text": {"type": "string"},
                    "tags": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["text"],
            },
        ),
        Tool(
            name="list_procedural_rules",
            description="List all procedural rules",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="add_associative_edge",
            description="Create or update an association between two memories",
            inputSchema={
                "type": "object",
                "properties": {
                    "src": {"type": "integer"},
                    "dst": {"type": "integer"},
                    "weight": {"type": "number", "minimum": 0, "maximum": 1},
                },
                "required": ["src", "dst", "weight"],
            },
        ),
        Tool(
            name="note_access",
            description="Mark memories as accessed now",
            inputSchema={
                "type": "object",
                "properties": {"ids": {"type": "array", "items": {"type": "integer"}}},
                "required": ["ids"],
            },
        ),
        Tool(
            name="consolidate",
            description="Run one sleep consolidation pass (only acts inside the sleep window)",
            inputSchema={
                "type": "object",
                "properties": {
                    "budget_seconds": {"type": "number", "description": "Synthesis time budget"},
                },
            },
        ),
        Tool(
            name="rebuild_graph",
            description="Re-link associations for every episodic memory",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="delete_memory",
            description="Delete a memory and its associations",
            inputSchema={
                "type": "object",
                "properties": {"memory_id": {"type": "integer"}},
                "required": ["memory_id"],
            },
        ),
        Tool(
            name="get_memory_stats",
            description="Get memory counts by kind plus edge totals",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle tool calls."""
    _ensure_initialized()
    arguments = arguments or {}

    try:
        if name == "record_message":
            result = await _handle_record_message(arguments)
        elif name == "commit_episode":
            result = await _handle_commit_episode()
        elif name == "retrieve_context":
            result = await _handle_retrieve_context(arguments)
        elif name == "upsert_procedural_rule":
            result = await _handle_upsert_procedural_rule(arguments)
        elif name == "list_procedural_rules":
            result = await _handle_list_procedural_rules()
        elif name == "add_associative_edge":
            result = await _handle_add_associative_edge(arguments)
        elif name == "note_access":
            result = await _handle_note_access(arguments)
        elif name == "consolidate":
            result = await _handle_consolidate(arguments)
        elif name == "rebuild_graph":
            result = await _handle_rebuild_graph()
        elif name == "delete_memory":
            result = await _handle_delete_memory(arguments)
        elif name == "get_memory_stats":
            result = await engine.stats()
        else:
            result = {"error": f"Unknown tool: {name}"}

        return [TextContent(type="text", text=json.dumps(result, indent=2))]

    except Exception as e:
        logger.exception(f"Tool call failed: {name}")
        return [TextContent(type="text", text=json.dumps({"error": str(e)}))]


async def _handle_record_message(args: Dict[str, Any]) -> Dict[str, Any]:
    await engine.record_short_term(
        args["text"],
        MessageRole(args.get("role", "user")),
        args.get("tags", []),
    )
    result: Dict[str, Any] = {"status": "buffered", "buffered": len(engine.short_term)}
    if args.get("commit"):
        result["episode_id"] = await engine.commit_episode_if_needed()
        result["status"] = "committed"
    return result


async def _handle_commit_episode() -> Dict[str, Any]:
    episode_id = await engine.commit_episode_if_needed()
    if episode_id is None:
        return {"status": "empty", "episode_id": None}
    return {"status": "committed", "episode_id": episode_id}


async def _handle_retrieve_context(args: Dict[str, Any]) -> Dict[str, Any]:
    query = args["query"]
    results = await engine.retrieve_context(query, int(args.get("limit", 5)))
    if args.get("mark_accessed") and results:
        await engine.note_access([r.id for r in results])
    return {
        "query": query,
        "results": [r.to_dict() for r in results],
        "count": len(results),
    }


async def _handle_upsert_procedural_rule(args: Dict[str, Any]) -> Dict[str, Any]:
    rule_id = await engine.upsert_procedural_rule(args["text"], args.get("tags", []))
    return {"id": rule_id, "status": "stored"}


async def _handle_list_procedural_rules() -> Dict[str, Any]:
    rules = await engine.list_procedural_rules()
    return {"rules": [r.to_dict() for r in rules], "count": len(rules)}


async def _handle_add_associative_edge(args: Dict[str, Any]) -> Dict[str, Any]:
    await engine.add_associative_edge(int(args["src"]), int(args["dst"]), float(args["weight"]))
    return {"status": "linked", "src": args["src"], "dst": args["dst"], "weight": args["weight"]}


async def _handle_note_access(args: Dict[str, Any]) -> Dict[str, Any]:
    ids = [int(i) for i in args.get("ids", [])]
    await engine.note_access(ids)
    return {"status": "noted", "count": len(ids)}


async def _handle_consolidate(args: Dict[str, Any]) -> Dict[str, Any]:
    budget = args.get("budget_seconds")
    report = await engine.nightly_consolidate(float(budget) if budget is not None else None)
    return report.to_dict()


async def _handle_rebuild_graph() -> Dict[str, Any]:
    relinked = await engine.rebuild_graph_incremental()
    return {"status": "rebuilt", "memories_relinked": relinked}


async def _handle_delete_memory(args: Dict[str, Any]) -> Dict[str, Any]:
    memory_id = int(args["memory_id"])
    deleted = await engine.delete_memory(memory_id)
    return {"memory_id": memory_id, "deleted": deleted}


def initialize(
    db_path: Optional[str] = None,
    settings: Optional[Settings] = None,
    memory_engine: Optional[MemoryEngine] = None,
) -> MemoryEngine:
    """Initialize server components.

    Args:
        db_path: Override database path (takes precedence over settings)
        settings: Hypnos settings instance (loaded from env if not provided)
        memory_engine: Pre-built engine (skips construction from settings)
    """
    global engine, _settings

    # Load settings if not provided
    if settings is None:
        from hypnos.config.settings import Settings
        settings = Settings()
    if db_path is not None:
        settings.storage.db_path = db_path
    _settings = settings

    logger.info("Initializing Hypnos memory server...")
    engine = memory_engine or MemoryEngine.from_settings(settings)
    logger.info(f"Memory engine ready ({settings.storage.db_path})")
    return engine


async def run_server() -> None:
    """Run the MCP server, with the sleep loop alongside when enabled."""
    global sleep_loop
    memory_engine = _ensure_initialized()
    logger.info("Starting Hypnos MCP server...")

    if _settings is not None and _settings.sleep.enabled:
        sleep_loop = SleepLoop(memory_engine, _settings.sleep)
        sleep_loop.start()

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        if sleep_loop is not None:
            await sleep_loop.stop()
            sleep_loop = None
        await memory_engine.close()
