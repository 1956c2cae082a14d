"""doing-log MCP server - main entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

# MCP imports are optional - only needed when running the server
try:
    from mcp.server import Server  # pragma: no cover
    from mcp.server.stdio import stdio_server  # pragma: no cover
    from mcp.types import Tool, TextContent  # pragma: no cover
    HAS_MCP = True  # pragma: no cover
except ImportError:
    HAS_MCP = False
    Server = None  # type: ignore
    Tool = None  # type: ignore
    TextContent = None  # type: ignore

from loguru import logger

from .config import DoingConfig, load_config
from .engine import DoingEngine
from .log import setup_logging
from .taskpaper import read_file, serialize
from .tools import execute_tool, make_tools


def custom_tool_defs(config: DoingConfig) -> dict[str, dict]:
    """Tool definitions for custom_tool_* functions from a Python config."""
    defs = {}
    for tool_name, tool_func in config.custom_tools.items():
        doc = tool_func.__doc__ or f"Custom tool: {tool_name}"
        defs[tool_name] = {
            "name": tool_name,
            "description": doc.strip().split("\n")[0],
            "inputSchema": {
                "type": "object",
                "properties": {
                    "params": {
                        "type": "object",
                        "description": "Parameters for the custom tool",
                    }
                },
            },
        }
    return defs


async def call_custom_tool(engine: DoingEngine, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    """Run a custom tool; failures become a result dict like built-in tools."""
    try:
        result = engine.config.custom_tools[name](engine, arguments.get("params", arguments))
        if asyncio.iscoroutine(result):
            result = await result
        return result
    except Exception as e:
        logger.exception(f"Custom tool {name} failed")
        return {
            "success": False,
            "error": str(e),
            "error_type": "custom_tool_error",
        }


def create_server(config: DoingConfig) -> "Server":
    """Create and configure the MCP server.

    Raises:
        ImportError: If MCP package is not installed
    """
    if not HAS_MCP:
        raise ImportError(
            "MCP package not installed. Install with: pip install doing-log[mcp]"
        )

    server = Server("doing-log")
    engine = DoingEngine(config)
    tool_defs = make_tools(engine)
    tool_defs.update(custom_tool_defs(config))

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(
                name=t["name"],
                description=t["description"],
                inputSchema=t["inputSchema"],
            )
            for t in tool_defs.values()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        if name in config.custom_tools:
            result = await call_custom_tool(engine, name, arguments)
        else:
            result = await execute_tool(engine, name, arguments)
        return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]

    return server


async def run_server(config: DoingConfig) -> None:
    """Run the MCP server with stdio transport."""
    if not HAS_MCP:
        raise ImportError(
            "MCP package not installed. Install with: pip install doing-log[mcp]"
        )

    server = create_server(config)  # pragma: no cover

    async with stdio_server() as (read_stream, write_stream):  # pragma: no cover
        await server.run(  # pragma: no cover
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


def check_file(path: Path) -> int:
    """Parse the doing file and print what a save would drop. Returns exit code."""
    report = read_file(path)
    doc = report.document
    print(f"{path}: {len(doc.sections)} sections, {len(doc.entries())} entries")
    for skipped in report.skipped:
        print(f"  line {skipped.lineno} ({skipped.reason}): {skipped.text}")
    return 1 if report.skipped else 0


def init_file(engine: DoingEngine) -> Path:
    """Create the doing file with its default section if it doesn't exist."""
    if not engine.path.exists():
        engine.save(engine.load())
    return engine.path


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="doing-log - a plain-text TaskPaper time log, served over MCP"
    )
    parser.add_argument(
        "--project-root",
        "-p",
        type=Path,
        default=Path.cwd(),
        help="Directory searched for doing_config.* (default: current directory)",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to config file (default: auto-detect in project root)",
    )
    parser.add_argument(
        "--file",
        "-f",
        help="Doing file to use (overrides config and DOING_FILE)",
    )
    parser.add_argument(
        "--log-level",
        help="Log level for stderr (default: from config, else WARNING)",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Create the doing file if it doesn't exist",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Parse the doing file and list lines a save would drop",
    )
    parser.add_argument(
        "--format",
        action="store_true",
        help="Rewrite the doing file in canonical form",
    )

    args = parser.parse_args()
    project_root = args.project_root.resolve()

    try:
        config = load_config(project_root, args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    if args.file:
        config.doing_file = args.file
    setup_logging(args.log_level or config.log_level)
    engine = DoingEngine(config)

    if args.init:
        print(f"Doing file: {init_file(engine)}")
        return

    if args.check:
        sys.exit(check_file(engine.path))

    if args.format:
        document = engine.load()
        engine.save(document)
        print(f"Rewrote {engine.path} ({len(serialize(document).splitlines())} lines)")
        return

    if not HAS_MCP:
        print("Error: MCP package not installed.", file=sys.stderr)
        print("Install with: pip install doing-log[mcp]", file=sys.stderr)
        sys.exit(1)

    asyncio.run(run_server(config))


if __name__ == "__main__":  # pragma: no cover
    main()
