#!/usr/bin/env python3
"""
Echo MCP Server

A minimal stdio upstream used by the test-suite and as a starting point for
new servers.

Usage:
    python servers/echo.py

Load it into an orchestrator with:
    {"command": "python", "args": ["servers/echo.py"]}
"""

import asyncio
import json
import logging
from typing import Any, Dict, List

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import GetPromptResult, Prompt, PromptArgument, PromptMessage, TextContent, Tool

SERVER_NAME = "echo"

# Logging goes to stderr so it never interferes with the protocol on stdout
logging.basicConfig(level=logging.INFO, format="%(name)s - %(message)s")
logger = logging.getLogger(SERVER_NAME)

app = Server(SERVER_NAME)


# =============================================================================
# Tool Definitions
# =============================================================================

@app.list_tools()
async def list_tools() -> List[Tool]:
    """Return the list of tools this server provides."""
    return [
        Tool(
            name="ping",
            description="Check that the server is alive. Returns the text 'pong'.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="echo",
            description="""Echo a message back.

Returns dict with fields:
  - message (str): The input message, repeated `count` times
  - count (int): How many times it was repeated""",
            inputSchema={
                "type": "object",
                "properties": {
                    "message": {"type": "string", "description": "Text to echo"},
                    "count": {"type": "integer", "description": "Repetitions", "default": 1},
                },
                "required": ["message"],
            },
        ),
        Tool(
            name="fail",
            description="Always fails; used to exercise upstream error reporting.",
            inputSchema={
                "type": "object",
                "properties": {"reason": {"type": "string"}},
            },
        ),
    ]


# =============================================================================
# Tool Implementations
# =============================================================================

async def echo(message: str, count: int = 1) -> Dict[str, Any]:
    return {"message": " ".join([message] * max(1, count)), "count": count}


@app.call_tool()
async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
    """Dispatch tool calls to implementations."""
    logger.info("Tool called: %s", name)

    if name == "ping":
        return [TextContent(type="text", text="pong")]
    if name == "echo":
        result = await echo(
            message=str(arguments.get("message", "")),
            count=int(arguments.get("count", 1)),
        )
        return [TextContent(type="text", text=json.dumps(result))]
    if name == "fail":
        raise ValueError(arguments.get("reason") or "echo server was asked to fail")
    raise ValueError(f"Unknown tool: {name}")


# =============================================================================
# Prompts
# =============================================================================

@app.list_prompts()
async def list_prompts() -> List[Prompt]:
    return [
        Prompt(
            name="greeting",
            description="Greet someone by name",
            arguments=[PromptArgument(name="name", description="Who to greet", required=True)],
        )
    ]


@app.get_prompt()
async def get_prompt(name: str, arguments: Dict[str, str] | None) -> GetPromptResult:
    if name != "greeting":
        raise ValueError(f"Unknown prompt: {name}")
    who = (arguments or {}).get("name", "there")
    return GetPromptResult(
        description="Greeting",
        messages=[
            PromptMessage(role="user", content=TextContent(type="text", text=f"Hello, {who}!"))
        ],
    )


# =============================================================================
# Main Entry Point
# =============================================================================

async def main():
    """Run the MCP server."""
    logger.info("Starting %s MCP server", SERVER_NAME)
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


if __name__ == "__main__":
    asyncio.run(main())
