import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

ECHO_SERVER = ROOT / "servers" / "echo.py"
HOST_SCRIPT = ROOT / "isolate_host.py"

PING_TOOL = {
    "name": "ping",
    "description": "Check that the server is alive.",
    "inputSchema": {"type": "object", "properties": {}, "required": []},
}
ECHO_TOOL = {
    "name": "echo",
    "description": "Echo a message back.",
    "inputSchema": {
        "type": "object",
        "properties": {
            "message": {"type": "string"},
            "count": {"type": "integer", "default": 1},
        },
        "required": ["message"],
    },
}


class FakeClient:
    """In-memory stand-in for an upstream MCP session."""

    def __init__(
        self,
        tools: Optional[List[Dict[str, Any]]] = None,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.tools = tools if tools is not None else [PING_TOOL, ECHO_TOOL]
        self.result = result or {"content": [{"type": "text", "text": '{"ok": true}'}]}
        self.error = error
        self.calls: List[tuple] = []
        self.started = 0
        self.stopped = 0
        self.listed = 0

    async def start(self) -> None:
        self.started += 1

    async def list_tools(self) -> List[Dict[str, Any]]:
        self.listed += 1
        return [dict(tool) for tool in self.tools]

    async def list_prompts(self) -> List[Dict[str, Any]]:
        return []

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((name, arguments))
        if self.error is not None:
            raise self.error
        return self.result

    async def get_prompt(self, name: str, arguments=None) -> Dict[str, Any]:
        return {"messages": [], "name": name}

    async def stop(self) -> None:
        self.stopped += 1


@pytest.fixture
def fake_client_cls():
    return FakeClient


@pytest.fixture
def sample_tools():
    return [dict(PING_TOOL), dict(ECHO_TOOL)]


@pytest.fixture
def echo_config() -> Dict[str, Any]:
    env = {key: os.environ[key] for key in ("PYTHONPATH",) if key in os.environ}
    return {"command": sys.executable, "args": [str(ECHO_SERVER)], "env": env}


@pytest.fixture
def host_command() -> List[str]:
    return [sys.executable, str(HOST_SCRIPT)]
