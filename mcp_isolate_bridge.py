#!/usr/bin/env python3
"""Isolated code execution against MCP tool servers.

A caller loads an upstream MCP server once (its tool schemas are fetched and
cached), then submits Python snippets that run inside a short-lived isolation
host process. Inside a snippet every upstream tool is an async function on
``mcp``; each call is relayed to the live upstream session through a
loopback-only RPC bridge owned by this process.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import keyword
import logging
import math
import os
import re
import shlex
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import textwrap
import threading
import time
import traceback
import uuid
from asyncio import subprocess as aio_subprocess
from contextlib import AsyncExitStack, asynccontextmanager, suppress
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from pathlib import Path
from typing import (
    IO,
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Set,
    Tuple,
    Union,
)

import anyio
import anyio.lowlevel
import httpx
from aiohttp import web
from mcp import ClientSession
from mcp.client.stdio import get_default_environment
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.message import SessionMessage
from mcp.types import JSONRPCMessage
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger("mcp-isolate-bridge")

DEFAULT_TIMEOUT_MS = int(os.environ.get("MCP_ISOLATE_TIMEOUT_MS", "30000"))
MIN_TIMEOUT_MS = int(os.environ.get("MCP_ISOLATE_MIN_TIMEOUT_MS", "100"))
MAX_TIMEOUT_MS = int(os.environ.get("MCP_ISOLATE_MAX_TIMEOUT_MS", "60000"))
MAX_CODE_CHARS = int(os.environ.get("MCP_ISOLATE_MAX_CODE_CHARS", "50000"))
CONNECT_TIMEOUT = float(os.environ.get("MCP_ISOLATE_CONNECT_TIMEOUT", "10"))
READY_TIMEOUT = float(os.environ.get("MCP_ISOLATE_READY_TIMEOUT", "10"))
READY_ATTEMPTS = int(os.environ.get("MCP_ISOLATE_READY_ATTEMPTS", "50"))
READY_INTERVAL = float(os.environ.get("MCP_ISOLATE_READY_INTERVAL", "0.2"))
DISPATCH_GRACE = float(os.environ.get("MCP_ISOLATE_DISPATCH_GRACE", "5"))
KILL_GRACE = float(os.environ.get("MCP_ISOLATE_KILL_GRACE", "1.0"))
STATE_DIR = Path(
    os.environ.get("MCP_ISOLATE_STATE_DIR", str(Path.home() / ".mcp-isolate"))
).expanduser()

PROBE_TIMEOUT = 0.5
HOST_TEARDOWN_GRACE = 3.0
SESSION_CLOSE_TIMEOUT = 5.0
BRIDGE_STOP_TIMEOUT = 2.0
SHUTDOWN_TIMEOUT = 5.0
STDIO_LINE_LIMIT = 16 * 1024 * 1024
CHARS_PER_TOKEN = 3.5

RPC_PATH = "/mcp-rpc"
LOOPBACK_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})
ALLOWED_HOSTS_HEADER = "X-Isolate-Allowed-Hosts"
ALLOW_LOCALHOST_HEADER = "X-Isolate-Allow-Localhost"

READY_MARKERS = ("Ready", "ready", "Listening")
BUILD_FAILURE_MARKERS = ("Build failed", "build failed")
CAPABILITY_MARKER = "isolation_limits"

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,100}$")
_AUTH_FAILURE_TOKENS = ("401", "403", "Unauthorized", "Forbidden")


def _default_host_command() -> List[str]:
    override = os.environ.get("MCP_ISOLATE_HOST_COMMAND")
    if override:
        return shlex.split(override)
    return [sys.executable, "-m", "isolate_host"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _describe_exception(exc: BaseException) -> str:
    """Return the message of the innermost leaf of an exception group."""

    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return str(exc) or type(exc).__name__


def _mask_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    masked: Dict[str, str] = {}
    for key, value in headers.items():
        if "auth" in key.lower() and len(value) > 15:
            masked[key] = f"{value[:15]}..."
        else:
            masked[key] = value
    return masked


def _process_group_kwargs() -> Dict[str, Any]:
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _pick_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _sanitize_identifier(value: str, *, default: str) -> str:
    """Convert an arbitrary string into a valid Python identifier."""

    cleaned = re.sub(r"[^0-9a-zA-Z_]+", "_", value.strip())
    cleaned = cleaned.lower() or default
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    if keyword.iskeyword(cleaned):
        cleaned = f"{cleaned}_"
    return cleaned


class SandboxError(RuntimeError):
    """Base class for every failure raised by the sandbox orchestration layer.

    ``error_type`` is a stable machine-readable category and ``source`` says
    who has to act on the failure: the caller's code (``user_code``), the
    upstream tool server (``upstream``) or the sandbox itself (``sandbox``).
    """

    error_type = "internal"
    default_source = "sandbox"

    def __init__(
        self,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
        details: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.details: Dict[str, Any] = dict(details or {})
        self.source = source or self.default_source


class InputValidationError(SandboxError):
    """Raised when caller input is malformed; nothing is spawned."""

    error_type = "validation"
    default_source = "user_code"


class InstanceNotFoundError(SandboxError):
    error_type = "not_found"
    default_source = "user_code"


class UpstreamConnectionError(SandboxError):
    """Raised when the upstream MCP server cannot be reached or initialised."""

    error_type = "connection"
    default_source = "upstream"


class BackendUnavailableError(SandboxError):
    """Raised when the isolation host executable is not installed."""

    error_type = "backend_unavailable"


class BuildError(SandboxError):
    """Raised when the generated execution module cannot be built."""

    error_type = "build"
    default_source = "user_code"


class SandboxTimeout(SandboxError):
    """Raised when user code or the isolation host exceeds its time budget."""

    error_type = "timeout"
    default_source = "user_code"


class ExecutionRuntimeError(SandboxError):
    """Raised when user code throws or an upstream tool call fails."""

    error_type = "runtime"
    default_source = "user_code"


class InternalSandboxError(SandboxError):
    error_type = "internal"


class HostConfigurationError(InternalSandboxError):
    """Raised when the isolation host rejects its own capability settings."""

    error_type = "configuration"


class StdioServerConfig(BaseModel):
    """Launch an upstream server as a child process speaking MCP over stdio."""

    model_config = ConfigDict(extra="forbid")

    command: str = Field(min_length=1)
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None


class HttpServerConfig(BaseModel):
    """Reach an upstream server over streamable HTTP."""

    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1)
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def _require_http_scheme(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value


ServerConfig = Union[StdioServerConfig, HttpServerConfig]


def parse_server_config(raw: Union[ServerConfig, Mapping[str, Any]]) -> ServerConfig:
    """Validate a raw server config mapping into exactly one connection mode."""

    if isinstance(raw, (StdioServerConfig, HttpServerConfig)):
        return raw
    if not isinstance(raw, Mapping):
        raise InputValidationError("Server config must be a mapping")
    has_command = "command" in raw
    has_url = "url" in raw
    if has_command == has_url:
        raise InputValidationError(
            "Server config must define exactly one of 'command' or 'url'"
        )
    model = StdioServerConfig if has_command else HttpServerConfig
    try:
        return model.model_validate(dict(raw))
    except PydanticValidationError as exc:
        messages = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        raise InputValidationError(
            f"Invalid server config: {'; '.join(messages)}",
            details={"errors": messages},
        ) from exc


def validate_instance_name(name: object) -> str:
    if not isinstance(name, str) or not _NAME_PATTERN.match(name):
        raise InputValidationError(
            "MCP name must be 1-100 characters of letters, digits, '-' or '_'",
            details={"name": name if isinstance(name, str) else repr(name)},
        )
    return name


def validate_code(code: object) -> str:
    if not isinstance(code, str) or not code.strip():
        raise InputValidationError("Code must be a non-empty string")
    if len(code) > MAX_CODE_CHARS:
        raise InputValidationError(
            f"Code exceeds the maximum length of {MAX_CODE_CHARS} characters",
            details={"length": len(code)},
        )
    return code


def clamp_timeout(timeout_ms: object) -> int:
    if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int):
        raise InputValidationError("timeout_ms must be an integer number of milliseconds")
    return max(MIN_TIMEOUT_MS, min(MAX_TIMEOUT_MS, timeout_ms))


def config_fingerprint(name: str, config: Union[ServerConfig, Mapping[str, Any]]) -> str:
    """Return a short stable digest of ``(name, config)``.

    Deep-equal configurations always produce the same fingerprint; key order
    in the original mapping does not matter.
    """

    parsed = parse_server_config(config)
    payload = json.dumps(
        {"name": name, "config": parsed.model_dump(mode="json")},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def execution_id_for(instance_id: str, code: str) -> str:
    digest = hashlib.sha256(f"{instance_id}-{code}".encode("utf-8")).hexdigest()
    return f"mcp-{instance_id}-{digest[:16]}"


@dataclass(frozen=True)
class NetworkPolicy:
    """Outbound network permissions for one instance's executions.

    An empty host list together with ``allow_localhost=False`` is deny-all,
    which is also the default.
    """

    allowed_hosts: Tuple[str, ...] = ()
    allow_localhost: bool = False

    def __post_init__(self) -> None:
        cleaned = tuple(
            host.strip().lower() for host in self.allowed_hosts if host and host.strip()
        )
        object.__setattr__(self, "allowed_hosts", cleaned)

    @property
    def network_enabled(self) -> bool:
        return self.allow_localhost or bool(self.allowed_hosts)

    @classmethod
    def from_guard_settings(
        cls,
        enabled: bool,
        allowlist: Optional[Iterable[str]] = None,
        allow_localhost: bool = False,
    ) -> "NetworkPolicy":
        if not enabled:
            return cls()
        return cls(allowed_hosts=tuple(allowlist or ()), allow_localhost=allow_localhost)


@dataclass(frozen=True)
class ResourceLimits:
    max_execution_time_ms: int = MAX_TIMEOUT_MS
    max_mcp_calls: int = 100
    max_memory_mb: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_execution_time_ms": self.max_execution_time_ms,
            "max_mcp_calls": self.max_mcp_calls,
            "max_memory_mb": self.max_memory_mb,
        }


def normalize_tool(tool: Mapping[str, Any]) -> Dict[str, Any]:
    schema = tool.get("inputSchema") or {}
    normalized: Dict[str, Any] = {
        "name": tool["name"],
        "inputSchema": {
            "type": "object",
            "properties": dict(schema.get("properties") or {}),
            "required": list(schema.get("required") or []),
        },
    }
    if tool.get("description"):
        normalized["description"] = tool["description"]
    return normalized


_JSON_TYPE_HINTS = {
    "string": "str",
    "integer": "int",
    "number": "float",
    "boolean": "bool",
    "object": "dict",
    "null": "None",
}


def _annotation_for(schema: object) -> str:
    if not isinstance(schema, Mapping):
        return "Any"
    kind = schema.get("type")
    if isinstance(kind, list):
        hints = [_annotation_for({**schema, "type": item}) for item in kind]
        return " | ".join(dict.fromkeys(hints)) or "Any"
    if kind == "array":
        return f"list[{_annotation_for(schema.get('items'))}]"
    return _JSON_TYPE_HINTS.get(kind, "Any")


def render_interface(tools: Sequence[Mapping[str, Any]]) -> str:
    """Render Python-style async signatures describing the tools."""

    blocks: List[str] = []
    for tool in tools:
        name = str(tool.get("name", ""))
        function_name = _sanitize_identifier(name, default="tool")
        schema = tool.get("inputSchema") or {}
        properties = schema.get("properties") or {}
        required = set(schema.get("required") or [])
        params: List[str] = []
        for prop in sorted(properties, key=lambda key: key not in required):
            spec = properties[prop]
            param = f"{_sanitize_identifier(prop, default='arg')}: {_annotation_for(spec)}"
            if prop not in required:
                default = spec.get("default") if isinstance(spec, Mapping) else None
                param = f"{param} = {default!r}"
            params.append(param)
        signature = f"*, {', '.join(params)}" if params else ""
        lines = [f"async def {function_name}({signature}) -> Any:"]
        if function_name != name:
            lines.append(f"    # call as mcp[{name!r}]")
        description = str(tool.get("description") or "").strip()
        if description:
            lines.append(textwrap.indent(f'"""{description}"""', "    "))
        else:
            lines.append("    ...")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def schema_efficiency_metrics(
    tools: Sequence[Mapping[str, Any]], tools_called: Iterable[str]
) -> Dict[str, Any]:
    """Measure how much of the instance's schema surface a run actually used."""

    used_names = list(dict.fromkeys(tools_called))
    used_set = set(used_names)
    sizes = {str(tool["name"]): len(json.dumps(tool)) for tool in tools}
    total_chars = sum(sizes.values())
    used_chars = sum(size for name, size in sizes.items() if name in used_set)
    reduction = total_chars - used_chars
    tokens_total = math.ceil(total_chars / CHARS_PER_TOKEN)
    tokens_used = math.ceil(used_chars / CHARS_PER_TOKEN)
    return {
        "total_tools_available": len(tools),
        "tools_used": used_names,
        "schema_size_total_chars": total_chars,
        "schema_size_used_chars": used_chars,
        "schema_utilization_percent": round(used_chars / total_chars * 100, 2)
        if total_chars
        else 0,
        "schema_efficiency_ratio": round(total_chars / used_chars, 2) if used_chars else 0,
        "schema_size_reduction_chars": reduction,
        "schema_size_reduction_percent": round(reduction / total_chars * 100, 2)
        if total_chars
        else 0,
        "estimated_tokens_total": tokens_total,
        "estimated_tokens_used": tokens_used,
        "estimated_tokens_saved": tokens_total - tokens_used,
    }


def security_metrics(policy: NetworkPolicy) -> Dict[str, Any]:
    network_isolated = not policy.network_enabled
    summary: List[str] = []
    if network_isolated:
        summary.append("Network isolation (no outbound access)")
    else:
        hosts = ", ".join(policy.allowed_hosts) or "none"
        localhost = "allowed" if policy.allow_localhost else "blocked"
        summary.append(f"Network allow-list (hosts: {hosts}; localhost {localhost})")
    summary.append("Process isolation (separate isolation host process)")
    summary.append("Code sandboxing (restricted builtins and imports)")
    return {
        "network_isolation_enabled": network_isolated,
        "process_isolation_enabled": True,
        "isolation_type": "isolation_host_process",
        "sandbox_status": "active",
        "security_level": "high" if network_isolated else "medium",
        "protection_summary": summary,
    }


@dataclass
class SchemaCacheEntry:
    name: str
    fingerprint: str
    tools: List[Dict[str, Any]]
    prompts: List[Dict[str, Any]]
    interface_text: str
    cached_at: datetime = field(default_factory=_utcnow)

    def to_record(self) -> Dict[str, Any]:
        """Serialise for the persisted store; the interface text is regenerated on load."""

        return {
            "mcpName": self.name,
            "configHash": self.fingerprint,
            "tools": self.tools,
            "prompts": self.prompts,
            "toolNames": [tool.get("name") for tool in self.tools],
            "promptNames": [prompt.get("name") for prompt in self.prompts],
            "toolCount": len(self.tools),
            "promptCount": len(self.prompts),
            "cachedAt": self.cached_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "SchemaCacheEntry":
        tools = [dict(tool) for tool in record["tools"]]
        return cls(
            name=str(record["mcpName"]),
            fingerprint=str(record["configHash"]),
            tools=tools,
            prompts=[dict(prompt) for prompt in record.get("prompts") or []],
            interface_text=render_interface(tools),
            cached_at=datetime.fromisoformat(record["cachedAt"]),
        )


class SchemaStore(Protocol):
    def load(self, key: str) -> Optional[Dict[str, Any]]:  # pragma: no cover - typing only
        ...

    def save(self, key: str, record: Dict[str, Any]) -> None:  # pragma: no cover - typing only
        ...

    def purge(self, prefix: str) -> int:  # pragma: no cover - typing only
        ...


class JsonSchemaStore:
    """Persist schema cache records in a JSON document under ``schemaCache``."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else STATE_DIR / "schema-cache.json"
        self._lock = threading.Lock()

    def _read_document(self) -> Dict[str, Any]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning("Could not read schema cache %s: %s", self.path, exc)
            return {}
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring unreadable schema cache %s: %s", self.path, exc)
            return {}
        return document if isinstance(document, dict) else {}

    def _write_document(self, document: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".schema-cache-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(temp_name, self.path)
        except BaseException:
            with suppress(OSError):
                os.unlink(temp_name)
            raise

    def _entries(self, document: Dict[str, Any]) -> Dict[str, Any]:
        entries = document.get("schemaCache")
        if not isinstance(entries, dict):
            entries = {}
            document["schemaCache"] = entries
        return entries

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._entries(self._read_document()).get(key)
        return record if isinstance(record, dict) else None

    def save(self, key: str, record: Dict[str, Any]) -> None:
        with self._lock:
            document = self._read_document()
            self._entries(document)[key] = record
            self._write_document(document)

    def purge(self, prefix: str) -> int:
        with self._lock:
            document = self._read_document()
            entries = self._entries(document)
            doomed = [key for key in entries if key.startswith(prefix)]
            if not doomed:
                return 0
            for key in doomed:
                del entries[key]
            self._write_document(document)
        return len(doomed)


class SchemaCache:
    """In-process schema cache backed by an optional persisted store.

    Entries are keyed by ``name:fingerprint``; a persisted hit is promoted
    into memory and only trusted when its recorded fingerprint matches.
    """

    def __init__(self, store: Optional[SchemaStore] = None) -> None:
        self._entries: Dict[str, SchemaCacheEntry] = {}
        self._store = store
        self._lock = threading.RLock()

    @staticmethod
    def key(name: str, fingerprint: str) -> str:
        return f"{name}:{fingerprint}"

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, name: str, fingerprint: str) -> Optional[SchemaCacheEntry]:
        key = self.key(name, fingerprint)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None or self._store is None:
                return entry
            try:
                record = self._store.load(key)
            except OSError as exc:
                logger.warning("Schema store lookup failed for %s: %s", name, exc)
                return None
            if not record or record.get("configHash") != fingerprint or record.get("mcpName") != name:
                return None
            try:
                entry = SchemaCacheEntry.from_record(record)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Discarding malformed persisted schema for %s: %s", name, exc)
                return None
            self._entries[key] = entry
            logger.debug("Promoted persisted schema for %s (%s tools)", name, len(entry.tools))
            return entry

    def put(self, entry: SchemaCacheEntry) -> None:
        key = self.key(entry.name, entry.fingerprint)
        with self._lock:
            self._entries[key] = entry
            if self._store is None:
                return
            try:
                self._store.save(key, entry.to_record())
            except OSError as exc:
                logger.warning("Failed to persist schema for %s: %s", entry.name, exc)

    def invalidate(self, name: str) -> int:
        """Drop every fingerprint cached for ``name``; returns in-process removals."""

        prefix = f"{name}:"
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            if self._store is not None:
                try:
                    self._store.purge(prefix)
                except OSError as exc:
                    logger.warning("Failed to purge persisted schema for %s: %s", name, exc)
        return len(doomed)

    def clear_memory(self) -> None:
        with self._lock:
            self._entries.clear()


@dataclass
class ProcessHandle:
    pid: int
    label: str = ""
    group_leader: bool = True
    started_at: float = field(default_factory=time.monotonic)


class ProcessTreeTerminator:
    """Track spawned processes and kill each one together with its descendants.

    ``terminate`` never raises and is a no-op for processes that are already
    gone, so it is safe to call repeatedly from overlapping cleanup paths.
    """

    def __init__(self, grace_period: float = KILL_GRACE) -> None:
        self.grace_period = grace_period
        self._handles: Dict[int, ProcessHandle] = {}

    def track(self, pid: int, *, label: str = "", group_leader: bool = True) -> ProcessHandle:
        handle = ProcessHandle(pid=pid, label=label, group_leader=group_leader)
        self._handles[pid] = handle
        return handle

    def untrack(self, pid: int) -> None:
        self._handles.pop(pid, None)

    def is_tracked(self, pid: int) -> bool:
        return pid in self._handles

    @property
    def tracked(self) -> Dict[int, ProcessHandle]:
        return dict(self._handles)

    async def terminate(self, pid: Optional[int]) -> None:
        if pid is None or pid <= 0:
            return
        handle = self._handles.pop(pid, None)
        try:
            await self._kill_tree(pid, handle)
        except Exception as exc:
            logger.debug("Failed to terminate process tree %s: %s", pid, exc, exc_info=True)

    async def terminate_all(self) -> None:
        for pid in list(self._handles):
            await self.terminate(pid)

    async def _kill_tree(self, pid: int, handle: Optional[ProcessHandle]) -> None:
        raise NotImplementedError


class PosixProcessTreeTerminator(ProcessTreeTerminator):
    """Signal the whole process group: TERM, a grace period, then KILL."""

    async def _kill_tree(self, pid: int, handle: Optional[ProcessHandle]) -> None:
        if handle is not None and handle.group_leader:
            group = pid
        else:
            try:
                group = os.getpgid(pid)
            except ProcessLookupError:
                return
            if group == os.getpgrp():
                # never signal our own group; fall back to the single process
                group = 0
        if not self._signal(pid, group, signal.SIGTERM):
            return
        deadline = time.monotonic() + self.grace_period
        while time.monotonic() < deadline:
            await asyncio.sleep(0.05)
            if not self._signal(pid, group, 0):
                return
        logger.debug("Process tree %s survived SIGTERM; sending SIGKILL", pid)
        self._signal(pid, group, signal.SIGKILL)

    @staticmethod
    def _signal(pid: int, group: int, sig: int) -> bool:
        try:
            if group:
                os.killpg(group, sig)
            else:
                os.kill(pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError as exc:
            logger.debug("Not permitted to signal %s: %s", pid, exc)
            return False
        return True


class WindowsProcessTreeTerminator(ProcessTreeTerminator):
    """Kill the tree with ``taskkill /F /T``."""

    async def _kill_tree(self, pid: int, handle: Optional[ProcessHandle]) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                "taskkill",
                "/F",
                "/T",
                "/PID",
                str(pid),
                stdout=aio_subprocess.DEVNULL,
                stderr=aio_subprocess.DEVNULL,
            )
        except FileNotFoundError:
            logger.debug("taskkill not available; cannot terminate %s", pid)
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=10)
        except asyncio.TimeoutError:
            with suppress(ProcessLookupError):
                process.kill()


def create_terminator(grace_period: float = KILL_GRACE) -> ProcessTreeTerminator:
    if sys.platform == "win32":
        return WindowsProcessTreeTerminator(grace_period)
    return PosixProcessTreeTerminator(grace_period)


class ClientLike(Protocol):
    async def start(self) -> None:  # pragma: no cover - typing only
        ...

    async def list_tools(self) -> List[Dict[str, object]]:  # pragma: no cover - typing only
        ...

    async def list_prompts(self) -> List[Dict[str, object]]:  # pragma: no cover - typing only
        ...

    async def call_tool(
        self, name: str, arguments: Dict[str, object]
    ) -> Dict[str, object]:  # pragma: no cover - typing only
        ...

    async def get_prompt(
        self, name: str, arguments: Optional[Dict[str, str]] = None
    ) -> Dict[str, object]:  # pragma: no cover - typing only
        ...

    async def stop(self) -> None:  # pragma: no cover - typing only
        ...


class PersistentMCPClient:
    """Maintain a persistent MCP session to one upstream server.

    The session lives in a dedicated background task so that it is entered
    and exited from the same task. ``start`` is idempotent and safe to call
    concurrently; the first caller opens the session.
    """

    def __init__(
        self,
        name: str,
        config: ServerConfig,
        *,
        terminator: Optional[ProcessTreeTerminator] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self.name = name
        self.config = config
        self.pid: Optional[int] = None
        self._terminator = terminator or create_terminator()
        self._connect_timeout = connect_timeout
        self._session: Optional[ClientSession] = None
        self._lifecycle_task: Optional[asyncio.Task[None]] = None
        self._ready: Optional[asyncio.Future[None]] = None
        self._closing: Optional[asyncio.Event] = None
        self._start_lock = asyncio.Lock()
        self._captured_stderr: Optional[IO[bytes]] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._session is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise UpstreamConnectionError(
                f"MCP client for {self.name!r} has been stopped",
                details={"server": self.name},
            )

    async def start(self) -> None:
        """Open the session if needed. A stopped client stays stopped."""
        self._ensure_open()
        if self._session is not None:
            return
        async with self._start_lock:
            self._ensure_open()
            if self._session is not None:
                return
            await self._open_session()
            if self._closed:
                # stopped while the session was opening
                await self._close_session()
                self._ensure_open()

    async def _open_session(self) -> None:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._closing = asyncio.Event()
        self._lifecycle_task = asyncio.create_task(
            self._run_session(), name=f"mcp-session-{self.name}"
        )
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self._connect_timeout)
        except asyncio.TimeoutError as exc:
            stderr_text = self._read_captured_stderr()
            await self._close_session()
            raise UpstreamConnectionError(
                f"Timed out connecting to MCP server {self.name!r} after {self._connect_timeout:g}s",
                stderr=stderr_text,
                details={"server": self.name},
            ) from exc
        except Exception as exc:
            stderr_text = self._read_captured_stderr()
            logger.debug(
                "Client session for %s failed to initialize: %s (stderr=%s)",
                self.name,
                exc,
                stderr_text,
            )
            await self._close_session()
            raise UpstreamConnectionError(
                f"Failed to connect to MCP server {self.name!r}: {_describe_exception(exc)}",
                stderr=stderr_text,
                details={"server": self.name},
            ) from exc

    async def _run_session(self) -> None:
        assert self._ready is not None and self._closing is not None
        ready = self._ready
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream = await stack.enter_async_context(
                    self._open_transport()
                )
                session = await stack.enter_async_context(
                    ClientSession(read_stream, write_stream)
                )
                await session.initialize()
                self._session = session
                if not ready.done():
                    ready.set_result(None)
                await self._closing.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.debug("MCP session for %s ended: %s", self.name, exc, exc_info=True)
        finally:
            self._session = None

    @asynccontextmanager
    async def _open_transport(self) -> AsyncIterator[Tuple[Any, Any]]:
        if isinstance(self.config, HttpServerConfig):
            logger.info(
                "Connecting to MCP server %s at %s (headers: %s)",
                self.name,
                self.config.url,
                _mask_headers(self.config.headers),
            )
            async with streamablehttp_client(
                self.config.url, headers=self.config.headers or None
            ) as (read_stream, write_stream, _get_session_id):
                yield read_stream, write_stream
        else:
            async with self._open_stdio_transport(self.config) as streams:
                yield streams

    @asynccontextmanager
    async def _open_stdio_transport(
        self, config: StdioServerConfig
    ) -> AsyncIterator[Tuple[Any, Any]]:
        command = shutil.which(config.command) or config.command
        env = {**get_default_environment(), **config.env}
        logger.info(
            "Starting MCP server %s: %s %s (env keys: %s)",
            self.name,
            command,
            " ".join(config.args),
            sorted(config.env),
        )
        # stderr goes to a real file so a chatty server can never block on a full pipe
        self._captured_stderr = tempfile.TemporaryFile(mode="w+b")
        process = await asyncio.create_subprocess_exec(
            command,
            *config.args,
            stdin=aio_subprocess.PIPE,
            stdout=aio_subprocess.PIPE,
            stderr=self._captured_stderr,
            env=env,
            cwd=config.cwd or None,
            limit=STDIO_LINE_LIMIT,
            **_process_group_kwargs(),
        )
        self.pid = process.pid
        self._terminator.track(process.pid, label=f"mcp:{self.name}")

        read_writer, read_stream = anyio.create_memory_object_stream(0)
        write_stream, write_reader = anyio.create_memory_object_stream(0)

        async def _pump_stdout() -> None:
            assert process.stdout is not None
            try:
                async with read_writer:
                    async for raw_line in process.stdout:
                        line = raw_line.decode("utf-8", errors="replace").strip()
                        if not line:
                            continue
                        try:
                            message = JSONRPCMessage.model_validate_json(line)
                        except PydanticValidationError:
                            logger.debug("Ignoring non-protocol output from %s: %.200s", self.name, line)
                            continue
                        await read_writer.send(SessionMessage(message=message))
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                await anyio.lowlevel.checkpoint()

        async def _pump_stdin() -> None:
            assert process.stdin is not None
            try:
                async with write_reader:
                    async for session_message in write_reader:
                        payload = session_message.message.model_dump_json(
                            by_alias=True, exclude_none=True
                        )
                        process.stdin.write((payload + "\n").encode("utf-8"))
                        await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.debug("MCP server %s closed its stdin: %s", self.name, exc)
            except anyio.ClosedResourceError:
                await anyio.lowlevel.checkpoint()

        pumps = [
            asyncio.create_task(_pump_stdout(), name=f"mcp-stdout-{self.name}"),
            asyncio.create_task(_pump_stdin(), name=f"mcp-stdin-{self.name}"),
        ]
        try:
            yield read_stream, write_stream
        finally:
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            if process.stdin is not None:
                with suppress(OSError, RuntimeError):
                    process.stdin.close()
            await self._terminator.terminate(process.pid)
            with suppress(asyncio.TimeoutError, ProcessLookupError):
                await asyncio.wait_for(process.wait(), timeout=2.0)
            self.pid = None

    def _read_captured_stderr(self) -> str:
        if self._captured_stderr is None:
            return ""
        try:
            self._captured_stderr.seek(0)
            return self._captured_stderr.read().decode("utf-8", errors="replace")[-4000:]
        except (OSError, ValueError):
            return "<failed to read captured stderr>"

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise UpstreamConnectionError(
                f"MCP client for {self.name!r} is not connected",
                details={"server": self.name},
            )
        return self._session

    async def list_tools(self) -> List[Dict[str, object]]:
        await self.start()
        result = await self._require_session().list_tools()
        return [tool.model_dump(by_alias=True, exclude_none=True) for tool in result.tools]

    async def list_prompts(self) -> List[Dict[str, object]]:
        await self.start()
        try:
            result = await self._require_session().list_prompts()
        except Exception as exc:
            logger.debug("MCP server %s does not list prompts: %s", self.name, exc)
            return []
        return [
            prompt.model_dump(by_alias=True, exclude_none=True) for prompt in result.prompts
        ]

    async def call_tool(self, name: str, arguments: Dict[str, object]) -> Dict[str, object]:
        await self.start()
        start_time = time.monotonic()
        logger.debug("Calling %s on MCP server %s", name, self.name)
        call_result = await self._require_session().call_tool(name=name, arguments=arguments)
        logger.debug(
            "%s on MCP server %s completed in %.2fs",
            name,
            self.name,
            time.monotonic() - start_time,
        )
        return call_result.model_dump(by_alias=True, exclude_none=True)

    async def get_prompt(
        self, name: str, arguments: Optional[Dict[str, str]] = None
    ) -> Dict[str, object]:
        await self.start()
        result = await self._require_session().get_prompt(name, arguments or {})
        return result.model_dump(by_alias=True, exclude_none=True)

    async def stop(self) -> None:
        self._closed = True
        await self._close_session()

    async def _close_session(self) -> None:
        task = self._lifecycle_task
        self._lifecycle_task = None
        if self._closing is not None:
            self._closing.set()
        if task is not None:
            _done, pending = await asyncio.wait({task}, timeout=SESSION_CLOSE_TIMEOUT)
            if pending:
                logger.debug("MCP session for %s did not close in time; cancelling", self.name)
                task.cancel()
                await asyncio.wait({task}, timeout=SESSION_CLOSE_TIMEOUT)
            if task.done() and not task.cancelled() and task.exception() is not None:
                logger.debug("MCP session task for %s raised %s", self.name, task.exception())
        ready = self._ready
        if ready is not None and ready.done() and not ready.cancelled():
            # mark the outcome as retrieved
            ready.exception()
        if self.pid is not None:
            await self._terminator.terminate(self.pid)
            self.pid = None
        if self._captured_stderr is not None:
            with suppress(OSError):
                self._captured_stderr.close()
            self._captured_stderr = None


@dataclass
class Instance:
    instance_id: str
    name: str
    status: str
    tools: List[Dict[str, Any]]
    prompts: List[Dict[str, Any]]
    interface_text: str
    created_at: datetime
    uptime_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mcp_id": self.instance_id,
            "mcp_name": self.name,
            "status": self.status,
            "tools": self.tools,
            "prompts": self.prompts,
            "interface_text": self.interface_text,
            "created_at": self.created_at.isoformat(),
            "uptime_ms": self.uptime_ms,
        }


@dataclass
class _RegistryEntry:
    instance: Instance
    client: Optional[ClientLike]
    host_pids: Set[int] = field(default_factory=set)


class InstanceRegistry:
    """Owns every loaded instance together with its session and host processes."""

    def __init__(self, terminator: ProcessTreeTerminator) -> None:
        self._terminator = terminator
        self._entries: Dict[str, _RegistryEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _snapshot(instance: Instance) -> Instance:
        uptime = int((_utcnow() - instance.created_at).total_seconds() * 1000)
        return replace(instance, uptime_ms=max(0, uptime))

    async def create(
        self,
        name: str,
        *,
        tools: List[Dict[str, Any]],
        prompts: List[Dict[str, Any]],
        interface_text: str,
        client: Optional[ClientLike],
    ) -> Instance:
        async with self._lock:
            if any(entry.instance.name == name for entry in self._entries.values()):
                raise InputValidationError(
                    f"MCP server {name!r} is already loaded", details={"name": name}
                )
            instance = Instance(
                instance_id=str(uuid.uuid4()),
                name=name,
                status="ready",
                tools=tools,
                prompts=prompts,
                interface_text=interface_text,
                created_at=_utcnow(),
            )
            self._entries[instance.instance_id] = _RegistryEntry(instance, client)
        return self._snapshot(instance)

    def find(self, instance_id: str) -> Optional[Instance]:
        entry = self._entries.get(instance_id)
        return self._snapshot(entry.instance) if entry else None

    def get(self, instance_id: str) -> Instance:
        instance = self.find(instance_id)
        if instance is None:
            raise InstanceNotFoundError(
                f"MCP instance not found: {instance_id}", details={"mcp_id": instance_id}
            )
        return instance

    def get_by_name(self, name: str) -> Optional[Instance]:
        for entry in self._entries.values():
            if entry.instance.name == name:
                return self._snapshot(entry.instance)
        return None

    def list(self) -> List[Instance]:
        return [self._snapshot(entry.instance) for entry in self._entries.values()]

    def client_for(self, instance_id: str) -> Optional[ClientLike]:
        entry = self._entries.get(instance_id)
        return entry.client if entry else None

    def track_host(self, instance_id: str, pid: int) -> None:
        entry = self._entries.get(instance_id)
        if entry is not None:
            entry.host_pids.add(pid)

    def untrack_host(self, instance_id: str, pid: int) -> None:
        entry = self._entries.get(instance_id)
        if entry is not None:
            entry.host_pids.discard(pid)

    async def remove(self, instance_id: str) -> Instance:
        """Remove an instance; cleanup is best-effort but the entry always goes."""

        async with self._lock:
            entry = self._entries.get(instance_id)
            if entry is None:
                raise InstanceNotFoundError(
                    f"MCP instance not found: {instance_id}", details={"mcp_id": instance_id}
                )
            try:
                if entry.client is not None:
                    try:
                        await entry.client.stop()
                    except Exception as exc:
                        logger.warning(
                            "Closing MCP session for %s failed: %s", entry.instance.name, exc
                        )
                for pid in sorted(entry.host_pids):
                    await self._terminator.terminate(pid)
            finally:
                del self._entries[instance_id]
        entry.instance.status = "unloaded"
        return self._snapshot(entry.instance)


def normalize_tool_result(result: Mapping[str, Any]) -> Any:
    """Unwrap an upstream ``CallToolResult`` into the value guest code sees.

    Text content that looks like JSON is decoded, other text is returned
    trimmed, and non-text content items are returned untouched.
    """

    content = result.get("content")
    if not isinstance(content, list) or not content:
        structured = result.get("structuredContent")
        return structured if structured is not None else dict(result)
    first = content[0]
    if isinstance(first, Mapping) and first.get("type") == "text":
        text = str(first.get("text") or "").strip()
        if text.startswith(("{", "[")):
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return text
        return text
    return first


def _tool_error_text(result: Mapping[str, Any]) -> str:
    for item in result.get("content") or []:
        if isinstance(item, Mapping) and item.get("type") == "text" and item.get("text"):
            return str(item["text"]).strip()
    return "Tool reported an error"


class ToolCallBridge:
    """Loopback HTTP endpoint relaying guest tool calls to upstream sessions."""

    def __init__(
        self,
        lookup: Callable[[str], Optional[ClientLike]],
        *,
        host: str = "127.0.0.1",
    ) -> None:
        if host not in LOOPBACK_HOSTS:
            raise ValueError(f"RPC bridge must bind to a loopback address, not {host!r}")
        self._lookup = lookup
        self._host = host
        self._runner: Optional[web.AppRunner] = None
        self._url: Optional[str] = None
        self._start_lock = asyncio.Lock()

    @property
    def url(self) -> Optional[str]:
        return self._url

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(RPC_PATH, self.handle_rpc)
        return app

    async def start(self) -> str:
        if self._url is not None:
            return self._url
        async with self._start_lock:
            if self._url is not None:
                return self._url
            family = socket.AF_INET6 if ":" in self._host else socket.AF_INET
            sock = socket.socket(family, socket.SOCK_STREAM)
            sock.bind((self._host, 0))
            port = sock.getsockname()[1]
            runner = web.AppRunner(self.build_app(), access_log=None)
            await runner.setup()
            await web.SockSite(runner, sock).start()
            self._runner = runner
            display_host = f"[{self._host}]" if ":" in self._host else self._host
            self._url = f"http://{display_host}:{port}{RPC_PATH}"
            logger.info("RPC bridge listening on %s", self._url)
        return self._url

    async def stop(self) -> None:
        runner = self._runner
        self._runner = None
        self._url = None
        if runner is not None:
            await runner.cleanup()

    async def handle_rpc(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"success": False, "error": "Invalid JSON body"}, status=400)
        if not isinstance(data, dict):
            return web.json_response({"success": False, "error": "Request body must be an object"}, status=400)

        instance_id = data.get("instanceId")
        tool_name = data.get("toolName")
        arguments = data.get("input")
        if not instance_id or not tool_name:
            return web.json_response(
                {"success": False, "error": "Missing instanceId or toolName"}, status=400
            )
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            return web.json_response(
                {"success": False, "error": "Tool input must be an object"}, status=400
            )

        client = self._lookup(str(instance_id))
        if client is None:
            return web.json_response(
                {"success": False, "error": f"MCP client not found for ID: {instance_id}"},
                status=404,
            )

        try:
            result = await client.call_tool(str(tool_name), arguments)
        except Exception as exc:
            logger.warning("Bridged call %s failed on %s: %s", tool_name, instance_id, exc)
            return web.json_response(
                {
                    "success": False,
                    "error": _describe_exception(exc),
                    "stack": "".join(traceback.format_exception(exc)),
                },
                status=500,
            )
        if result.get("isError"):
            return web.json_response(
                {"success": False, "error": _tool_error_text(result)}, status=500
            )
        return web.json_response(
            {"success": True, "result": normalize_tool_result(result)},
            dumps=partial(json.dumps, default=str),
        )


GUEST_MODULES = (
    "base64",
    "bisect",
    "collections",
    "copy",
    "dataclasses",
    "datetime",
    "decimal",
    "enum",
    "fractions",
    "functools",
    "hashlib",
    "heapq",
    "itertools",
    "json",
    "math",
    "operator",
    "random",
    "re",
    "statistics",
    "string",
    "textwrap",
    "time",
    "typing",
    "uuid",
)

BLOCKED_BUILTINS = (
    "breakpoint",
    "compile",
    "copyright",
    "credits",
    "eval",
    "exec",
    "exit",
    "help",
    "input",
    "license",
    "open",
    "quit",
)

HEALTH_CHECK_MODULE = textwrap.dedent(
    """
    async def handle(request, host=None):
        return {
            "success": True,
            "output": "",
            "result": "ready",
            "metrics": {"mcp_calls_made": 0, "tools_called": []},
        }
    """
).lstrip()

_MODULE_PRELUDE = textwrap.dedent(
    r'''
    # Generated execution module: one code submission against one MCP instance.

    import asyncio
    import builtins
    import json
    import sys
    import traceback
    import types

    import httpx

    INSTANCE_ID = __INSTANCE_ID__
    BRIDGE_URL = __BRIDGE_URL__
    TOOL_NAMES = __TOOL_NAMES__
    RESOURCE_LIMITS = __RESOURCE_LIMITS__
    NETWORK_ENABLED = __NETWORK_ENABLED__
    DEFAULT_TIMEOUT_MS = __DEFAULT_TIMEOUT_MS__

    GUEST_MODULES = frozenset(__GUEST_MODULES__)
    BLOCKED_BUILTINS = frozenset(__BLOCKED_BUILTINS__)


    class ToolNotFoundError(AttributeError):
        def __init__(self, name, available):
            listing = ", ".join(available) if available else "none"
            super().__init__(f'Tool "{name}" not found. Available tools: {listing}')
            self.tool = name


    class ToolCallError(RuntimeError):
        def __init__(self, message, *, tool, upstream_stack=None):
            super().__init__(message)
            self.tool = tool
            self.upstream_stack = upstream_stack


    class _ExecutionState:
        def __init__(self):
            self.logs = []
            self.calls = 0
            self.tools_called = {}

        def record_call(self, tool_name):
            self.calls += 1
            self.tools_called.setdefault(tool_name, None)

        def metrics(self):
            return {"mcp_calls_made": self.calls, "tools_called": list(self.tools_called)}


    def _format_value(value):
        if isinstance(value, str):
            return value
        try:
            return json.dumps(value, indent=2, default=str)
        except (TypeError, ValueError):
            return repr(value)


    class _Console:
        def __init__(self, logs):
            self._logs = logs

        def _emit(self, prefix, args):
            self._logs.append(prefix + " ".join(_format_value(arg) for arg in args))

        def log(self, *args):
            self._emit("", args)

        info = log
        debug = log

        def warn(self, *args):
            self._emit("WARN: ", args)

        warning = warn

        def error(self, *args):
            self._emit("ERROR: ", args)


    class _LogStream:
        def __init__(self, logs, prefix=""):
            self._logs = logs
            self._prefix = prefix
            self._pending = ""

        def write(self, text):
            self._pending += str(text)
            while "\n" in self._pending:
                line, self._pending = self._pending.split("\n", 1)
                self._logs.append(self._prefix + line)
            return len(text)

        def flush(self):
            pass

        def drain(self):
            if self._pending:
                self._logs.append(self._prefix + self._pending)
                self._pending = ""

        def isatty(self):
            return False


    async def _call_bridge(tool_name, arguments):
        payload = {"instanceId": INSTANCE_ID, "toolName": tool_name, "input": arguments}
        async with httpx.AsyncClient(timeout=None, trust_env=False) as client:
            response = await client.post(BRIDGE_URL, json=payload)
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if response.is_error or not body.get("success"):
            detail = body.get("error") or response.reason_phrase or "unknown error"
            raise ToolCallError(
                f"MCP tool call failed: {detail}",
                tool=tool_name,
                upstream_stack=body.get("stack"),
            )
        return body.get("result")


    def _make_stub(tool_name, state, admit):
        async def call(input=None, **kwargs):
            arguments = dict(input or {})
            arguments.update(kwargs)
            state.record_call(tool_name)
            if admit is not None:
                admit(tool_name)
            return await _call_bridge(tool_name, arguments)

        call.__name__ = tool_name
        call.__qualname__ = "mcp." + tool_name
        return call


    class _ToolProxy:
        __slots__ = ("_stubs",)

        def __init__(self, stubs):
            self._stubs = stubs

        def __getattr__(self, name):
            if name.startswith("__") and name.endswith("__"):
                raise AttributeError(name)
            try:
                return self._stubs[name]
            except KeyError:
                raise ToolNotFoundError(name, sorted(self._stubs)) from None

        def __getitem__(self, name):
            return self.__getattr__(name)

        def __dir__(self):
            return sorted(self._stubs)


    _SAFE_ASYNCIO = types.SimpleNamespace(
        gather=asyncio.gather,
        sleep=asyncio.sleep,
        wait_for=asyncio.wait_for,
        TimeoutError=asyncio.TimeoutError,
    )


    def _guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
        if level:
            raise ImportError("Relative imports are not available in the sandbox")
        if name == "asyncio":
            return _SAFE_ASYNCIO
        if name.partition(".")[0] not in GUEST_MODULES:
            raise ImportError(f"Module {name!r} is not available in the sandbox")
        return builtins.__import__(name, globals, locals, fromlist, level)


    def _guest_builtins():
        allowed = {
            name: value
            for name, value in vars(builtins).items()
            if name not in BLOCKED_BUILTINS
        }
        allowed["__import__"] = _guarded_import
        return allowed
    '''
)

_NETWORK_SECTION = textwrap.dedent(
    r'''
    ALLOWED_HOSTS_HEADER = __ALLOWED_HOSTS_HEADER__
    ALLOW_LOCALHOST_HEADER = __ALLOW_LOCALHOST_HEADER__
    ALLOWED_HOSTS = __ALLOWED_HOSTS__
    ALLOW_LOCALHOST = __ALLOW_LOCALHOST__


    def _make_fetch(host):
        async def fetch(url, *, method="GET", headers=None, json=None, content=None):
            merged = dict(headers or {})
            merged[ALLOWED_HOSTS_HEADER] = ",".join(ALLOWED_HOSTS)
            merged[ALLOW_LOCALHOST_HEADER] = "true" if ALLOW_LOCALHOST else "false"
            return await host.fetch(url, method=method, headers=merged, json=json, content=content)

        return fetch
    '''
)

_PROXY_SECTION = textwrap.dedent(
    '''
    def _build_tool_proxy(state, admit):
        stubs = {
    __TOOL_STUBS__
        }
        return _ToolProxy(stubs)
    '''
)

_HANDLER_SECTION = textwrap.dedent(
    r'''
    def _jsonable(value):
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            return repr(value)
        return value


    def _describe_failure(exc):
        failure = {
            "error": str(exc) or type(exc).__name__,
            "error_type": "runtime",
            "error_source": "user_code",
            "exception": type(exc).__name__,
            "stack": traceback.format_exc(),
        }
        if isinstance(exc, ToolCallError):
            failure["error_source"] = "upstream"
            failure["tool"] = exc.tool
            if exc.upstream_stack:
                failure["upstream_stack"] = exc.upstream_stack
        return failure


    async def handle(request, host=None):
        timeout_ms = request.get("timeout") or DEFAULT_TIMEOUT_MS
        state = _ExecutionState()
        admit = host.admit_call if host is not None else None
        guest_globals = {
            "__builtins__": _guest_builtins(),
            "__name__": "__guest__",
            "mcp": _build_tool_proxy(state, admit),
            "console": _Console(state.logs),
            "asyncio": _SAFE_ASYNCIO,
        }
        __INSTALL_FETCH__
        guest_main = types.FunctionType(_user_main.__code__, guest_globals, "user_main")

        stdout_stream = _LogStream(state.logs)
        stderr_stream = _LogStream(state.logs, prefix="ERROR: ")
        saved_streams = (sys.stdout, sys.stderr)
        sys.stdout, sys.stderr = stdout_stream, stderr_stream
        failure = None
        result = None
        timer = asyncio.timeout(timeout_ms / 1000)
        try:
            async with timer:
                result = await guest_main()
        except TimeoutError as exc:
            if timer.expired():
                failure = {
                    "error": "Execution timeout",
                    "error_type": "timeout",
                    "error_source": "user_code",
                    "timed_out": True,
                }
            else:
                failure = _describe_failure(exc)
        except asyncio.CancelledError:
            raise
        except BaseException as exc:
            failure = _describe_failure(exc)
        finally:
            sys.stdout, sys.stderr = saved_streams
            stdout_stream.drain()
            stderr_stream.drain()

        response = {
            "success": failure is None,
            "output": "\n".join(state.logs),
            "metrics": state.metrics(),
        }
        if failure is None:
            response["result"] = _jsonable(result)
        else:
            response.update(failure)
        return response
    '''
)


_FETCH_INSTALL = (
    "    if host is not None:\n"
    '        guest_globals["fetch"] = _make_fetch(host)\n'
)


def _render_user_function(code: str) -> str:
    body = textwrap.indent(code.rstrip(), "    ") if code.strip() else ""
    lines = ["async def _user_main():", "    pass"]
    if body:
        lines.append(body)
    return "\n".join(lines)


def render_execution_module(
    tools: Sequence[Mapping[str, Any]],
    *,
    instance_id: str,
    bridge_url: str,
    code: str,
    policy: Optional[NetworkPolicy] = None,
    limits: Optional[ResourceLimits] = None,
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> str:
    """Render the self-contained module that runs ``code`` inside an isolation host.

    Pure function of its inputs. The module holds one stub per tool, a console
    capture, the user code wrapped in an async function, and (only when the
    policy grants any network access) a ``fetch`` helper that carries the
    allow-list to the host.
    """

    policy = policy or NetworkPolicy()
    limits = limits or ResourceLimits()
    tool_names = [str(tool["name"]) for tool in tools]

    prelude = _MODULE_PRELUDE
    for placeholder, value in (
        ("__INSTANCE_ID__", repr(instance_id)),
        ("__BRIDGE_URL__", repr(bridge_url)),
        ("__TOOL_NAMES__", repr(tuple(tool_names))),
        ("__RESOURCE_LIMITS__", repr(limits.to_dict())),
        ("__NETWORK_ENABLED__", repr(policy.network_enabled)),
        ("__DEFAULT_TIMEOUT_MS__", repr(int(default_timeout_ms))),
        ("__GUEST_MODULES__", repr(GUEST_MODULES)),
        ("__BLOCKED_BUILTINS__", repr(BLOCKED_BUILTINS)),
    ):
        prelude = prelude.replace(placeholder, value)

    sections = [prelude]
    if policy.network_enabled:
        network = _NETWORK_SECTION
        for placeholder, value in (
            ("__ALLOWED_HOSTS_HEADER__", repr(ALLOWED_HOSTS_HEADER)),
            ("__ALLOW_LOCALHOST_HEADER__", repr(ALLOW_LOCALHOST_HEADER)),
            ("__ALLOWED_HOSTS__", repr(policy.allowed_hosts)),
            ("__ALLOW_LOCALHOST__", repr(policy.allow_localhost)),
        ):
            network = network.replace(placeholder, value)
        sections.append(network)

    stub_lines = "\n".join(
        f"        {name!r}: _make_stub({name!r}, state, admit)," for name in tool_names
    )
    sections.append(_PROXY_SECTION.replace("__TOOL_STUBS__", stub_lines))
    sections.append(_render_user_function(code))
    install_fetch = _FETCH_INSTALL if policy.network_enabled else ""
    sections.append(_HANDLER_SECTION.replace("    __INSTALL_FETCH__\n", install_fetch))
    return "\n\n\n".join(section.strip("\n") for section in sections) + "\n"


class HostState(str, Enum):
    SPAWNING = "spawning"
    AWAITING_READY = "awaiting_ready"
    DISPATCHING = "dispatching"
    TEARDOWN = "teardown"
    TERMINATED = "terminated"


@dataclass
class HostProcess:
    process: asyncio.subprocess.Process
    port: int
    execution_id: str
    state: HostState = HostState.SPAWNING
    stdout_lines: List[str] = field(default_factory=list)
    stderr_lines: List[str] = field(default_factory=list)
    ready_signal: asyncio.Event = field(default_factory=asyncio.Event)
    readers: List[asyncio.Task[None]] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}/"

    @property
    def stdout(self) -> str:
        return "\n".join(self.stdout_lines)

    @property
    def stderr(self) -> str:
        return "\n".join(self.stderr_lines)


class IsolationHostSupervisor:
    """Run each execution in a fresh isolation host process.

    One ``run`` drives a host through spawning, readiness, dispatch and
    teardown; teardown always happens, whatever the outcome. A missing host
    executable is latched so every later ``run`` fails fast without spawning.
    """

    def __init__(
        self,
        terminator: ProcessTreeTerminator,
        *,
        command: Optional[Sequence[str]] = None,
        ready_timeout: float = READY_TIMEOUT,
        ready_attempts: int = READY_ATTEMPTS,
        ready_interval: float = READY_INTERVAL,
        dispatch_grace: float = DISPATCH_GRACE,
        teardown_grace: float = HOST_TEARDOWN_GRACE,
    ) -> None:
        self.command = list(command) if command else _default_host_command()
        self.ready_timeout = ready_timeout
        self.ready_attempts = ready_attempts
        self.ready_interval = ready_interval
        self.dispatch_grace = dispatch_grace
        self.teardown_grace = teardown_grace
        self.spawn_attempts = 0
        self._terminator = terminator
        self._unavailable_reason: Optional[str] = None
        self._latch_lock = asyncio.Lock()

    @property
    def backend_unavailable(self) -> bool:
        return self._unavailable_reason is not None

    async def run(
        self,
        *,
        execution_id: str,
        module: str,
        code: str,
        timeout_ms: int,
        limits: Optional[ResourceLimits] = None,
        on_spawn: Optional[Callable[[int], None]] = None,
        on_exit: Optional[Callable[[int], None]] = None,
    ) -> Dict[str, Any]:
        async with self._latch_lock:
            reason = self._unavailable_reason
        if reason is not None:
            raise BackendUnavailableError(
                f"Isolation backend is not available: {reason}",
                details={"command": self.command},
            )

        host = await self._spawn(execution_id, limits or ResourceLimits())
        if on_spawn is not None:
            on_spawn(host.pid)
        try:
            await self._await_ready(host, code)
            return await self._dispatch(host, module=module, code=code, timeout_ms=timeout_ms)
        finally:
            await self._teardown(host)
            if on_exit is not None:
                on_exit(host.pid)

    def _transition(self, host: HostProcess, state: HostState) -> None:
        logger.debug(
            "Isolation host %s (pid %s): %s -> %s",
            host.execution_id,
            host.pid,
            host.state.value,
            state.value,
        )
        host.state = state

    async def _spawn(self, execution_id: str, limits: ResourceLimits) -> HostProcess:
        port = _pick_free_port()
        argv = [*self.command, "--port", str(port)]
        if limits.max_memory_mb:
            argv += ["--memory-mb", str(limits.max_memory_mb)]
        self.spawn_attempts += 1
        logger.debug("Spawning isolation host for %s: %s", execution_id, argv)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=aio_subprocess.DEVNULL,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
                **_process_group_kwargs(),
            )
        except FileNotFoundError as exc:
            async with self._latch_lock:
                self._unavailable_reason = f"{self.command[0]} not found"
            logger.error(
                "Isolation backend %s is not installed; further executions will fail fast",
                self.command[0],
            )
            raise BackendUnavailableError(
                f"Isolation backend is not available: {self.command[0]} not found",
                details={"command": self.command},
            ) from exc
        except OSError as exc:
            raise InternalSandboxError(
                f"Failed to start isolation host: {exc}", details={"command": self.command}
            ) from exc

        self._terminator.track(process.pid, label=f"host:{execution_id}")
        host = HostProcess(process=process, port=port, execution_id=execution_id)
        host.readers = [
            asyncio.create_task(self._read_stream(process.stdout, host.stdout_lines, host)),
            asyncio.create_task(self._read_stream(process.stderr, host.stderr_lines, None)),
        ]
        return host

    @staticmethod
    async def _read_stream(
        stream: Optional[asyncio.StreamReader],
        sink: List[str],
        host: Optional[HostProcess],
    ) -> None:
        if stream is None:
            return
        try:
            async for raw_line in stream:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                sink.append(line)
                if host is not None and any(marker in line for marker in READY_MARKERS):
                    host.ready_signal.set()
        except ValueError as exc:
            sink.append(f"<output truncated: {exc}>")

    async def _await_ready(self, host: HostProcess, code: str) -> None:
        self._transition(host, HostState.AWAITING_READY)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        probe = {
            "execution_id": f"{host.execution_id}-ready",
            "module": HEALTH_CHECK_MODULE,
            "request": {"code": "", "timeout": 1000},
        }
        attempts = 0
        async with httpx.AsyncClient(trust_env=False) as client:
            while True:
                if host.process.returncode is not None:
                    await asyncio.wait(host.readers, timeout=1.0)
                    raise self._classify_exit(host, code)
                if host.ready_signal.is_set():
                    return
                attempts += 1
                try:
                    response = await client.post(host.url, json=probe, timeout=PROBE_TIMEOUT)
                except httpx.HTTPError:
                    response = None
                if response is not None and response.status_code in (200, 500):
                    return
                if attempts >= self.ready_attempts or loop.time() >= deadline:
                    break
                await asyncio.sleep(self.ready_interval)
        raise SandboxTimeout(
            f"Isolation host did not become ready within {self.ready_timeout:g}s "
            f"({attempts} checks)",
            stdout=host.stdout,
            stderr=host.stderr,
            details={"phase": "readiness", "port": host.port, "attempts": attempts},
            source="sandbox",
        )

    def _classify_exit(self, host: HostProcess, code: str) -> SandboxError:
        exit_code = host.process.returncode
        log = f"{host.stdout}\n{host.stderr}"
        details: Dict[str, Any] = {
            "exit_code": exit_code,
            "port": host.port,
            "execution_id": host.execution_id,
            "stdout": host.stdout,
            "stderr": host.stderr,
        }
        if any(marker in log for marker in BUILD_FAILURE_MARKERS):
            details["code"] = code
            return BuildError(
                "Isolation host failed to build the execution module",
                stdout=host.stdout,
                stderr=host.stderr,
                details=details,
            )
        if CAPABILITY_MARKER in log:
            return HostConfigurationError(
                "Isolation host rejected its isolation limits (isolation_limits unsupported)",
                stdout=host.stdout,
                stderr=host.stderr,
                details=details,
            )
        if exit_code == 0:
            return InternalSandboxError(
                "Isolation host exited cleanly (code 0) before becoming ready",
                stdout=host.stdout,
                stderr=host.stderr,
                details=details,
            )
        signal_note = f" (signal {-exit_code})" if exit_code is not None and exit_code < 0 else ""
        return InternalSandboxError(
            f"Isolation host exited with code {exit_code}{signal_note} before becoming ready",
            stdout=host.stdout,
            stderr=host.stderr,
            details=details,
        )

    async def _dispatch(
        self, host: HostProcess, *, module: str, code: str, timeout_ms: int
    ) -> Dict[str, Any]:
        self._transition(host, HostState.DISPATCHING)
        payload = {
            "execution_id": host.execution_id,
            "module": module,
            "request": {"code": code, "timeout": timeout_ms},
        }
        async with httpx.AsyncClient(trust_env=False) as client:
            try:
                response = await client.post(
                    host.url, json=payload, timeout=timeout_ms / 1000 + self.dispatch_grace
                )
            except httpx.TimeoutException as exc:
                raise SandboxTimeout(
                    "Execution timeout",
                    stdout=host.stdout,
                    stderr=host.stderr,
                    details={"phase": "dispatch", "timeout_ms": timeout_ms},
                    source="sandbox",
                ) from exc
            except httpx.HTTPError as exc:
                raise InternalSandboxError(
                    f"Dispatch to isolation host failed: {exc}",
                    stdout=host.stdout,
                    stderr=host.stderr,
                    details={"phase": "dispatch", "port": host.port},
                ) from exc

        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and response.is_success and body.get("success"):
            return body
        raise self._classify_failure(host, response, body, code)

    @staticmethod
    def _classify_failure(
        host: HostProcess, response: httpx.Response, body: Any, code: str
    ) -> SandboxError:
        if not isinstance(body, dict):
            return InternalSandboxError(
                f"Worker execution failed: {response.status_code} {response.text[:500]}",
                stdout=host.stdout,
                stderr=host.stderr,
                details={"status": response.status_code},
            )
        message = str(body.get("error") or f"Worker execution failed: {response.status_code}")
        details = {
            key: value
            for key, value in body.items()
            if key not in ("success", "error") and value is not None
        }
        details["status"] = response.status_code
        if body.get("build_failed"):
            details["code"] = code
            return BuildError(message, stdout=host.stdout, stderr=host.stderr, details=details)
        if body.get("timed_out"):
            return SandboxTimeout(message, stdout=host.stdout, stderr=host.stderr, details=details)
        if "output" in body or "stack" in body:
            return ExecutionRuntimeError(
                message,
                stdout=host.stdout,
                stderr=host.stderr,
                details=details,
                source=body.get("error_source") or None,
            )
        return InternalSandboxError(
            message, stdout=host.stdout, stderr=host.stderr, details=details
        )

    async def _teardown(self, host: HostProcess) -> None:
        self._transition(host, HostState.TEARDOWN)
        process = host.process
        if process.returncode is None:
            with suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.teardown_grace)
            except asyncio.TimeoutError:
                with suppress(ProcessLookupError):
                    process.kill()
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(process.wait(), timeout=self.teardown_grace)
        await self._terminator.terminate(process.pid)
        for reader in host.readers:
            reader.cancel()
        await asyncio.gather(*host.readers, return_exceptions=True)
        self._transition(host, HostState.TERMINATED)


@dataclass
class ExecutionResult:
    success: bool
    output: str = ""
    result: Any = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    execution_time_ms: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_source: Optional[str] = None
    error_details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "output": self.output,
            "result": self.result,
            "metrics": self.metrics,
            "execution_time_ms": self.execution_time_ms,
        }
        if not self.success:
            payload["error"] = self.error
            payload["error_type"] = self.error_type
            payload["error_source"] = self.error_source
            payload["error_details"] = self.error_details
        return payload


def _looks_like_auth_failure(message: str) -> bool:
    return any(token in message for token in _AUTH_FAILURE_TOKENS)


class SandboxOrchestrator:
    """Load MCP servers, run code against them in isolation hosts, unload them."""

    def __init__(
        self,
        *,
        cache: Optional[SchemaCache] = None,
        terminator: Optional[ProcessTreeTerminator] = None,
        supervisor: Optional[IsolationHostSupervisor] = None,
        policy_resolver: Optional[Callable[[str], NetworkPolicy]] = None,
        limits_resolver: Optional[Callable[[str], ResourceLimits]] = None,
        client_factory: Optional[Callable[[str, ServerConfig], ClientLike]] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self.terminator = terminator or create_terminator()
        self.cache = cache if cache is not None else SchemaCache(JsonSchemaStore())
        self.registry = InstanceRegistry(self.terminator)
        self.supervisor = supervisor or IsolationHostSupervisor(self.terminator)
        self.bridge = ToolCallBridge(self.registry.client_for)
        self._policy_resolver = policy_resolver or (lambda name: NetworkPolicy())
        self._limits_resolver = limits_resolver or (lambda name: ResourceLimits())
        self._connect_timeout = connect_timeout
        self._client_factory = client_factory or self._default_client

    def _default_client(self, name: str, config: ServerConfig) -> ClientLike:
        return PersistentMCPClient(
            name, config, terminator=self.terminator, connect_timeout=self._connect_timeout
        )

    async def __aenter__(self) -> "SandboxOrchestrator":
        await self.bridge.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # -- loading -------------------------------------------------------------

    async def load(
        self, name: str, config: Union[ServerConfig, Mapping[str, Any]]
    ) -> Instance:
        """Register an upstream server and return its ready instance.

        Schema comes from the cache when the ``(name, config)`` fingerprint
        matches; otherwise a session is opened and tools and prompts are
        fetched. Any failure leaves nothing registered and nothing running.
        """

        name = validate_instance_name(name)
        server_config = parse_server_config(config)
        if self.registry.get_by_name(name) is not None:
            raise InputValidationError(
                f"MCP server {name!r} is already loaded", details={"name": name}
            )
        fingerprint = config_fingerprint(name, server_config)
        client = self._client_factory(name, server_config)
        try:
            entry = self.cache.get(name, fingerprint)
            if entry is None:
                entry = await self._fetch_schema(name, fingerprint, client)
            else:
                logger.info(
                    "Using cached schema for MCP server %s (%s tools)", name, len(entry.tools)
                )
            instance = await self.registry.create(
                name,
                tools=entry.tools,
                prompts=entry.prompts,
                interface_text=entry.interface_text,
                client=client,
            )
        except SandboxError:
            await self._discard_client(client)
            raise
        except Exception as exc:
            await self._discard_client(client)
            raise UpstreamConnectionError(
                f"Failed to load MCP server {name!r}: {_describe_exception(exc)}",
                details={"server": name},
            ) from exc
        logger.info(
            "Loaded MCP server %s as %s (%s tools, %s prompts)",
            name,
            instance.instance_id,
            len(instance.tools),
            len(instance.prompts),
        )
        return instance

    async def _fetch_schema(
        self, name: str, fingerprint: str, client: ClientLike
    ) -> SchemaCacheEntry:
        logger.info("Fetching schema for MCP server %s", name)
        await client.start()
        tools = [normalize_tool(tool) for tool in await client.list_tools()]
        prompts = [dict(prompt) for prompt in await client.list_prompts()]
        entry = SchemaCacheEntry(
            name=name,
            fingerprint=fingerprint,
            tools=tools,
            prompts=prompts,
            interface_text=render_interface(tools),
        )
        self.cache.put(entry)
        return entry

    @staticmethod
    async def _discard_client(client: ClientLike) -> None:
        try:
            await client.stop()
        except Exception as exc:
            logger.debug("Discarding MCP client raised %s", exc, exc_info=True)

    async def discover_tools(
        self, name: str, config: Union[ServerConfig, Mapping[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Advisory schema lookup: never raises, returns [] on any failure."""

        entry = await self._discover(name, config)
        return list(entry.tools) if entry else []

    async def discover_prompts(
        self, name: str, config: Union[ServerConfig, Mapping[str, Any]]
    ) -> List[Dict[str, Any]]:
        entry = await self._discover(name, config)
        return list(entry.prompts) if entry else []

    async def _discover(
        self, name: str, config: Union[ServerConfig, Mapping[str, Any]]
    ) -> Optional[SchemaCacheEntry]:
        try:
            server_config = parse_server_config(config)
            fingerprint = config_fingerprint(name, server_config)
            entry = self.cache.get(name, fingerprint)
            if entry is not None:
                return entry
            client = self._client_factory(name, server_config)
            try:
                return await self._fetch_schema(name, fingerprint, client)
            finally:
                await self._discard_client(client)
        except Exception as exc:
            message = _describe_exception(exc)
            if _looks_like_auth_failure(message):
                logger.warning("Authentication failed discovering MCP server %s: %s", name, message)
            else:
                logger.warning("Could not discover MCP server %s: %s", name, message)
            return None

    def clear_schema_cache(self, name: str) -> int:
        removed = self.cache.invalidate(name)
        logger.info("Cleared %s cached schema entries for %s", removed, name)
        return removed

    # -- execution -----------------------------------------------------------

    async def execute(
        self, instance_id: str, code: str, timeout_ms: int = DEFAULT_TIMEOUT_MS
    ) -> ExecutionResult:
        """Run ``code`` against a loaded instance.

        Unknown instances and malformed input raise; every other failure is
        reported as an unsuccessful ``ExecutionResult``.
        """

        instance = self.registry.get(instance_id)
        code = validate_code(code)
        timeout_ms = clamp_timeout(timeout_ms)
        policy = self._policy_resolver(instance.name)
        limits = self._limits_resolver(instance.name)
        timeout_ms = min(timeout_ms, limits.max_execution_time_ms)
        started = time.monotonic()
        try:
            bridge_url = await self.bridge.start()
            module = render_execution_module(
                instance.tools,
                instance_id=instance.instance_id,
                bridge_url=bridge_url,
                code=code,
                policy=policy,
                limits=limits,
                default_timeout_ms=timeout_ms,
            )
            body = await self.supervisor.run(
                execution_id=execution_id_for(instance.instance_id, code),
                module=module,
                code=code,
                timeout_ms=timeout_ms,
                limits=limits,
                on_spawn=partial(self.registry.track_host, instance.instance_id),
                on_exit=partial(self.registry.untrack_host, instance.instance_id),
            )
        except SandboxError as exc:
            return self._failed_result(instance, exc, policy, started)
        except Exception as exc:
            logger.error("Unexpected failure executing code on %s", instance.name, exc_info=True)
            wrapped = InternalSandboxError(f"Unexpected sandbox failure: {_describe_exception(exc)}")
            return self._failed_result(instance, wrapped, policy, started)

        metrics = self._metrics(instance, body.get("metrics") or {}, policy)
        result = ExecutionResult(
            success=True,
            output=str(body.get("output") or ""),
            result=body.get("result"),
            metrics=metrics,
            execution_time_ms=_elapsed_ms(started),
        )
        logger.info(
            "Executed code on %s in %sms (%s tool calls)",
            instance.name,
            result.execution_time_ms,
            metrics["mcp_calls_made"],
        )
        return result

    @staticmethod
    def _metrics(
        instance: Instance, reported: Mapping[str, Any], policy: NetworkPolicy
    ) -> Dict[str, Any]:
        tools_called = [str(name) for name in reported.get("tools_called") or []]
        return {
            "mcp_calls_made": int(reported.get("mcp_calls_made") or 0),
            "tools_called": tools_called,
            "schema_efficiency": schema_efficiency_metrics(instance.tools, tools_called),
            "security": security_metrics(policy),
        }

    def _failed_result(
        self, instance: Instance, exc: SandboxError, policy: NetworkPolicy, started: float
    ) -> ExecutionResult:
        details = dict(exc.details)
        output = details.pop("output", "") or ""
        reported = details.pop("metrics", None) or {}
        details["exception"] = type(exc).__name__
        logger.info(
            "Execution on %s failed (%s/%s): %s", instance.name, exc.error_type, exc.source, exc
        )
        return ExecutionResult(
            success=False,
            output=str(output),
            metrics=self._metrics(instance, reported, policy),
            execution_time_ms=_elapsed_ms(started),
            error=str(exc),
            error_type=exc.error_type,
            error_source=exc.source,
            error_details=details,
        )

    # -- lifecycle and lookup ------------------------------------------------

    async def unload(self, instance_id: str) -> None:
        instance = await self.registry.remove(instance_id)
        logger.info("Unloaded MCP server %s (%s)", instance.name, instance_id)

    def list_instances(self) -> List[Instance]:
        return self.registry.list()

    def get_instance(self, instance_id: str) -> Optional[Instance]:
        return self.registry.find(instance_id)

    def get_instance_by_name(self, name: str) -> Optional[Instance]:
        return self.registry.get_by_name(name)

    async def get_prompt(
        self, instance_id: str, name: str, arguments: Optional[Dict[str, str]] = None
    ) -> Dict[str, object]:
        self.registry.get(instance_id)
        client = self.registry.client_for(instance_id)
        if client is None:
            raise InstanceNotFoundError(
                f"No live MCP session for instance {instance_id}",
                details={"mcp_id": instance_id},
            )
        return await client.get_prompt(name, arguments)

    async def shutdown(self) -> None:
        """Stop the bridge, unload every instance and kill whatever is still running."""

        try:
            await asyncio.wait_for(self.bridge.stop(), timeout=BRIDGE_STOP_TIMEOUT)
        except (asyncio.TimeoutError, OSError) as exc:
            logger.debug("RPC bridge shutdown raised %s", exc)
        try:
            await asyncio.wait_for(self._unload_all(), timeout=SHUTDOWN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Timed out unloading instances during shutdown")
        await self.terminator.terminate_all()
        self.cache.clear_memory()

    async def _unload_all(self) -> None:
        for instance in self.registry.list():
            with suppress(InstanceNotFoundError):
                await self.registry.remove(instance.instance_id)
