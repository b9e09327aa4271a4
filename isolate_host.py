#!/usr/bin/env python3
"""
Isolation host - loopback HTTP server that runs one generated execution module.

The orchestrator starts a fresh host per execution, waits until it answers,
posts the module, and tears the process down afterwards.

Usage:
    python -m isolate_host --port 20123 [--memory-mb 256]

API:
    POST /        - Build and run an execution module
                    {"execution_id": str, "module": str, "request": {"code": str, "timeout": int}}
    GET  /health  - Liveness and execution count
"""

import argparse
import ipaddress
import json
import logging
import os
import sys
import traceback
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, Tuple

import httpx
from aiohttp import web

logger = logging.getLogger("isolate-host")

ALLOWED_HOSTS_HEADER = "X-Isolate-Allowed-Hosts"
ALLOW_LOCALHOST_HEADER = "X-Isolate-Allow-Localhost"
CAPABILITY_MARKER = "isolation_limits"
LOOPBACK_BIND_HOSTS = ("127.0.0.1", "::1", "localhost")
FETCH_TIMEOUT = float(os.environ.get("MCP_ISOLATE_FETCH_TIMEOUT", "30"))
_POLICY_HEADERS = (ALLOWED_HOSTS_HEADER.lower(), ALLOW_LOCALHOST_HEADER.lower())

ModuleHandler = Callable[[Dict[str, Any], "HostServices"], Awaitable[Dict[str, Any]]]


class NetworkPolicyError(PermissionError):
    """Raised when guest code reaches for a host its policy does not allow."""


class CallBudgetExceeded(RuntimeError):
    """Raised when guest code makes more upstream calls than its limit."""


class ModuleBuildError(Exception):
    def __init__(self, message: str, *, stack: str = "") -> None:
        super().__init__(message)
        self.stack = stack


def is_loopback(hostname: str) -> bool:
    name = hostname.strip("[]").lower()
    if name == "localhost" or name.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(name).is_loopback
    except ValueError:
        return False


def host_matches(hostname: str, allowed_hosts: Sequence[str]) -> bool:
    """Match exact entries and ``*.suffix`` wildcards (which include the bare suffix)."""
    hostname = hostname.lower()
    for entry in allowed_hosts:
        if entry.startswith("*."):
            suffix = entry[2:]
            if hostname == suffix or hostname.endswith(f".{suffix}"):
                return True
        elif hostname == entry:
            return True
    return False


def check_network_policy(url: str, allowed_hosts: Sequence[str], allow_localhost: bool) -> str:
    hostname = (httpx.URL(url).host or "").lower()
    if not hostname:
        raise NetworkPolicyError(f"Network policy: cannot determine the host of {url!r}")
    if is_loopback(hostname):
        if allow_localhost:
            return hostname
        raise NetworkPolicyError(f"Network policy: localhost blocked ({hostname})")
    if not host_matches(hostname, allowed_hosts):
        raise NetworkPolicyError(f"Network policy: {hostname} is not in the allowed hosts list")
    return hostname


def split_policy_headers(
    headers: Mapping[str, str],
) -> Tuple[Dict[str, str], Tuple[str, ...], bool]:
    """Separate the policy metadata from the headers that get forwarded."""
    forwarded: Dict[str, str] = {}
    allowed_hosts: Tuple[str, ...] = ()
    allow_localhost = False
    for key, value in headers.items():
        lowered = key.lower()
        if lowered == ALLOWED_HOSTS_HEADER.lower():
            allowed_hosts = tuple(
                host.strip().lower() for host in str(value).split(",") if host.strip()
            )
        elif lowered == ALLOW_LOCALHOST_HEADER.lower():
            allow_localhost = str(value).strip().lower() == "true"
        else:
            forwarded[key] = value
    return forwarded, allowed_hosts, allow_localhost


@dataclass(frozen=True)
class HostNetworkPolicy:
    enabled: bool = False
    allowed_hosts: Tuple[str, ...] = ()
    allow_localhost: bool = False

    @classmethod
    def from_namespace(cls, namespace: Mapping[str, Any]) -> "HostNetworkPolicy":
        """Read the policy a freshly built module declares; anything malformed denies."""
        hosts = namespace.get("ALLOWED_HOSTS")
        if not isinstance(hosts, (list, tuple)):
            hosts = ()
        return cls(
            enabled=namespace.get("NETWORK_ENABLED") is True,
            allowed_hosts=tuple(
                host.strip().lower() for host in hosts if isinstance(host, str) and host.strip()
            ),
            allow_localhost=namespace.get("ALLOW_LOCALHOST") is True,
        )


@dataclass
class FetchResponse:
    status: int
    url: str
    text: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.text)


class HostServices:
    """Capabilities the host lends to one execution module.

    The network policy comes from the module namespace as it stood after the
    build, before any guest code ran. Headers sent with a fetch can only
    narrow it.
    """

    def __init__(
        self,
        limits: Optional[Mapping[str, Any]] = None,
        *,
        policy: Optional[HostNetworkPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        limits = limits or {}
        self.max_calls: Optional[int] = limits.get("max_mcp_calls")
        self.calls = 0
        self.policy = policy or HostNetworkPolicy()
        self._transport = transport

    def admit_call(self, tool_name: str) -> None:
        self.calls += 1
        if self.max_calls is not None and self.calls > self.max_calls:
            raise CallBudgetExceeded(
                f"MCP call limit of {self.max_calls} exceeded while calling {tool_name}"
            )

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        json: Any = None,
        content: Any = None,
    ) -> FetchResponse:
        headers = headers or {}
        forwarded, header_hosts, header_localhost = split_policy_headers(headers)
        if not self.policy.enabled:
            raise NetworkPolicyError("Network policy: outbound network access is disabled")
        hostname = check_network_policy(
            url, self.policy.allowed_hosts, self.policy.allow_localhost
        )
        if any(key.lower() in _POLICY_HEADERS for key in headers):
            check_network_policy(url, header_hosts, header_localhost)
        logger.debug("fetch %s %s (host %s)", method, url, hostname)
        # redirects stay off so a permitted host cannot bounce the request elsewhere
        async with httpx.AsyncClient(
            transport=self._transport, timeout=FETCH_TIMEOUT, follow_redirects=False
        ) as client:
            response = await client.request(
                method, url, headers=forwarded, json=json, content=content
            )
        return FetchResponse(
            status=response.status_code,
            url=str(response.url),
            text=response.text,
            headers=dict(response.headers),
        )


@dataclass
class LoadedModule:
    handler: ModuleHandler
    limits: Dict[str, Any]
    policy: HostNetworkPolicy

    def services(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> HostServices:
        return HostServices(self.limits, policy=self.policy, transport=transport)


def build_module(execution_id: str, source: str) -> LoadedModule:
    """Compile and load a module, capturing its ``handle``, limits and network policy."""
    try:
        code_obj = compile(source, f"<isolate:{execution_id}>", "exec")
    except SyntaxError as exc:
        raise ModuleBuildError(
            f"{type(exc).__name__}: {exc}", stack=traceback.format_exc()
        ) from exc
    namespace: Dict[str, Any] = {"__name__": "isolate_module"}
    try:
        exec(code_obj, namespace)
    except Exception as exc:
        raise ModuleBuildError(
            f"{type(exc).__name__}: {exc}", stack=traceback.format_exc()
        ) from exc
    handler = namespace.get("handle")
    if not callable(handler):
        raise ModuleBuildError("execution module does not define handle()")
    limits = namespace.get("RESOURCE_LIMITS")
    return LoadedModule(
        handler=handler,
        limits=dict(limits) if isinstance(limits, dict) else {},
        policy=HostNetworkPolicy.from_namespace(namespace),
    )


def _apply_time_limit(request: Dict[str, Any], limits: Mapping[str, Any]) -> Dict[str, Any]:
    ceiling = limits.get("max_execution_time_ms")
    timeout = request.get("timeout")
    if ceiling and isinstance(timeout, (int, float)) and timeout > ceiling:
        return {**request, "timeout": ceiling}
    return request


class IsolateHost:
    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.executions = 0
        self._transport = transport

    async def handle_execute(self, request: web.Request) -> web.Response:
        """Handle POST / - build the posted module and run it once."""
        try:
            data = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"success": False, "error": "Invalid JSON"}, status=400)
        if not isinstance(data, dict) or not isinstance(data.get("module"), str):
            return web.json_response(
                {"success": False, "error": "Request must include the module source"},
                status=400,
            )
        execution_request = data.get("request") or {}
        if not isinstance(execution_request, dict):
            return web.json_response(
                {"success": False, "error": "Execution request must be an object"},
                status=400,
            )
        execution_id = str(data.get("execution_id") or "anonymous")

        try:
            loaded = build_module(execution_id, data["module"])
        except ModuleBuildError as exc:
            logger.error("Build failed for %s: %s", execution_id, exc)
            return web.json_response(
                {
                    "success": False,
                    "error": f"Build failed: {exc}",
                    "build_failed": True,
                    "stack": exc.stack,
                },
                status=500,
            )

        services = loaded.services(self._transport)
        self.executions += 1
        try:
            body = await loaded.handler(
                _apply_time_limit(execution_request, loaded.limits), services
            )
        except Exception as exc:
            logger.error("Execution module %s crashed", execution_id, exc_info=True)
            return web.json_response(
                {
                    "success": False,
                    "error": f"Failed to execute code in isolation host: {exc}",
                    "stack": traceback.format_exc(),
                },
                status=500,
            )
        if not isinstance(body, dict):
            return web.json_response(
                {"success": False, "error": "Execution module returned a non-object response"},
                status=500,
            )
        return web.json_response(
            body,
            status=200 if body.get("success") else 500,
            dumps=partial(json.dumps, default=str),
        )

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "executions": self.executions})

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/", self.handle_execute)
        app.router.add_get("/health", self.handle_health)
        return app


def apply_memory_limit(memory_mb: int) -> bool:
    try:
        import resource
    except ImportError:
        return False
    limit = memory_mb * 1024 * 1024
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ValueError, OSError) as exc:
        logger.error("Could not apply memory limit of %sMB: %s", memory_mb, exc)
        return False
    return True


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Isolation host for generated execution modules")
    parser.add_argument("--port", type=int, required=True, help="Port to listen on")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Loopback address to bind")
    parser.add_argument("--memory-mb", type=int, default=None, help="Address-space limit in MB")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.environ.get("MCP_ISOLATE_LOG_LEVEL", "INFO"),
        stream=sys.stderr,
        format="%(name)s - %(levelname)s - %(message)s",
    )
    if args.host not in LOOPBACK_BIND_HOSTS:
        parser.error("the isolation host only binds to loopback addresses")
    if args.memory_mb and not apply_memory_limit(args.memory_mb):
        print(
            f"{CAPABILITY_MARKER}: a {args.memory_mb}MB memory limit is not supported here",
            file=sys.stderr,
            flush=True,
        )
        return 2

    host = IsolateHost()
    web.run_app(
        host.create_app(),
        host=args.host,
        port=args.port,
        access_log=None,
        print=lambda _banner: print(
            f"Ready: listening on http://{args.host}:{args.port}", flush=True
        ),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
