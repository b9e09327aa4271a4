import httpx
import pytest

from mcp_isolate_bridge import RPC_PATH, ToolCallBridge, normalize_tool_result


def test_normalize_decodes_json_text():
    result = {"content": [{"type": "text", "text": '  {"temp": 21}\n'}]}
    assert normalize_tool_result(result) == {"temp": 21}


def test_normalize_keeps_plain_text():
    assert normalize_tool_result({"content": [{"type": "text", "text": " pong "}]}) == "pong"


def test_normalize_keeps_text_that_only_looks_like_json():
    assert normalize_tool_result({"content": [{"type": "text", "text": "{oops"}]}) == "{oops"


def test_normalize_passes_other_content_through():
    image = {"type": "image", "data": "aGk=", "mimeType": "image/png"}
    assert normalize_tool_result({"content": [image]}) == image


def test_normalize_falls_back_to_structured_content():
    assert normalize_tool_result({"content": [], "structuredContent": {"n": 1}}) == {"n": 1}
    assert normalize_tool_result({"content": []}) == {"content": []}


def test_bridge_refuses_non_loopback_hosts():
    with pytest.raises(ValueError):
        ToolCallBridge(lambda _id: None, host="0.0.0.0")


@pytest.fixture
async def bridge_env(fake_client_cls):
    clients = {"inst-1": fake_client_cls()}
    bridge = ToolCallBridge(clients.get)
    url = await bridge.start()
    async with httpx.AsyncClient(trust_env=False) as http:
        yield bridge, url, clients, http
    await bridge.stop()


async def _post(http, url, payload):
    return await http.post(url, json=payload)


@pytest.mark.asyncio
async def test_bridge_url_is_loopback(bridge_env):
    bridge, url, _, _ = bridge_env

    assert url.startswith("http://127.0.0.1:")
    assert url.endswith(RPC_PATH)
    assert await bridge.start() == url


@pytest.mark.asyncio
async def test_successful_call_is_unwrapped(bridge_env):
    _, url, clients, http = bridge_env

    response = await _post(http, url, {"instanceId": "inst-1", "toolName": "ping", "input": {"a": 1}})

    assert response.status_code == 200
    assert response.json() == {"success": True, "result": {"ok": True}}
    assert clients["inst-1"].calls == [("ping", {"a": 1})]


@pytest.mark.asyncio
async def test_missing_input_becomes_empty_arguments(bridge_env):
    _, url, clients, http = bridge_env

    response = await _post(http, url, {"instanceId": "inst-1", "toolName": "ping", "input": None})

    assert response.status_code == 200
    assert clients["inst-1"].calls == [("ping", {})]


@pytest.mark.asyncio
async def test_text_and_image_results(bridge_env, fake_client_cls):
    _, url, clients, http = bridge_env
    clients["inst-1"].result = {"content": [{"type": "text", "text": "pong"}]}

    text = await _post(http, url, {"instanceId": "inst-1", "toolName": "ping"})
    assert text.json()["result"] == "pong"

    image = {"type": "image", "data": "aGk=", "mimeType": "image/png"}
    clients["inst-1"].result = {"content": [image]}
    response = await _post(http, url, {"instanceId": "inst-1", "toolName": "ping"})
    assert response.json()["result"] == image


@pytest.mark.asyncio
async def test_tool_reported_error_is_a_failure(bridge_env):
    _, url, clients, http = bridge_env
    clients["inst-1"].result = {"isError": True, "content": [{"type": "text", "text": "bad input"}]}

    response = await _post(http, url, {"instanceId": "inst-1", "toolName": "echo"})

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "bad input"}


@pytest.mark.asyncio
async def test_raising_client_returns_stack(bridge_env):
    _, url, clients, http = bridge_env
    clients["inst-1"].error = RuntimeError("upstream exploded")

    response = await _post(http, url, {"instanceId": "inst-1", "toolName": "echo"})

    body = response.json()
    assert response.status_code == 500
    assert body["success"] is False
    assert body["error"] == "upstream exploded"
    assert "RuntimeError" in body["stack"]


@pytest.mark.asyncio
async def test_unknown_instance(bridge_env):
    _, url, _, http = bridge_env

    response = await _post(http, url, {"instanceId": "nope", "toolName": "ping"})

    assert response.status_code == 404
    assert response.json()["error"] == "MCP client not found for ID: nope"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [{"toolName": "ping"}, {"instanceId": "inst-1"}, {"instanceId": "", "toolName": "ping"}],
)
async def test_missing_fields(bridge_env, payload):
    _, url, clients, http = bridge_env

    response = await _post(http, url, payload)

    assert response.status_code == 400
    assert response.json()["error"] == "Missing instanceId or toolName"
    assert clients["inst-1"].calls == []


@pytest.mark.asyncio
async def test_non_object_input_is_rejected(bridge_env):
    _, url, _, http = bridge_env

    response = await _post(http, url, {"instanceId": "inst-1", "toolName": "ping", "input": [1]})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_invalid_json(bridge_env):
    _, url, _, http = bridge_env

    response = await http.post(url, content=b"{not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid JSON body"

    array = await _post(http, url, ["inst-1", "ping"])
    assert array.status_code == 400


@pytest.mark.asyncio
async def test_only_post_on_rpc_path(bridge_env):
    _, url, _, http = bridge_env

    assert (await http.get(url)).status_code == 405
    assert (await http.post(url.replace(RPC_PATH, "/other"), json={})).status_code == 404
