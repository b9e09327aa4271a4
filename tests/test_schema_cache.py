import json

from mcp_isolate_bridge import (
    JsonSchemaStore,
    NetworkPolicy,
    SchemaCache,
    SchemaCacheEntry,
    render_interface,
    schema_efficiency_metrics,
    security_metrics,
)


def _entry(name="echo", fingerprint="f" * 16, tools=None):
    tools = tools if tools is not None else [{"name": "ping", "inputSchema": {"type": "object", "properties": {}}}]
    return SchemaCacheEntry(
        name=name,
        fingerprint=fingerprint,
        tools=tools,
        prompts=[{"name": "greeting"}],
        interface_text=render_interface(tools),
    )


def test_memory_cache_hit_and_miss():
    cache = SchemaCache()
    entry = _entry()
    cache.put(entry)

    assert cache.get("echo", "f" * 16) is entry
    assert cache.get("echo", "0" * 16) is None
    assert cache.get("other", "f" * 16) is None


def test_invalidate_only_touches_that_name():
    cache = SchemaCache()
    cache.put(_entry(fingerprint="a" * 16))
    cache.put(_entry(fingerprint="b" * 16))
    cache.put(_entry(name="echo-2", fingerprint="a" * 16))

    assert cache.invalidate("echo") == 2
    assert cache.get("echo", "a" * 16) is None
    assert cache.get("echo-2", "a" * 16) is not None


def test_persisted_entry_is_promoted(tmp_path):
    path = tmp_path / "state" / "schema-cache.json"
    SchemaCache(JsonSchemaStore(path)).put(_entry())

    fresh = SchemaCache(JsonSchemaStore(path))
    assert len(fresh) == 0
    promoted = fresh.get("echo", "f" * 16)

    assert promoted is not None
    assert [tool["name"] for tool in promoted.tools] == ["ping"]
    assert "async def ping()" in promoted.interface_text
    assert len(fresh) == 1


def test_persisted_record_layout(tmp_path):
    path = tmp_path / "schema-cache.json"
    SchemaCache(JsonSchemaStore(path)).put(_entry())

    document = json.loads(path.read_text())
    record = document["schemaCache"]["echo:" + "f" * 16]

    assert record["mcpName"] == "echo"
    assert record["configHash"] == "f" * 16
    assert record["toolNames"] == ["ping"]
    assert record["promptNames"] == ["greeting"]
    assert record["toolCount"] == 1
    assert record["promptCount"] == 1
    assert "cachedAt" in record
    assert "interface_text" not in record


def test_persisted_record_with_mismatched_fingerprint_is_ignored(tmp_path):
    path = tmp_path / "schema-cache.json"
    record = _entry().to_record()
    record["configHash"] = "0" * 16
    path.write_text(json.dumps({"schemaCache": {"echo:" + "f" * 16: record}}))

    assert SchemaCache(JsonSchemaStore(path)).get("echo", "f" * 16) is None


def test_unreadable_store_behaves_as_empty(tmp_path):
    path = tmp_path / "schema-cache.json"
    path.write_text("{not json")
    cache = SchemaCache(JsonSchemaStore(path))

    assert cache.get("echo", "f" * 16) is None
    cache.put(_entry())
    assert json.loads(path.read_text())["schemaCache"]


def test_invalidate_purges_persisted_entries(tmp_path):
    path = tmp_path / "schema-cache.json"
    cache = SchemaCache(JsonSchemaStore(path))
    cache.put(_entry())
    cache.put(_entry(name="echo-2"))

    cache.invalidate("echo")

    keys = set(json.loads(path.read_text())["schemaCache"])
    assert keys == {"echo-2:" + "f" * 16}
    assert SchemaCache(JsonSchemaStore(path)).get("echo", "f" * 16) is None


def test_store_preserves_unrelated_keys(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"guard": {"network": {"enabled": False}}}))

    SchemaCache(JsonSchemaStore(path)).put(_entry())

    document = json.loads(path.read_text())
    assert document["guard"] == {"network": {"enabled": False}}


def test_render_interface_signatures(sample_tools):
    text = render_interface(sample_tools)

    assert "async def ping() -> Any:" in text
    assert "async def echo(*, message: str, count: int = 1) -> Any:" in text
    assert '"""Echo a message back."""' in text


def test_render_interface_sanitises_names():
    text = render_interface(
        [{"name": "get-weather", "inputSchema": {"properties": {"city": {"type": "string"}}}}]
    )

    assert "async def get_weather(*, city: str = None) -> Any:" in text
    assert "mcp['get-weather']" in text


def test_schema_efficiency_metrics(sample_tools):
    metrics = schema_efficiency_metrics(sample_tools, ["ping", "ping"])

    assert metrics["total_tools_available"] == 2
    assert metrics["tools_used"] == ["ping"]
    assert 0 < metrics["schema_size_used_chars"] < metrics["schema_size_total_chars"]
    assert metrics["schema_size_reduction_chars"] == (
        metrics["schema_size_total_chars"] - metrics["schema_size_used_chars"]
    )
    assert metrics["estimated_tokens_saved"] == (
        metrics["estimated_tokens_total"] - metrics["estimated_tokens_used"]
    )


def test_schema_efficiency_metrics_with_no_calls(sample_tools):
    metrics = schema_efficiency_metrics(sample_tools, [])

    assert metrics["schema_size_used_chars"] == 0
    assert metrics["schema_efficiency_ratio"] == 0
    assert metrics["schema_size_reduction_percent"] == 100


def test_security_metrics_follow_policy():
    isolated = security_metrics(NetworkPolicy())
    open_policy = security_metrics(NetworkPolicy(allowed_hosts=("api.example.com",)))

    assert isolated["network_isolation_enabled"] is True
    assert open_policy["network_isolation_enabled"] is False
    assert any("api.example.com" in line for line in open_policy["protection_summary"])
