from unittest.mock import AsyncMock, MagicMock

import pytest

from mcp_isolate_bridge import (
    InputValidationError,
    InstanceNotFoundError,
    InstanceRegistry,
    ProcessTreeTerminator,
)


def _registry():
    terminator = MagicMock(spec=ProcessTreeTerminator)
    terminator.terminate = AsyncMock()
    return InstanceRegistry(terminator), terminator


async def _create(registry, name="echo", client=None):
    return await registry.create(
        name,
        tools=[{"name": "ping"}],
        prompts=[],
        interface_text="async def ping() -> Any:",
        client=client,
    )


@pytest.mark.asyncio
async def test_create_and_lookup(fake_client_cls):
    registry, _ = _registry()
    client = fake_client_cls()
    instance = await _create(registry, client=client)

    assert instance.status == "ready"
    assert registry.get(instance.instance_id).name == "echo"
    assert registry.get_by_name("echo").instance_id == instance.instance_id
    assert registry.get_by_name("missing") is None
    assert registry.client_for(instance.instance_id) is client
    assert [item.instance_id for item in registry.list()] == [instance.instance_id]
    assert registry.list()[0].uptime_ms >= 0


@pytest.mark.asyncio
async def test_duplicate_names_are_rejected():
    registry, _ = _registry()
    await _create(registry)

    with pytest.raises(InputValidationError):
        await _create(registry)
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_remove_unknown_instance_raises_and_changes_nothing():
    registry, terminator = _registry()
    await _create(registry)

    with pytest.raises(InstanceNotFoundError) as excinfo:
        await registry.remove("does-not-exist")

    assert excinfo.value.error_type == "not_found"
    assert len(registry) == 1
    terminator.terminate.assert_not_awaited()


@pytest.mark.asyncio
async def test_remove_closes_session_and_hosts(fake_client_cls):
    registry, terminator = _registry()
    client = fake_client_cls()
    instance = await _create(registry, client=client)
    registry.track_host(instance.instance_id, 4242)

    removed = await registry.remove(instance.instance_id)

    assert removed.status == "unloaded"
    assert client.stopped == 1
    terminator.terminate.assert_awaited_once_with(4242)
    assert registry.find(instance.instance_id) is None


@pytest.mark.asyncio
async def test_remove_survives_failing_cleanup():
    registry, terminator = _registry()
    client = MagicMock()
    client.stop = AsyncMock(side_effect=RuntimeError("session already gone"))
    instance = await _create(registry, client=client)

    await registry.remove(instance.instance_id)

    assert len(registry) == 0
    with pytest.raises(InstanceNotFoundError):
        registry.get(instance.instance_id)


@pytest.mark.asyncio
async def test_untracked_hosts_are_not_terminated():
    registry, terminator = _registry()
    instance = await _create(registry)
    registry.track_host(instance.instance_id, 1001)
    registry.untrack_host(instance.instance_id, 1001)

    await registry.remove(instance.instance_id)

    terminator.terminate.assert_not_awaited()
