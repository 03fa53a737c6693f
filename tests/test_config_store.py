"""Tests for the SQLite-backed config store."""
from cybershield_agent.services.config_store import ConfigStore


async def test_get_falls_back_to_defaults(store):
    assert await store.get("scanInterval") == "0 */6 * * *"
    assert await store.get("autoUpdate") is True
    assert await store.get("missing") is None
    assert await store.get("missing", "fallback") == "fallback"


async def test_set_round_trips_json_values(store):
    await store.set("systemInfo", {"os": "Linux", "cpuCount": 4})
    await store.set("autoUpdate", False)

    assert await store.get("systemInfo") == {"os": "Linux", "cpuCount": 4}
    assert await store.get("autoUpdate") is False
    assert await store.has("autoUpdate")


async def test_last_writer_wins(store):
    await store.set("serverUrl", "wss://one.test")
    await store.set("serverUrl", "wss://two.test")
    assert await store.get("serverUrl") == "wss://two.test"


async def test_delete_restores_default(store):
    await store.set("scanInterval", "*/5 * * * *")
    await store.delete("scanInterval")
    assert not await store.has("scanInterval")
    assert await store.get("scanInterval") == "0 */6 * * *"


async def test_set_exclusive_swaps_keys_in_one_write(store):
    await store.set("tempDeviceToken", "device")
    await store.set_exclusive("serverToken", "server", remove=("tempDeviceToken",))

    assert await store.get("serverToken") == "server"
    assert not await store.has("tempDeviceToken")


async def test_get_all_overlays_stored_values(store):
    await store.set("agentId", "agent-1")
    await store.set("autoUpdate", False)

    values = await store.get_all()
    assert values["agentId"] == "agent-1"
    assert values["autoUpdate"] is False
    assert values["scanInterval"] == "0 */6 * * *"
    # Unset optional defaults are left out
    assert "serverUrl" not in values


async def test_values_survive_reopen(tmp_path):
    path = str(tmp_path / "agent-config.db")
    first = ConfigStore(path)
    await first.open()
    await first.set("agentId", "persistent")
    await first.close()

    second = ConfigStore(path)
    await second.open()
    try:
        assert await second.get("agentId") == "persistent"
    finally:
        await second.close()
