"""Tests for credential handling."""
import re

from cybershield_agent.services.auth import generate_device_token


async def test_device_token_generated_without_server_token(store, credentials):
    token = await credentials.get_auth_token()

    assert re.fullmatch(r"[0-9a-f]{64}", token)
    assert await store.get("tempDeviceToken") == token
    assert not await store.has("serverToken")


async def test_server_token_preferred(store, credentials):
    await store.set("serverToken", "server-token")

    assert await credentials.get_auth_token() == "server-token"
    assert not await store.has("tempDeviceToken")


async def test_tokens_never_stored_together(store, credentials):
    await credentials.get_auth_token()
    assert await credentials.save_server_token("issued")

    assert await store.get("serverToken") == "issued"
    assert not await store.has("tempDeviceToken")

    await credentials.invalidate_server_token()
    token = await credentials.get_auth_token()
    assert await store.get("tempDeviceToken") == token
    assert not await store.has("serverToken")


async def test_empty_server_token_rejected(store, credentials):
    assert not await credentials.save_server_token("")
    assert not await store.has("serverToken")


async def test_clear_tokens(store, credentials):
    await credentials.save_server_token("issued")
    await credentials.clear_tokens()
    assert not await store.has("serverToken")
    assert not await store.has("tempDeviceToken")


async def test_local_api_token_is_stable(store, credentials):
    first = await credentials.ensure_local_api_token()
    second = await credentials.ensure_local_api_token()
    assert first == second
    assert await store.get("localApiToken") == first


def test_device_tokens_differ_per_call():
    assert generate_device_token("agent-1") != generate_device_token("agent-1")
