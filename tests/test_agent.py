"""Tests for agent startup and shutdown."""
import asyncio
import json
import os

import httpx
import pytest

from cybershield_agent.agent import Agent
from cybershield_agent.config import Settings
from cybershield_agent.main import release_to_launch
from cybershield_agent.services.state import SessionState

from conftest import FakeConnector, FakeScanners, wait_until


def no_updates(request):
    return httpx.Response(200, json={"updateAvailable": False, "latestVersion": "1.0.0"})


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_path=str(tmp_path / "data"),
        install_dir=str(tmp_path / "install"),
        default_server_url="ws://server.test",
        update_url="https://updates.test/agent/updates",
        heartbeat_interval=3600,
        reconnect_interval=0.01,
        reconnect_max_interval=0.02,
        restart_grace_seconds=0,
    )


def make_agent(settings, connector):
    return Agent(
        settings,
        connector=connector,
        scanners=FakeScanners(),
        update_transport=httpx.MockTransport(no_updates),
        serve_local_api=False,
    )


async def test_first_start_prepares_agent(settings, tmp_path):
    connector = FakeConnector()
    agent = make_agent(settings, connector)
    await agent.start()
    try:
        for name in ("reports", "backups", "downloads"):
            assert os.path.isdir(tmp_path / "data" / name)

        agent_id = await agent.store.get("agentId")
        assert agent_id
        assert await agent.store.get("setupComplete") is True
        assert await agent.store.get("installDir") == settings.install_dir
        assert await agent.store.get("localApiToken")
        assert (await agent.store.get("systemInfo"))["probe"] == "basic_system_info"

        auth = connector.last.messages("auth")[0]["data"]
        assert auth["agentId"] == agent_id
        assert agent.scheduler.cron_expression == "0 */6 * * *"
    finally:
        agent.stop("test")
        await agent.shutdown()


async def test_agent_id_survives_restart(settings):
    first = make_agent(settings, FakeConnector())
    await first.start()
    agent_id = first.state.identity.agent_id
    first.stop("test")
    await first.shutdown()

    second = make_agent(settings, FakeConnector())
    await second.start()
    try:
        assert second.state.identity.agent_id == agent_id
    finally:
        second.stop("test")
        await second.shutdown()


async def test_stop_sends_shutdown_reason(settings):
    connector = FakeConnector()
    agent = make_agent(settings, connector)
    await agent.start()
    transport = connector.last
    transport.feed("auth_response", {"success": True, "token": "server-token"})
    await wait_until(lambda: agent.session.is_online)

    agent.stop("service_stop")
    await agent.shutdown()

    assert transport.messages("shutdown")[0]["data"] == {"reason": "service_stop"}
    assert transport.closed


async def test_reboot_command_stops_agent(settings):
    connector = FakeConnector()
    agent = make_agent(settings, connector)
    await agent.start()
    transport = connector.last
    transport.feed("auth_response", {"success": True, "token": "server-token"})
    await wait_until(lambda: agent.session.is_online)

    transport.feed("reboot")
    await wait_until(lambda: agent.stop_reason is not None)
    await agent.shutdown()

    assert agent.stop_reason == "reboot"
    assert transport.messages("reboot_ack")


async def test_unusable_data_path_exits_non_zero(settings, tmp_path):
    blocker = tmp_path / "data"
    blocker.write_text("not a directory")

    exit_code = await make_agent(settings, FakeConnector()).run()

    assert exit_code == 1


async def test_run_returns_zero_after_stop(settings):
    agent = make_agent(settings, FakeConnector())

    async def stop_soon():
        await wait_until(lambda: agent.session is not None and agent.state.session_state == SessionState.AUTHENTICATING)
        agent.stop("user_request")

    stopper = asyncio.create_task(stop_soon())
    assert await agent.run() == 0
    await stopper


def install_release(install_dir, version, with_package=False):
    release = install_dir / "releases" / version
    release.mkdir(parents=True)
    (release / "manifest.json").write_text(json.dumps({"version": version}))
    if with_package:
        (release / "cybershield_agent").mkdir()
        (release / "cybershield_agent" / "__init__.py").write_text(f'__version__ = "{version}"\n')
    (install_dir / "current.json").write_text(json.dumps({"version": version, "release": f"releases/{version}"}))
    return release


async def test_restart_reports_installed_release_version(settings, tmp_path):
    install_release(tmp_path / "install", "1.1.0")
    connector = FakeConnector()
    agent = make_agent(settings, connector)
    await agent.start()
    try:
        assert agent.state.identity.version == "1.1.0"
        assert connector.last.messages("auth")[0]["data"]["version"] == "1.1.0"
    finally:
        agent.stop("test")
        await agent.shutdown()


def test_launch_target_is_active_release(tmp_path):
    install = tmp_path / "install"
    release = install_release(install, "1.1.0", with_package=True)

    assert release_to_launch(str(install), running_root=str(tmp_path / "site-packages")) == os.path.realpath(release)
    # Already running from the active release
    assert release_to_launch(str(install), running_root=str(release)) is None


def test_no_launch_target_without_pointer_or_package(tmp_path):
    assert release_to_launch(str(tmp_path / "missing")) is None

    install = tmp_path / "install"
    install_release(install, "1.1.0")
    assert release_to_launch(str(install), running_root=str(tmp_path / "site-packages")) is None
