"""Tests for the session wire protocol."""
import json

import pytest

from cybershield_agent.schemas.messages import (
    AuthResponse,
    ConfigUpdate,
    ProtocolError,
    Reboot,
    RunScan,
    UnknownCommand,
    UpdateAgent,
    decode,
    encode,
)


def envelope(message_type, data=None):
    return json.dumps({"type": message_type, "data": data or {}, "timestamp": "2024-01-01T00:00:00Z"})


def test_encode_wraps_payload():
    message = json.loads(encode("heartbeat", {"status": "online"}))
    assert message["type"] == "heartbeat"
    assert message["data"] == {"status": "online"}
    assert message["timestamp"].endswith("Z")


def test_decode_auth_response():
    command = decode(envelope("auth_response", {
        "success": True,
        "token": "abc",
        "clientId": "client-9",
        "scanInterval": "*/5 * * * *",
        "runInitialScan": True,
    }))
    assert isinstance(command, AuthResponse)
    assert command.client_id == "client-9"
    assert command.scan_interval == "*/5 * * * *"
    assert command.run_initial_scan


def test_decode_commands():
    assert isinstance(decode(envelope("config_update", {"autoUpdate": False})), ConfigUpdate)
    scan = decode(envelope("run_scan", {"type": "full", "scanId": "s-1"}))
    assert isinstance(scan, RunScan)
    assert (scan.scan_type, scan.scan_id) == ("full", "s-1")
    update = decode(envelope("update_agent", {"version": "2.0.0", "restart": True}))
    assert isinstance(update, UpdateAgent) and update.restart
    assert isinstance(decode(envelope("reboot")), Reboot)


def test_run_scan_defaults_to_quick():
    assert decode(envelope("run_scan")).scan_type == "quick"


def test_unknown_type_is_not_an_error():
    command = decode(envelope("telemetry_request"))
    assert isinstance(command, UnknownCommand)
    assert command.type == "telemetry_request"


@pytest.mark.parametrize("raw", [
    "not json",
    json.dumps(["list"]),
    json.dumps({"data": {}}),
    json.dumps({"type": "run_scan", "data": "text"}),
    envelope("run_scan", {"scanId": ["not", "a", "string"]}),
])
def test_malformed_messages_raise_protocol_error(raw):
    with pytest.raises(ProtocolError):
        decode(raw)


@pytest.mark.parametrize("message,invalid", [
    ("Invalid token", True),
    ("Token expired", True),
    ("token revoked by administrator", True),
    ("Agent not approved", False),
    (None, False),
])
def test_token_invalid_detection(message, invalid):
    assert AuthResponse(success=False, message=message).token_invalid is invalid
