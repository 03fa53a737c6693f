"""Session wire protocol: envelope and typed server commands.

Every message on the session is ``{type, data, timestamp}``. Inbound messages
are decoded once here into one of the command classes below; the dispatcher
matches on the class, never on the raw type string.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, ValidationError


class ProtocolError(ValueError):
    """An inbound message could not be decoded."""


class Envelope(BaseModel):
    """Wire envelope shared by both directions."""
    type: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = None


class AuthResponse(BaseModel):
    """Server verdict on the ``auth`` message."""
    success: bool = False
    token: Optional[str] = None
    client_id: Optional[str] = Field(None, alias="clientId")
    message: Optional[str] = None
    scan_interval: Optional[str] = Field(None, alias="scanInterval")
    run_initial_scan: bool = Field(False, alias="runInitialScan")

    class Config:
        populate_by_name = True

    @property
    def token_invalid(self) -> bool:
        """True when the failure reason says the stored token is no good."""
        reason = (self.message or "").lower()
        return "token" in reason and any(
            word in reason for word in ("invalid", "expired", "revoked", "unknown")
        )


class ConfigUpdate(BaseModel):
    """Key/values to merge into the config store."""
    values: Dict[str, Any] = Field(default_factory=dict)


class RunScan(BaseModel):
    scan_type: str = Field("quick", alias="type")
    scan_id: Optional[str] = Field(None, alias="scanId")

    class Config:
        populate_by_name = True


class UpdateAgent(BaseModel):
    version: Optional[str] = None
    restart: bool = False


class Reboot(BaseModel):
    pass


class UnknownCommand(BaseModel):
    type: str


Command = Union[AuthResponse, ConfigUpdate, RunScan, UpdateAgent, Reboot, UnknownCommand]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def encode(message_type: str, data: Optional[dict] = None) -> str:
    """Serialize an outbound message."""
    return json.dumps(
        {"type": message_type, "data": data or {}, "timestamp": utc_now_iso()},
        default=str,
    )


def decode(raw: Union[str, bytes]) -> Command:
    """Decode an inbound message into a command.

    Raises:
        ProtocolError: the message is not a valid envelope or its data does
            not fit the command type.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed JSON: {e}") from e

    try:
        envelope = Envelope.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid envelope: {e.errors()[0]['msg']}") from e

    try:
        match envelope.type:
            case "auth_response":
                return AuthResponse.model_validate(envelope.data)
            case "config_update":
                return ConfigUpdate(values=envelope.data)
            case "run_scan":
                return RunScan.model_validate(envelope.data)
            case "update_agent":
                return UpdateAgent.model_validate(envelope.data)
            case "reboot":
                return Reboot()
            case _:
                return UnknownCommand(type=envelope.type)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {envelope.type} payload: {e.errors()[0]['msg']}") from e
