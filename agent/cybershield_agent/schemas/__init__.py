"""Pydantic schemas for the session protocol and the local API."""
from .messages import (
    AuthResponse,
    Command,
    ConfigUpdate,
    Envelope,
    ProtocolError,
    Reboot,
    RunScan,
    UnknownCommand,
    UpdateAgent,
    decode,
    encode,
)
from .local_api import (
    AgentInfoResponse,
    HealthResponse,
    ScanAccepted,
    ScanRequest,
)

__all__ = [
    "AuthResponse",
    "Command",
    "ConfigUpdate",
    "Envelope",
    "ProtocolError",
    "Reboot",
    "RunScan",
    "UnknownCommand",
    "UpdateAgent",
    "decode",
    "encode",
    "AgentInfoResponse",
    "HealthResponse",
    "ScanAccepted",
    "ScanRequest",
]
