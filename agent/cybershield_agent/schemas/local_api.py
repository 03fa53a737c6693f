"""Local status API schemas."""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    agent_status: str = Field(..., serialization_alias="agentStatus")


class AgentInfoResponse(BaseModel):
    """Identity and live state of the agent."""
    agent_id: str = Field(..., serialization_alias="id")
    client_id: str = Field(..., serialization_alias="clientId")
    hostname: str
    platform: str
    arch: str
    version: str
    status: str
    session_state: str = Field(..., serialization_alias="sessionState")
    server_url: Optional[str] = Field(None, serialization_alias="serverUrl")
    last_scan: Optional[str] = Field(None, serialization_alias="lastScan")
    active_scan: Optional[str] = Field(None, serialization_alias="activeScan")
    system_info: Optional[Dict[str, Any]] = Field(None, serialization_alias="systemInfo")


class ScanRequest(BaseModel):
    type: str = Field("quick", pattern="^(quick|system|network|full)$")


class ScanAccepted(BaseModel):
    scan_id: str = Field(..., serialization_alias="scanId")
    type: str
    status: str