"""Shared agent state - identity, session state and the agent status flag."""
import enum
import logging
import platform
import socket
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    """Lifecycle of the server session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ONLINE = "online"
    RECONNECTING = "reconnecting"


class AgentStatus(str, enum.Enum):
    """Status reported in heartbeats and on the local API."""
    INITIALIZING = "initializing"
    ONLINE = "online"
    OFFLINE = "offline"
    SCANNING = "scanning"
    UPDATING = "updating"


@dataclass(frozen=True)
class AgentIdentity:
    """Who this agent is. ``client_id`` is the only field the server may change."""
    agent_id: str
    client_id: str
    hostname: str
    platform: str
    arch: str
    version: str

    @classmethod
    def detect(cls, agent_id: str, client_id: str, version: str) -> "AgentIdentity":
        return cls(
            agent_id=agent_id,
            client_id=client_id or "",
            hostname=socket.gethostname(),
            platform=platform.system().lower(),
            arch=platform.machine().lower(),
            version=version,
        )

    def auth_payload(self) -> dict:
        return {
            "agentId": self.agent_id,
            "clientId": self.client_id,
            "hostname": self.hostname,
            "platform": self.platform,
            "version": self.version,
        }


@dataclass
class AgentState:
    """Mutable process-wide state, created once and passed to every service."""
    identity: AgentIdentity
    status: AgentStatus = AgentStatus.INITIALIZING
    session_state: SessionState = SessionState.DISCONNECTED
    reconnect_attempt: int = 0
    next_retry_at: Optional[datetime] = None
    last_scan: Optional[str] = None
    _listeners: List[Callable[[SessionState], None]] = field(default_factory=list, repr=False)

    def set_client_id(self, client_id: str):
        self.identity = replace(self.identity, client_id=client_id)

    def on_session_change(self, listener: Callable[[SessionState], None]):
        self._listeners.append(listener)

    def transition(self, new_state: SessionState):
        """Move the session to ``new_state`` and notify listeners."""
        old_state = self.session_state
        if old_state == new_state:
            return
        self.session_state = new_state
        logger.debug(f"Session {old_state.value} -> {new_state.value}")
        for listener in self._listeners:
            listener(new_state)
