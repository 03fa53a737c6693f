"""Config entry model - durable key-value store for agent state."""
from datetime import datetime

from sqlalchemy import Column, String, Text, DateTime

from ..database import Base


class ConfigEntry(Base):
    """A single persisted configuration value (JSON-encoded)."""

    __tablename__ = "config"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Defaults returned when a key has never been written
DEFAULT_CONFIG = {
    "serverUrl": None,  # Filled from settings.default_server_url at startup
    "scanInterval": "0 */6 * * *",  # Every 6 hours
    "autoUpdate": True,
    "telemetryEnabled": True,
    "setupComplete": False,
    "clientId": "",
}

# Keys that only the agent itself may write
CREDENTIAL_KEYS = ("serverToken", "tempDeviceToken", "localApiToken")
