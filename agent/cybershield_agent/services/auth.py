"""Credential service - server token, temporary device token and local API token."""
import hashlib
import logging
import os
import platform
import socket
import time
import uuid
from typing import Optional

from .config_store import ConfigStore

logger = logging.getLogger(__name__)


def _mac_address() -> str:
    """Hardware address of the primary interface as aa:bb:cc:dd:ee:ff."""
    node = uuid.getnode()
    # getnode() sets the multicast bit when it had to invent a random address
    if (node >> 40) & 1:
        return ""
    return ":".join(f"{(node >> shift) & 0xff:02x}" for shift in range(40, -1, -8))


def generate_device_token(agent_id: str) -> str:
    """Derive a one-off device token from hardware facts and the current time."""
    unique = "-".join([
        agent_id or "",
        socket.gethostname(),
        _mac_address(),
        platform.processor() or platform.machine(),
        str(os.cpu_count() or 0),
        str(time.time_ns()),
    ])
    return hashlib.sha256(unique.encode()).hexdigest()


class CredentialService:
    """Owns the credential keys of the config store.

    ``serverToken`` and ``tempDeviceToken`` are never stored at the same time:
    a device token is only generated when no server token exists, and saving a
    server token removes the device token in the same write.
    """

    def __init__(self, store: ConfigStore):
        self.store = store

    async def get_auth_token(self) -> str:
        """Token to present in the ``auth`` message.

        Uses the server-issued token when present, otherwise generates a fresh
        device token for this attempt.
        """
        token = await self.store.get("serverToken", None)
        if token:
            logger.debug("Using existing server token")
            return token

        agent_id = await self.store.get("agentId", "")
        device_token = generate_device_token(agent_id)
        await self.store.set_exclusive("tempDeviceToken", device_token, remove=("serverToken",))
        logger.info("No server token found, generated a temporary device token")
        return device_token

    async def save_server_token(self, token: str) -> bool:
        """Persist a server-issued token and drop the device token atomically."""
        if not token:
            logger.warning("Refusing to save an empty server token")
            return False
        await self.store.set_exclusive("serverToken", token, remove=("tempDeviceToken",))
        logger.info("Server token saved")
        return True

    async def invalidate_server_token(self):
        """Forget the server token so the next attempt uses a new device token."""
        await self.store.delete("serverToken")
        logger.info("Server token cleared")

    async def clear_tokens(self):
        await self.store.delete("serverToken")
        await self.store.delete("tempDeviceToken")
        logger.info("All session tokens cleared")

    async def ensure_local_api_token(self) -> str:
        token: Optional[str] = await self.store.get("localApiToken", None)
        if not token:
            token = str(uuid.uuid4())
            await self.store.set("localApiToken", token)
            logger.info("Generated new local API token")
        return token
