"""Session manager - the single long-lived duplex connection to the server.

Lifecycle::

    Disconnected -> Connecting -> Authenticating -> Online
         ^                |              |            |
         |                v              v            v
         +---- (shutdown) Reconnecting(attempt, next_retry_at) --> Connecting

Transport problems never escape this module: they are logged at WARNING and
turn into a scheduled reconnect. Exactly one retry timer exists at a time.
Messages are never buffered while offline; on every (re)authentication an
immediate heartbeat re-sends the current status instead of replaying history.

Reconnect delays grow exponentially from ``reconnect_interval`` up to
``reconnect_max_interval`` (10s -> 60s by default). Setting both to the same
value gives a fixed retry interval.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol

import websockets

from ..schemas.messages import AuthResponse, Command, ProtocolError, decode, encode
from .auth import CredentialService
from .config_store import ConfigStore
from .state import AgentState, AgentStatus, SessionState

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 30
DEFAULT_RECONNECT_INTERVAL = 10
DEFAULT_RECONNECT_MAX_INTERVAL = 60


class Transport(Protocol):
    """What the session needs from a connection (a websockets client connection fits)."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self): ...


Connector = Callable[[str], Awaitable[Transport]]
CommandHandler = Callable[[Command], Awaitable[None]]


async def websocket_connector(url: str) -> Transport:
    """Open a websocket to the server."""
    return await websockets.connect(
        url,
        ping_interval=20,
        ping_timeout=10,
        close_timeout=5,
        open_timeout=15,
    )


class SessionManager:
    """Owns the server connection, authentication, heartbeat and reconnects."""

    def __init__(
        self,
        state: AgentState,
        store: ConfigStore,
        credentials: CredentialService,
        default_server_url: str,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        reconnect_max_interval: float = DEFAULT_RECONNECT_MAX_INTERVAL,
        connector: Optional[Connector] = None,
    ):
        self.state = state
        self.store = store
        self.credentials = credentials
        self.default_server_url = default_server_url
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_interval = reconnect_interval
        self.reconnect_max_interval = max(reconnect_max_interval, reconnect_interval)
        self._connector = connector or websocket_connector

        # Set by the command dispatcher
        self.on_command: Optional[CommandHandler] = None

        self._transport: Optional[Transport] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._closing = False

    # ── Public contract ──────────────────────────────────────

    @property
    def is_online(self) -> bool:
        return self.state.session_state == SessionState.ONLINE

    @property
    def retry_pending(self) -> bool:
        """True while a reconnect timer is scheduled."""
        return self._retry_task is not None and not self._retry_task.done()

    async def server_url(self) -> str:
        return await self.store.get("serverUrl", None) or self.default_server_url

    async def connect(self):
        """Open the transport and start authentication.

        No-op when already connecting, authenticating or online. A pending
        retry timer is cancelled so only this attempt runs.
        """
        if self._closing:
            return

        async with self._connect_lock:
            if self.state.session_state in (
                SessionState.CONNECTING,
                SessionState.AUTHENTICATING,
                SessionState.ONLINE,
            ):
                return

            self._cancel_retry()
            self.state.transition(SessionState.CONNECTING)
            url = await self.server_url()
            logger.info(f"Connecting to server: {url}")

            try:
                transport = await self._connector(url)
            except Exception as e:
                logger.warning(f"Failed to connect to {url}: {e}")
                self._schedule_reconnect()
                return

            if self._closing:
                await self._close_transport(transport)
                self.state.transition(SessionState.DISCONNECTED)
                return

            self._transport = transport
            self._reader_task = asyncio.create_task(self._read_loop(transport))
            self.state.transition(SessionState.AUTHENTICATING)

            token = await self.credentials.get_auth_token()
            payload = {**self.state.identity.auth_payload(), "token": token}
            if not await self._write(transport, "auth", payload):
                await self._handle_disconnect(transport, "could not send auth")

    async def reconnect(self):
        """Drop the current connection (if any) and connect again right away."""
        transport = self._transport
        if transport is not None:
            self._detach(transport)
            await self._close_transport(transport)
        self._cancel_retry()
        self.state.transition(SessionState.DISCONNECTED)
        await self.connect()

    async def send(self, message_type: str, payload: Optional[dict] = None) -> bool:
        """Send a message; returns False (and sends nothing) when not online."""
        transport = self._transport
        if transport is None or not self.is_online:
            logger.warning(f"Cannot send {message_type}, session not online")
            return False

        if not await self._write(transport, message_type, payload):
            await self._handle_disconnect(transport, f"sending {message_type} failed")
            return False
        return True

    async def shutdown(self, reason: str = "shutdown"):
        """Best-effort shutdown notice, then close without reconnecting."""
        self._closing = True
        self._cancel_retry()

        transport = self._transport
        if transport is not None:
            if self.is_online:
                await self._write(transport, "shutdown", {"reason": reason})
            await self._handle_disconnect(transport, reason)
        self.state.transition(SessionState.DISCONNECTED)
        logger.info(f"Session closed ({reason})")

    async def report_error(self, message: str, stack: Optional[str] = None) -> bool:
        """Forward an unexpected error to the server if a session is available."""
        if not self.is_online:
            return False
        return await self.send("error", {"message": message, "stack": stack})

    # ── Authentication ───────────────────────────────────────

    async def handle_auth_response(self, response: AuthResponse) -> bool:
        """Apply the server's verdict on our ``auth`` message."""
        if self.state.session_state != SessionState.AUTHENTICATING:
            logger.debug("Ignoring auth_response outside of authentication")
            return False

        if response.success:
            if response.token:
                await self.credentials.save_server_token(response.token)

            if response.client_id and response.client_id != self.state.identity.client_id:
                await self.store.set("clientId", response.client_id)
                self.state.set_client_id(response.client_id)
                logger.info(f"Updated client ID: {response.client_id}")

            self.state.reconnect_attempt = 0
            self.state.next_retry_at = None
            if self.state.status in (AgentStatus.INITIALIZING, AgentStatus.OFFLINE):
                self.state.status = AgentStatus.ONLINE
            self.state.transition(SessionState.ONLINE)
            logger.info("Authenticated with server")
            self._start_heartbeat()
            return True

        logger.warning(f"Authentication failed: {response.message or 'no reason given'}")
        if response.token_invalid:
            await self.credentials.invalidate_server_token()

        transport = self._transport
        if transport is not None:
            await self._handle_disconnect(transport, "authentication rejected")
        return False

    # ── Internals ────────────────────────────────────────────

    async def _read_loop(self, transport: Transport):
        reason = "connection closed by server"
        try:
            async for raw in transport:
                await self._handle_raw(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"transport error: {e}"
        await self._handle_disconnect(transport, reason)

    async def _handle_raw(self, raw: Any):
        try:
            command = decode(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed message: {e}")
            return

        if self.on_command is None:
            logger.debug(f"No command handler, dropping {type(command).__name__}")
            return

        try:
            await self.on_command(command)
        except Exception:
            logger.exception(f"Command handler failed for {type(command).__name__}")

    def _start_heartbeat(self):
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(self._transport))

    def _stop_heartbeat(self):
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self, transport: Transport):
        while True:
            payload = {
                "status": self.state.status.value,
                "timestamp": datetime.utcnow().isoformat(),
                "lastScan": self.state.last_scan,
            }
            if not await self._write(transport, "heartbeat", payload):
                await self._handle_disconnect(transport, "heartbeat failed")
                return
            await asyncio.sleep(self.heartbeat_interval)

    async def _write(self, transport: Transport, message_type: str, payload: Optional[dict]) -> bool:
        try:
            async with self._send_lock:
                await transport.send(encode(message_type, payload))
            return True
        except Exception as e:
            logger.warning(f"Failed to send {message_type}: {e}")
            return False

    def _detach(self, transport: Transport):
        """Forget ``transport`` and stop the tasks bound to it."""
        if transport is not self._transport:
            return
        self._transport = None
        self._stop_heartbeat()
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()

    async def _handle_disconnect(self, transport: Transport, reason: str):
        if transport is not self._transport:
            return  # Already handled for this transport

        self._detach(transport)
        await self._close_transport(transport)

        if self._closing:
            return

        logger.warning(f"Disconnected from server: {reason}")
        if self.state.status == AgentStatus.ONLINE:
            self.state.status = AgentStatus.OFFLINE
        self._schedule_reconnect()

    async def _close_transport(self, transport: Transport):
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport: {e}")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), capped."""
        delay = self.reconnect_interval * (2 ** max(attempt - 1, 0))
        return min(delay, self.reconnect_max_interval)

    def _schedule_reconnect(self):
        self._cancel_retry()
        self.state.reconnect_attempt += 1
        delay = self.backoff_delay(self.state.reconnect_attempt)
        self.state.next_retry_at = datetime.utcnow() + timedelta(seconds=delay)
        self.state.transition(SessionState.RECONNECTING)
        logger.info(f"Reconnecting in {delay:.0f}s (attempt {self.state.reconnect_attempt})")
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float):
        await asyncio.sleep(delay)
        self._retry_task = None
        await self.connect()

    def _cancel_retry(self):
        task = self._retry_task
        self._retry_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
