"""Command dispatcher - routes decoded server commands to the agent services."""
import asyncio
import logging
from typing import Callable, Optional, Set

from ..models import CREDENTIAL_KEYS
from ..schemas.messages import (
    AuthResponse,
    Command,
    ConfigUpdate,
    Reboot,
    RunScan,
    UnknownCommand,
    UpdateAgent,
)
from .config_store import ConfigStore
from .scheduler import SchedulerService
from .session import SessionManager
from .task_runner import ScanInProgressError, TaskRunner
from .updater import UpdateInProgressError, UpdaterService

logger = logging.getLogger(__name__)

# Keys the server may never overwrite through config_update
PROTECTED_KEYS = ("agentId",) + CREDENTIAL_KEYS

Terminator = Callable[[str], None]


class CommandDispatcher:
    """Handles every inbound command; nothing raised here reaches the session."""

    def __init__(
        self,
        session: SessionManager,
        store: ConfigStore,
        runner: TaskRunner,
        scheduler: SchedulerService,
        updater: UpdaterService,
        terminate: Terminator,
        grace_seconds: float = 2,
    ):
        self.session = session
        self.store = store
        self.runner = runner
        self.scheduler = scheduler
        self.updater = updater
        self.terminate = terminate
        self.grace_seconds = grace_seconds
        self._background: Set[asyncio.Task] = set()
        session.on_command = self.dispatch

    async def dispatch(self, command: Command):
        try:
            match command:
                case AuthResponse():
                    await self._handle_auth_response(command)
                case ConfigUpdate():
                    await self._handle_config_update(command)
                case RunScan():
                    await self._handle_run_scan(command)
                case UpdateAgent():
                    self._spawn(self._handle_update(command))
                case Reboot():
                    await self._handle_reboot()
                case UnknownCommand():
                    logger.warning(f"Unknown message type: {command.type}")
        except Exception as e:
            logger.exception(f"Error handling {type(command).__name__}")
            await self.session.report_error(f"Error handling {type(command).__name__}: {e}")

    async def wait_idle(self):
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Handlers ─────────────────────────────────────────────

    async def _handle_auth_response(self, command: AuthResponse):
        if not await self.session.handle_auth_response(command):
            return

        if command.scan_interval:
            try:
                await self.scheduler.reschedule(command.scan_interval)
            except ValueError as e:
                logger.error(f"Server sent an invalid scan schedule '{command.scan_interval}': {e}")

        if command.run_initial_scan:
            logger.info("Running initial scan as requested by server")
            try:
                self.runner.submit("system")
            except ScanInProgressError:
                logger.info("Initial scan skipped, a scan is already running")

    async def _handle_config_update(self, command: ConfigUpdate):
        values = dict(command.values)
        for key in PROTECTED_KEYS:
            if key in values:
                values.pop(key)
                logger.warning(f"Ignoring attempt to overwrite protected key: {key}")

        reconnect = False
        try:
            cron_expression = values.pop("scanInterval", None)
            if cron_expression is not None:
                await self.scheduler.reschedule(cron_expression)

            server_url = values.get("serverUrl")
            if server_url and server_url != await self.store.get("serverUrl", None):
                logger.info(f"Server URL changed to {server_url}")
                reconnect = True

            await self.store.set_many(values)
        except ValueError as e:
            logger.warning(f"Rejected config update: {e}")
            await self.session.send("config_update_ack", {"success": False, "message": str(e)})
            return

        logger.info("Configuration updated")
        await self.session.send("config_update_ack", {"success": True, "message": "Configuration updated successfully"})

        if reconnect:
            await self.session.reconnect()

    async def _handle_run_scan(self, command: RunScan):
        try:
            self.runner.submit(command.scan_type, command.scan_id)
        except ScanInProgressError as e:
            if command.scan_id and command.scan_id == e.active.id:
                logger.info(f"Scan {command.scan_id} is already running, ignoring duplicate request")
                return
            logger.warning(f"Rejected scan request: {e}")
            await self.session.send("scan_complete", {
                "scanId": command.scan_id,
                "success": False,
                "error": "Agent is already scanning",
            })
        except ValueError as e:
            logger.warning(f"Rejected scan request: {e}")
            await self.session.send("scan_complete", {
                "scanId": command.scan_id,
                "success": False,
                "error": str(e),
            })

    async def _handle_update(self, command: UpdateAgent):
        try:
            outcome = await self.updater.update(command.version)
        except UpdateInProgressError as e:
            await self.session.send("update_complete", {"success": False, "error": str(e)})
            return
        except Exception as e:
            logger.exception("Update crashed")
            await self.session.send("update_complete", {"success": False, "error": f"Update failed: {e}"})
            return

        await self.session.send("update_complete", outcome.to_message())

        if outcome.success and command.restart:
            logger.info(f"Restarting to activate version {outcome.version}")
            await self._terminate_later("update")

    async def _handle_reboot(self):
        logger.info("Reboot requested by server")
        await self.session.send("reboot_ack", {})
        self._spawn(self._terminate_later("reboot"))

    async def _terminate_later(self, reason: str):
        await asyncio.sleep(self.grace_seconds)
        self.terminate(reason)

    def _spawn(self, coro) -> Optional[asyncio.Task]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
