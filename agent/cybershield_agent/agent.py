"""Agent runtime - wires the services together and owns the process lifecycle."""
import asyncio
import logging
import os
import signal
import sys
import traceback
import uuid
from typing import Any, Optional, Set

import httpx
import uvicorn

from . import __version__
from .config import Settings
from .routers.local import LocalApiContext, create_local_api
from .services.auth import CredentialService
from .services.config_store import ConfigStore, default_store_path
from .services.dispatcher import CommandDispatcher
from .services.scanners import LocalScanSuite
from .services.scheduler import SchedulerService
from .services.session import Connector, SessionManager
from .services.state import AgentIdentity, AgentState, AgentStatus
from .services.task_runner import TaskRunner
from .services.updater import UpdaterService, installed_version

logger = logging.getLogger(__name__)

DATA_DIRECTORIES = ("reports", "backups", "downloads")

# Shutdown notice reasons by signal
SIGNAL_REASONS = {
    signal.SIGINT: "user_request",
    signal.SIGTERM: "service_stop",
}


class SetupError(Exception):
    """The agent cannot start (required directories or storage unavailable)."""


class Agent:
    """One agent process: startup, run until stopped, shut down."""

    def __init__(
        self,
        settings: Settings,
        connector: Optional[Connector] = None,
        scanners: Optional[Any] = None,
        update_transport: Optional[httpx.AsyncBaseTransport] = None,
        serve_local_api: bool = True,
    ):
        self.settings = settings
        self.store = ConfigStore(default_store_path(settings.data_path))
        self.credentials = CredentialService(self.store)
        self._connector = connector
        self._scanners = scanners
        self._update_transport = update_transport
        self._serve_local_api = serve_local_api

        self.state: Optional[AgentState] = None
        self.session: Optional[SessionManager] = None
        self.runner: Optional[TaskRunner] = None
        self.scheduler: Optional[SchedulerService] = None
        self.updater: Optional[UpdaterService] = None
        self.dispatcher: Optional[CommandDispatcher] = None

        self.stop_reason: Optional[str] = None
        self._stopped = asyncio.Event()
        self._api_server: Optional[uvicorn.Server] = None
        self._api_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def reports_dir(self) -> str:
        return os.path.join(self.settings.data_path, "reports")

    # ── Startup ──────────────────────────────────────────────

    async def start(self):
        """Prepare storage and start every service.

        Raises:
            SetupError: the data directory layout cannot be created.
        """
        version = installed_version(self.settings.install_dir, __version__)
        logger.info(f"Starting CyberShieldX agent v{version}")
        self._create_directories()
        try:
            await self.store.open()
        except Exception as e:
            raise SetupError(f"Cannot open config store: {e}") from e

        await self._first_run_setup()
        agent_id = await self._ensure_agent_id()
        identity = AgentIdentity.detect(agent_id, await self.store.get("clientId", ""), version)
        self.state = AgentState(identity=identity, last_scan=await self.store.get("lastScan", None))
        await self.credentials.ensure_local_api_token()
        await self._collect_system_info()

        self.session = SessionManager(
            self.state,
            self.store,
            self.credentials,
            self.settings.default_server_url,
            heartbeat_interval=self.settings.heartbeat_interval,
            reconnect_interval=self.settings.reconnect_interval,
            reconnect_max_interval=self.settings.reconnect_max_interval,
            connector=self._connector,
        )
        self.runner = TaskRunner(
            self.state,
            self.store,
            self.reports_dir,
            scanners=self._scanners,
            notify=self.session.send,
        )
        self.scheduler = SchedulerService(self.runner, self.store)
        self.updater = UpdaterService(
            self.state,
            self.store,
            install_dir=self.settings.install_dir,
            data_path=self.settings.data_path,
            update_url=self.settings.update_url,
            timeout=self.settings.update_check_timeout,
            backup_retention=self.settings.backup_retention,
            transport=self._update_transport,
        )
        self.dispatcher = CommandDispatcher(
            self.session,
            self.store,
            self.runner,
            self.scheduler,
            self.updater,
            terminate=self.stop,
            grace_seconds=self.settings.restart_grace_seconds,
        )

        self._install_error_handlers()

        self.scheduler.start()
        await self.scheduler.restore()
        self.scheduler.schedule_update_checks(self.settings.update_check_hours, self.periodic_update_check)
        self._spawn(self.startup_update_check())

        if self._serve_local_api:
            self._start_local_api()

        await self.session.connect()
        logger.info(f"Agent {agent_id} started")

    def _create_directories(self):
        for name in DATA_DIRECTORIES:
            path = os.path.join(self.settings.data_path, name)
            try:
                os.makedirs(path, exist_ok=True)
            except OSError as e:
                raise SetupError(f"Cannot create directory {path}: {e}") from e

    async def _first_run_setup(self):
        if await self.store.get("setupComplete"):
            return
        logger.info("Running first-time setup")
        await self.store.set_many({
            "installDir": self.settings.install_dir,
            "setupComplete": True,
        })
        logger.info("Setup completed successfully")

    async def _ensure_agent_id(self) -> str:
        agent_id = await self.store.get("agentId", None)
        if not agent_id:
            agent_id = str(uuid.uuid4())
            await self.store.set("agentId", agent_id)
            logger.info(f"Generated new agent ID: {agent_id}")
        return agent_id

    async def _collect_system_info(self):
        try:
            info = await (self._scanners or LocalScanSuite()).basic_system_info({})
        except Exception as e:
            logger.warning(f"Could not collect system information: {e}")
            return
        await self.store.set("systemInfo", info)

    def _start_local_api(self):
        app = create_local_api(LocalApiContext(
            state=self.state,
            store=self.store,
            runner=self.runner,
            scheduler=self.scheduler,
        ))
        config = uvicorn.Config(
            app,
            host=self.settings.local_api_host,
            port=self.settings.local_api_port,
            log_level="warning",
        )
        self._api_server = uvicorn.Server(config)
        # Signals are handled by the agent, not by uvicorn
        self._api_server.install_signal_handlers = lambda: None
        self._api_task = asyncio.create_task(self._api_server.serve())
        logger.info(f"Local API started on {self.settings.local_api_host}:{self.settings.local_api_port}")

    # ── Updates ──────────────────────────────────────────────

    async def startup_update_check(self):
        info = await self.updater.check()
        if info.available:
            logger.info(f"Update available: {info.version} (current {info.current_version})")

    async def periodic_update_check(self):
        outcome = await self.updater.auto_update()
        if outcome is None:
            return
        if outcome.success:
            logger.info(f"Updated to {outcome.version}, restarting")
            self.stop("update")
        else:
            logger.error(f"Automatic update failed: {outcome.error}")

    # ── Error reporting ──────────────────────────────────────

    def _install_error_handlers(self):
        loop = self._loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)
        sys.excepthook = self._handle_uncaught

        for signum, reason in SIGNAL_REASONS.items():
            try:
                loop.add_signal_handler(signum, self.stop, reason)
            except (NotImplementedError, RuntimeError):
                # No loop signal support (Windows or not the main thread)
                logger.debug(f"Signal handler for {signum} not installed")

    def _remove_error_handlers(self):
        loop = self._loop
        if loop is None:
            return
        loop.set_exception_handler(None)
        if sys.excepthook == self._handle_uncaught:
            sys.excepthook = sys.__excepthook__
        for signum in SIGNAL_REASONS:
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                pass

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict):
        error = context.get("exception")
        message = context.get("message", "Unhandled error")
        if error is not None:
            logger.error(f"Unhandled exception: {message}", exc_info=error)
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
            self._spawn(self.session.report_error(str(error), stack))
        else:
            logger.error(f"Unhandled error: {message}")
            self._spawn(self.session.report_error(message))

    def _handle_uncaught(self, exc_type, exc_value, exc_tb):
        logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
        loop = self._loop
        if loop is not None and not loop.is_closed() and self.session is not None:
            stack = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))
            loop.call_soon_threadsafe(self._spawn, self.session.report_error(str(exc_value), stack))

    # ── Lifecycle ────────────────────────────────────────────

    def stop(self, reason: str = "shutdown"):
        """Request shutdown; ``run()`` returns once services are closed."""
        if self._stopped.is_set():
            return
        logger.info(f"Shutting down agent ({reason})")
        self.stop_reason = reason
        self._stopped.set()

    async def wait_stopped(self):
        await self._stopped.wait()

    async def shutdown(self):
        if self.session is not None:
            await self.session.shutdown(self.stop_reason or "shutdown")
        if self.scheduler is not None:
            self.scheduler.stop()
        if self._api_server is not None:
            self._api_server.should_exit = True
            await asyncio.gather(self._api_task, return_exceptions=True)

        pending = [t for t in self._background if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self.state is not None and self.state.status != AgentStatus.UPDATING:
            self.state.status = AgentStatus.OFFLINE
        self._remove_error_handlers()
        await self.store.close()
        logger.info("Shutdown complete")

    async def run(self) -> int:
        """Start, wait for a stop request, shut down. Returns the exit code."""
        try:
            await self.start()
        except SetupError as e:
            logger.critical(f"Fatal startup error: {e}")
            await self.store.close()
            return 1

        await self.wait_stopped()
        await self.shutdown()
        return 0

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
