"""Task runner - executes one scan at a time and reports its outcome."""
import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Set

from .config_store import ConfigStore
from .reporter import generate_report, save_report
from .scanners import LocalScanSuite
from .state import AgentState, AgentStatus

logger = logging.getLogger(__name__)

SCAN_TYPES = ("quick", "system", "network", "full")

# (result section, probe method name)
SYSTEM_STEPS = [
    ("system", "detailed_system_info"),
    ("config", "check_configuration"),
    ("vulnerabilities", "scan_local_vulnerabilities"),
    ("malware", "malware_scan"),
]
NETWORK_STEPS = [
    ("devices", "discover_devices"),
    ("services", "scan_services"),
    ("firewall", "check_firewall"),
    ("networkVulnerabilities", "scan_network_vulnerabilities"),
]
PIPELINES = {
    "quick": ([("system", "basic_system_info"), ("network", "quick_port_scan")], False),
    "system": ([("systemInfo", "basic_system_info")] + SYSTEM_STEPS, False),
    "network": ([("systemInfo", "basic_system_info")] + NETWORK_STEPS, False),
    "full": ([("systemInfo", "basic_system_info")] + SYSTEM_STEPS + NETWORK_STEPS, True),
}

Notifier = Callable[[str, dict], Awaitable[Any]]


@dataclass
class ScanResult:
    """Outcome of a probe or a whole scan: either data or an error."""
    ok: bool
    data: dict = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def success(cls, data: dict) -> "ScanResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str) -> "ScanResult":
        return cls(ok=False, error=error)


class TaskStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PendingTask:
    """The single scan slot of the agent."""
    id: str
    type: str
    requested_at: datetime
    status: TaskStatus = TaskStatus.QUEUED
    result: Optional[ScanResult] = None

    @property
    def terminal(self) -> bool:
        return self.status in (TaskStatus.DONE, TaskStatus.FAILED)


class ScanInProgressError(RuntimeError):
    """A scan was requested while another one is running."""

    def __init__(self, active: PendingTask):
        super().__init__(f"Agent is already scanning (scan {active.id})")
        self.active = active


class TaskRunner:
    """Runs scan pipelines against the scan collaborators.

    Only one scan may be queued or running; another request is rejected with
    ``ScanInProgressError``. The agent status is ``scanning`` while a scan is
    in flight and always returns to ``online`` afterwards.
    """

    def __init__(
        self,
        state: AgentState,
        store: ConfigStore,
        reports_dir: str,
        scanners: Optional[Any] = None,
        notify: Optional[Notifier] = None,
    ):
        self.state = state
        self.store = store
        self.reports_dir = reports_dir
        self.scanners = scanners or LocalScanSuite()
        self.notify = notify
        self._active: Optional[PendingTask] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def active(self) -> Optional[PendingTask]:
        return self._active

    @property
    def busy(self) -> bool:
        return self._active is not None

    def submit(self, scan_type: str = "quick", scan_id: Optional[str] = None) -> PendingTask:
        """Claim the scan slot and run the scan in the background.

        Raises:
            ScanInProgressError: another scan holds the slot.
            ValueError: unknown scan type.
        """
        task = self._claim(scan_type, scan_id)
        background = asyncio.create_task(self._execute(task))
        self._background.add(background)
        background.add_done_callback(self._background.discard)
        return task

    async def run(self, scan_type: str = "quick", scan_id: Optional[str] = None) -> ScanResult:
        """Claim the slot and run the scan to completion."""
        task = self._claim(scan_type, scan_id)
        return await self._execute(task)

    async def wait_idle(self):
        """Wait for background scans to finish (used on shutdown and in tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _claim(self, scan_type: str, scan_id: Optional[str]) -> PendingTask:
        if scan_type not in SCAN_TYPES:
            raise ValueError(f"Unknown scan type: {scan_type}")
        if self._active is not None:
            raise ScanInProgressError(self._active)
        task = PendingTask(
            id=scan_id or str(uuid.uuid4()),
            type=scan_type,
            requested_at=datetime.utcnow(),
        )
        self._active = task
        return task

    async def _execute(self, task: PendingTask) -> ScanResult:
        task.status = TaskStatus.RUNNING
        self.state.status = AgentStatus.SCANNING
        logger.info(f"Starting {task.type} scan (ID: {task.id})")

        result = ScanResult.failure("Scan did not complete")
        try:
            await self._notify("scan_start", {
                "scanId": task.id,
                "type": task.type,
                "timestamp": datetime.utcnow().isoformat(),
            })
            result = await self._run_pipeline(task)
            if result.ok:
                result = await self._finish(task, result.data)
        except Exception as e:
            logger.exception(f"Scan {task.id} crashed")
            result = ScanResult.failure(str(e))
        finally:
            self.state.status = AgentStatus.ONLINE
            task.result = result
            task.status = TaskStatus.DONE if result.ok else TaskStatus.FAILED
            self._active = None

        if result.ok:
            logger.info(f"Scan completed successfully (ID: {task.id})")
            await self._notify("scan_complete", {"scanId": task.id, "success": True, "results": result.data})
        else:
            logger.error(f"Scan failed (ID: {task.id}): {result.error}")
            await self._notify("scan_complete", {"scanId": task.id, "success": False, "error": result.error})
        return result

    async def _run_pipeline(self, task: PendingTask) -> ScanResult:
        steps, deep = PIPELINES[task.type]
        results: dict = {}
        for section, method_name in steps:
            step = await self._call(method_name, results, deep)
            if not step.ok:
                return step
            results[section] = step.data
        return ScanResult.success(results)

    async def _call(self, method_name: str, previous: dict, deep: bool) -> ScanResult:
        """Invoke one probe, mapping any exception to a failed result."""
        probe = getattr(self.scanners, method_name)
        try:
            data = await probe(previous, deep=deep)
        except Exception as e:
            logger.warning(f"Probe {method_name} failed: {e}")
            return ScanResult.failure(f"{method_name} failed: {e}")
        return ScanResult.success(data or {})

    async def _finish(self, task: PendingTask, results: dict) -> ScanResult:
        identity = self.state.identity
        report = generate_report(task.id, task.type, identity.agent_id, identity.hostname, results)

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, save_report, self.reports_dir, report)
        except OSError as e:
            return ScanResult.failure(f"Could not save report: {e}")

        self.state.last_scan = datetime.utcnow().isoformat()
        await self.store.set("lastScan", self.state.last_scan)
        return ScanResult.success(report)

    async def _notify(self, message_type: str, payload: dict):
        if self.notify is None:
            return
        try:
            await self.notify(message_type, payload)
        except Exception as e:
            logger.warning(f"Could not report {message_type}: {e}")