"""Self-update service - check, back up, download, install, verify, roll back.

Installation layout inside ``install_dir``::

    current.json            manifest pointer {"version", "release", "installedAt"}
    releases/<version>/     one directory per installed release, each with
                            its own manifest.json {"version": ...}
    ...                     anything else (local config, data) is never touched

An update is extracted into a fresh staging directory, promoted to
``releases/<version>`` and activated by atomically replacing ``current.json``.
The running process keeps executing its own release directory; the new code
is only loaded after the supervisor restarts the agent, when ``main`` resolves
the pointer with ``active_release_dir`` and the reported version comes from
``installed_version``.

Before anything is written, the pointer and the affected release directories
are copied into a timestamped backup. Any failure while installing or
verifying restores the install directory from that backup.
"""
import asyncio
import enum
import json
import logging
import os
import shutil
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from .config_store import ConfigStore
from .state import AgentState, AgentStatus

logger = logging.getLogger(__name__)

POINTER_FILE = "current.json"
MANIFEST_FILE = "manifest.json"
RELEASES_DIR = "releases"
BACKUP_POINTER = "pointer.json"


class UpdatePhase(str, enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"
    NO_UPDATE = "no-update"
    UPDATE_AVAILABLE = "update-available"
    BACKING_UP = "backing-up"
    DOWNLOADING = "downloading"
    INSTALLING = "installing"
    VERIFYING = "verifying"
    DONE = "done"
    ROLLED_BACK = "rolled-back"
    FAILED = "failed"


class UpdateInProgressError(RuntimeError):
    """An update cycle is already running."""


class BackupError(Exception):
    """The safety copy could not be created."""


class InstallError(Exception):
    """Download, extraction, promotion or verification failed."""


@dataclass
class UpdateInfo:
    """Answer of the update channel."""
    available: bool
    current_version: str
    version: Optional[str] = None
    download_url: Optional[str] = None
    changelog: Optional[str] = None
    mandatory: bool = False
    auto_update_enabled: bool = True
    error: Optional[str] = None


@dataclass
class UpdateAttempt:
    """One update cycle; discarded once it reaches a terminal phase."""
    target_version: Optional[str]
    download_url: Optional[str] = None
    backup_path: Optional[str] = None
    phase: UpdatePhase = UpdatePhase.CHECKING


@dataclass
class UpdateOutcome:
    """Result of ``update()``.

    ``restored`` is True when a failed update was rolled back successfully.
    ``rollback_error`` is set when the rollback itself failed and the
    installation may be inconsistent.
    """
    success: bool
    phase: UpdatePhase
    version: Optional[str] = None
    error: Optional[str] = None
    rollback_error: Optional[str] = None
    restored: bool = False
    backup_path: Optional[str] = None

    def to_message(self) -> dict:
        if self.success:
            return {"success": True, "version": self.version}
        message = {"success": False, "error": self.error, "restored": self.restored}
        if self.rollback_error:
            message["rollbackError"] = self.rollback_error
        return message


# ── Blocking filesystem helpers (run in the default executor) ──────────

def read_json(path: str) -> Optional[dict]:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None


def write_json_atomic(path: str, data: dict):
    directory = os.path.dirname(path) or "."
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _safe_target(dest: str, member_name: str) -> str:
    target = os.path.realpath(os.path.join(dest, member_name))
    root = os.path.realpath(dest)
    if target != root and not target.startswith(root + os.sep):
        raise InstallError(f"Archive member escapes the package tree: {member_name}")
    return target


def extract_archive(archive_path: str, dest: str):
    """Extract a .zip or .tar(.gz) package, rejecting members outside ``dest``."""
    os.makedirs(dest, exist_ok=True)
    if zipfile.is_zipfile(archive_path):
        with zipfile.ZipFile(archive_path) as zf:
            for name in zf.namelist():
                _safe_target(dest, name)
            zf.extractall(dest)
    elif tarfile.is_tarfile(archive_path):
        with tarfile.open(archive_path) as tf:
            for member in tf.getmembers():
                _safe_target(dest, member.name)
                if member.issym() or member.islnk():
                    raise InstallError(f"Links are not allowed in update packages: {member.name}")
            tf.extractall(dest)
    else:
        raise InstallError("Unsupported update package format")


def package_root(extract_dir: str) -> str:
    """Directory holding manifest.json (the archive root or its single top-level folder)."""
    if os.path.isfile(os.path.join(extract_dir, MANIFEST_FILE)):
        return extract_dir
    entries = [e for e in os.listdir(extract_dir) if not e.startswith(".")]
    if len(entries) == 1:
        nested = os.path.join(extract_dir, entries[0])
        if os.path.isfile(os.path.join(nested, MANIFEST_FILE)):
            return nested
    raise InstallError("Update package has no manifest.json")


def copy_tree(src: str, dest: str):
    if os.path.isdir(src):
        shutil.copytree(src, dest, symlinks=True)
    else:
        shutil.copy2(src, dest)


def remove_path(path: str):
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.unlink(path)


def active_release_dir(install_dir: str) -> Optional[str]:
    """Release directory ``current.json`` points at, or None without a usable pointer."""
    try:
        pointer = read_json(os.path.join(install_dir, POINTER_FILE))
    except (OSError, ValueError) as e:
        logger.warning(f"Cannot read release pointer in {install_dir}: {e}")
        return None
    if not isinstance(pointer, dict) or not pointer.get("release"):
        return None
    release = os.path.realpath(os.path.join(install_dir, pointer["release"]))
    return release if os.path.isdir(release) else None


def installed_version(install_dir: str, default: str) -> str:
    """Version from the active release's manifest.json, ``default`` when there is none."""
    release = active_release_dir(install_dir)
    if release is None:
        return default
    try:
        manifest = read_json(os.path.join(release, MANIFEST_FILE))
    except (OSError, ValueError) as e:
        logger.warning(f"Cannot read manifest of {release}: {e}")
        return default
    if not isinstance(manifest, dict) or not manifest.get("version"):
        return default
    return manifest["version"]


class UpdaterService:
    """Self-update manager for the agent installation."""

    def __init__(
        self,
        state: AgentState,
        store: ConfigStore,
        install_dir: str,
        data_path: str,
        update_url: str,
        timeout: float = 10,
        backup_retention: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.state = state
        self.store = store
        self.install_dir = install_dir
        self.backups_dir = os.path.join(data_path, "backups")
        self.downloads_dir = os.path.join(data_path, "downloads")
        self.update_url = update_url
        self.timeout = timeout
        self.backup_retention = backup_retention
        self._transport = transport
        self._lock = asyncio.Lock()
        self.attempt: Optional[UpdateAttempt] = None

    @property
    def current_version(self) -> str:
        return self.state.identity.version

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    async def _headers(self) -> dict:
        identity = self.state.identity
        headers = {
            "X-Agent-Id": identity.agent_id,
            "User-Agent": f"CyberShieldX-Agent/{identity.version} ({identity.platform}; {identity.arch})",
        }
        token = await self.store.get("serverToken", None)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    # ── Checking ─────────────────────────────────────────────

    async def check(self, target_version: Optional[str] = None) -> UpdateInfo:
        """Ask the update channel whether a newer version exists.

        Never raises: with auto-update disabled no request is made, and any
        network or protocol error is reported as "no update".
        """
        current = self.current_version
        if not await self.store.get("autoUpdate", True):
            logger.info("Auto-updates are disabled")
            return UpdateInfo(available=False, current_version=current, auto_update_enabled=False)

        identity = self.state.identity
        params = {"version": current, "platform": identity.platform, "arch": identity.arch}
        if target_version:
            params["targetVersion"] = target_version

        try:
            async with self._client() as client:
                response = await client.get(self.update_url, params=params, headers=await self._headers())
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not reach update server: {e}")
            return UpdateInfo(available=False, current_version=current, error=str(e))
        finally:
            await self.store.set("lastUpdateCheck", datetime.utcnow().isoformat())

        if not isinstance(data, dict):
            logger.warning("Received invalid response from update server")
            return UpdateInfo(available=False, current_version=current, error="invalid response")

        info = UpdateInfo(
            available=bool(data.get("updateAvailable")),
            current_version=current,
            version=data.get("latestVersion") or current,
            download_url=data.get("downloadUrl"),
            changelog=data.get("changelog"),
            mandatory=bool(data.get("mandatory", False)),
        )
        if info.available and info.version == current:
            info.available = False
        if info.available:
            logger.info(f"Update available: {info.version}")
        else:
            logger.info("No updates available")
        return info

    # ── Update cycle ─────────────────────────────────────────

    async def update(self, target_version: Optional[str] = None, info: Optional[UpdateInfo] = None) -> UpdateOutcome:
        """Run one update cycle. Never restarts the process.

        ``info`` is a fresh answer from ``check()``; without it the update
        channel is queried first.

        Raises:
            UpdateInProgressError: another cycle is running.
        """
        if self._lock.locked():
            raise UpdateInProgressError("An update is already in progress")

        async with self._lock:
            previous_status = self.state.status
            self.attempt = UpdateAttempt(target_version=target_version)
            try:
                return await self._run_cycle(self.attempt, info)
            finally:
                self.attempt = None
                if self.state.status == AgentStatus.UPDATING:
                    self.state.status = previous_status if previous_status != AgentStatus.UPDATING else AgentStatus.ONLINE

    async def _run_cycle(self, attempt: UpdateAttempt, info: Optional[UpdateInfo]) -> UpdateOutcome:
        logger.info(f"Starting update{f' to version {attempt.target_version}' if attempt.target_version else ''}")
        if info is None:
            info = await self.check(attempt.target_version)

        if not info.available and not attempt.target_version:
            logger.info("No updates available")
            return UpdateOutcome(success=False, phase=UpdatePhase.NO_UPDATE, error="No updates available")

        version = attempt.target_version or info.version
        attempt.target_version = version
        attempt.download_url = info.download_url
        if not attempt.download_url:
            logger.error("No download URL provided for update")
            return UpdateOutcome(success=False, phase=UpdatePhase.FAILED, error="No download URL provided")
        if version == self.current_version:
            return UpdateOutcome(success=False, phase=UpdatePhase.FAILED, error=f"Version {version} is already running")

        attempt.phase = UpdatePhase.UPDATE_AVAILABLE
        self.state.status = AgentStatus.UPDATING
        loop = asyncio.get_event_loop()

        attempt.phase = UpdatePhase.BACKING_UP
        try:
            attempt.backup_path = await loop.run_in_executor(None, self._create_backup, version)
        except (OSError, BackupError) as e:
            logger.error(f"Failed to create backup, update aborted: {e}")
            return UpdateOutcome(success=False, phase=UpdatePhase.FAILED, error=f"Backup failed: {e}")
        await self.store.set("lastBackupPath", attempt.backup_path)

        archive_path = None
        try:
            attempt.phase = UpdatePhase.DOWNLOADING
            archive_path = await self._download(attempt.download_url, version)

            attempt.phase = UpdatePhase.INSTALLING
            await loop.run_in_executor(None, self._install_release, archive_path, version)

            attempt.phase = UpdatePhase.VERIFYING
            await loop.run_in_executor(None, self._verify, version)
        except Exception as e:
            return await self._recover(attempt, e)
        finally:
            if archive_path:
                await loop.run_in_executor(None, self._discard_download, archive_path)

        attempt.phase = UpdatePhase.DONE
        await loop.run_in_executor(None, self._prune_backups)
        logger.info(f"Update to version {version} installed successfully")
        return UpdateOutcome(success=True, phase=UpdatePhase.DONE, version=version, backup_path=attempt.backup_path)

    async def _recover(self, attempt: UpdateAttempt, error: Exception) -> UpdateOutcome:
        """Restore from the backup made for this attempt."""
        failed_phase = attempt.phase.value
        logger.error(f"Update failed while {failed_phase}: {error}")

        # Nothing was written to the install directory before installing
        if attempt.phase == UpdatePhase.DOWNLOADING:
            attempt.phase = UpdatePhase.FAILED
            return UpdateOutcome(
                success=False, phase=UpdatePhase.FAILED, error=f"Update failed: {error}",
                restored=True, backup_path=attempt.backup_path,
            )

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, self._restore_backup, attempt.backup_path, attempt.target_version)
        except Exception as restore_error:
            attempt.phase = UpdatePhase.FAILED
            logger.critical(
                f"Rollback from {attempt.backup_path} failed, installation may be inconsistent: {restore_error}"
            )
            return UpdateOutcome(
                success=False, phase=UpdatePhase.FAILED, error=f"Update failed: {error}",
                rollback_error=str(restore_error), backup_path=attempt.backup_path,
            )

        attempt.phase = UpdatePhase.ROLLED_BACK
        logger.info("Restored from backup after failed update")
        return UpdateOutcome(
            success=False, phase=UpdatePhase.ROLLED_BACK, error=f"Update failed: {error}",
            restored=True, backup_path=attempt.backup_path,
        )

    async def _download(self, url: str, version: str) -> str:
        os.makedirs(self.downloads_dir, exist_ok=True)
        suffix = ".tar.gz" if url.endswith((".tar.gz", ".tgz")) else ".zip"
        archive_path = os.path.join(self.downloads_dir, f"update-{version}{suffix}")
        logger.info(f"Downloading update from: {url}")

        # Downloads can be large: only connect/read stalls time out
        timeout = httpx.Timeout(self.timeout, read=60)
        loop = asyncio.get_event_loop()
        try:
            async with self._client(timeout=timeout) as client:
                async with client.stream("GET", url, headers=await self._headers()) as response:
                    response.raise_for_status()
                    with open(archive_path, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            await loop.run_in_executor(None, f.write, chunk)
        except BaseException:
            if os.path.exists(archive_path):
                self._discard_download(archive_path)
            raise
        return archive_path

    # ── Blocking steps ───────────────────────────────────────

    def _pointer_path(self) -> str:
        return os.path.join(self.install_dir, POINTER_FILE)

    def _release_dir(self, version: str) -> str:
        return os.path.join(self.install_dir, RELEASES_DIR, version)

    def _create_backup(self, target_version: str) -> str:
        """Copy the pointer, the active release and any stale target release."""
        timestamp = datetime.utcnow().strftime("%Y-%m-%dT%H-%M-%S-%f")
        backup_path = os.path.join(self.backups_dir, f"backup-{timestamp}")
        try:
            os.makedirs(backup_path)
        except OSError as e:
            raise BackupError(f"Cannot create backup directory {backup_path}: {e}") from e

        pointer = read_json(self._pointer_path())
        manifest = {
            "createdAt": timestamp,
            "pointer": pointer,
            "releases": [],
            "hadReleasesDir": os.path.isdir(os.path.join(self.install_dir, RELEASES_DIR)),
        }

        if pointer is not None:
            shutil.copy2(self._pointer_path(), os.path.join(backup_path, BACKUP_POINTER))

        versions = []
        if pointer and pointer.get("version"):
            versions.append(pointer["version"])
        if target_version not in versions:
            versions.append(target_version)

        releases_backup = os.path.join(backup_path, RELEASES_DIR)
        for version in versions:
            source = self._release_dir(version)
            if os.path.isdir(source):
                os.makedirs(releases_backup, exist_ok=True)
                copy_tree(source, os.path.join(releases_backup, version))
                manifest["releases"].append(version)

        write_json_atomic(os.path.join(backup_path, "backup.json"), manifest)
        logger.info(f"Backup created at: {backup_path}")
        return backup_path

    def _install_release(self, archive_path: str, version: str):
        releases = os.path.join(self.install_dir, RELEASES_DIR)
        os.makedirs(releases, exist_ok=True)
        staging = tempfile.mkdtemp(prefix=f".staging-{version}-", dir=releases)
        try:
            extract_archive(archive_path, staging)
            root = package_root(staging)

            target = self._release_dir(version)
            if os.path.lexists(target):
                remove_path(target)
            os.rename(root, target)
        finally:
            if os.path.exists(staging):
                shutil.rmtree(staging)

        write_json_atomic(self._pointer_path(), {
            "version": version,
            "release": f"{RELEASES_DIR}/{version}",
            "installedAt": datetime.utcnow().isoformat(),
        })

    def _verify(self, version: str):
        pointer = read_json(self._pointer_path())
        if not pointer or pointer.get("version") != version:
            raise InstallError("Manifest pointer does not reference the new release")
        manifest = read_json(os.path.join(self.install_dir, pointer["release"], MANIFEST_FILE))
        if not manifest:
            raise InstallError("Installed release has no manifest.json")
        if manifest.get("version") != version:
            raise InstallError(f"Installed release reports version {manifest.get('version')}, expected {version}")

    def _restore_backup(self, backup_path: Optional[str], target_version: Optional[str]):
        if not backup_path or not os.path.isdir(backup_path):
            raise BackupError("No backup available to restore")
        manifest = read_json(os.path.join(backup_path, "backup.json"))
        if manifest is None:
            raise BackupError(f"Backup at {backup_path} is incomplete")

        # The new release was not there before (or is restored below)
        if target_version:
            remove_path(self._release_dir(target_version))

        for version in manifest["releases"]:
            live = self._release_dir(version)
            remove_path(live)
            copy_tree(os.path.join(backup_path, RELEASES_DIR, version), live)

        saved_pointer = os.path.join(backup_path, BACKUP_POINTER)
        if os.path.isfile(saved_pointer):
            tmp_path = self._pointer_path() + ".restore"
            shutil.copy2(saved_pointer, tmp_path)
            os.replace(tmp_path, self._pointer_path())
        else:
            remove_path(self._pointer_path())

        # Remove the releases directory if this attempt created it
        releases = os.path.join(self.install_dir, RELEASES_DIR)
        if not manifest.get("hadReleasesDir", True) and os.path.isdir(releases) and not os.listdir(releases):
            os.rmdir(releases)

    def _discard_download(self, archive_path: str):
        try:
            os.unlink(archive_path)
        except OSError as e:
            logger.warning(f"Could not clean up temporary files: {e}")

    def _prune_backups(self):
        try:
            backups = sorted(
                entry for entry in os.listdir(self.backups_dir) if entry.startswith("backup-")
            )
        except OSError:
            return
        for entry in backups[:-self.backup_retention] if self.backup_retention > 0 else []:
            remove_path(os.path.join(self.backups_dir, entry))
            logger.debug(f"Pruned old backup {entry}")

    async def auto_update(self) -> Optional[UpdateOutcome]:
        """Periodic path: install whatever the channel offers.

        Returns None when there is nothing to do or another cycle is running.
        """
        info = await self.check()
        if not info.available:
            return None
        try:
            return await self.update(info.version, info=info)
        except UpdateInProgressError:
            logger.info("Skipping automatic update, another update is running")
            return None
