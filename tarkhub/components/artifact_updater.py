"""
TarkHub Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
ArtifactUpdater

Download-install-restart cycle for one runtime artifact (the SPT engine or
the Fika plugin):

    DISK_SPACE_CHECK -> BACKUP -> STOP -> DOWNLOAD -> VALIDATE_DOWNLOAD ->
    EXTRACT -> INSTALL -> VALIDATE_INSTALL -> RESTORE_CONFIG -> RESTART -> DONE

Every stage returns an Outcome. Any failure after a snapshot was taken
rolls the runtime tree back to that snapshot and restarts the server.
"""

import os
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import psutil
import requests

from ..models import ArtifactKind, ArtifactProfile
from ..utils.archives import ArchiveError, extract_archive
from ..utils.file_operations import DownloadError, FileOperations, download_to_file
from ..utils.index import log_message
from ..utils.maintenance import UPDATE_LOCK, MaintenanceFlag, UpdateLock
from ..utils.results import ErrorKind, Outcome
from ..utils.state_manager import BackupSnapshot, StateManager, StateManagerError
from ..utils.version_store import VersionStore
from .process_supervisor import ProcessSupervisor
from .version_resolver import extract_version

DISK_SPACE_FACTOR = 1.5


class UpdateStage(Enum):
    IDLE = "idle"
    DISK_SPACE_CHECK = "disk_space_check"
    BACKUP = "backup"
    STOP = "stop"
    DOWNLOAD = "download"
    VALIDATE_DOWNLOAD = "validate_download"
    EXTRACT = "extract"
    INSTALL = "install"
    VALIDATE_INSTALL = "validate_install"
    RESTORE_CONFIG = "restore_config"
    RESTART = "restart"
    DONE = "done"
    ROLLBACK = "rollback"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass
class UpdateSession:
    """Transient state of one update run."""
    kind: ArtifactKind
    download_url: str
    version: Optional[str] = None
    stage: UpdateStage = UpdateStage.IDLE
    snapshot: Optional[BackupSnapshot] = None
    download_path: Optional[Path] = None
    staging_dir: Optional[Path] = None
    keep_snapshot: bool = False

    @property
    def rollbackable(self) -> bool:
        return self.snapshot is not None


@dataclass
class UpdateResult:
    """What happened to one update request."""
    kind: ArtifactKind
    success: bool
    stage: UpdateStage
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    rolled_back: bool = False
    requires_manual_intervention: bool = False
    version: Optional[str] = None
    failed_stage: Optional[UpdateStage] = None

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "success": self.success,
            "stage": self.stage.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "rolled_back": self.rolled_back,
            "requires_manual_intervention": self.requires_manual_intervention,
            "version": self.version,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
        }


def _nearest_existing(path: Path) -> Path:
    for candidate in [path] + list(path.parents):
        if candidate.exists():
            return candidate
    return Path(path.anchor or "/")


class ArtifactUpdater:
    """Runs update sessions for one artifact profile."""

    def __init__(self, profile: ArtifactProfile, runtime_dir: str,
                 supervisor: ProcessSupervisor, version_store: VersionStore,
                 state_manager: StateManager,
                 file_ops: Optional[FileOperations] = None,
                 session: Optional[requests.Session] = None,
                 temp_dir: Optional[str] = None,
                 lock: UpdateLock = UPDATE_LOCK,
                 maintenance_flag: Optional[MaintenanceFlag] = None,
                 disk_usage: Callable = psutil.disk_usage,
                 sleep: Callable[[float], None] = time.sleep,
                 settle_seconds: float = 2.0,
                 stop_timeout: float = 10.0,
                 download_timeout: float = 600,
                 headers: Optional[Dict[str, str]] = None):
        self.profile = profile
        self.runtime_dir = Path(runtime_dir)
        self.supervisor = supervisor
        self.version_store = version_store
        self.state_manager = state_manager
        self.file_ops = file_ops or FileOperations()
        self.session = session or requests.Session()
        self.temp_dir = temp_dir
        self.lock = lock
        self.maintenance_flag = maintenance_flag or MaintenanceFlag()
        self.disk_usage = disk_usage
        self._sleep = sleep
        self.settle_seconds = settle_seconds
        self.stop_timeout = stop_timeout
        self.download_timeout = download_timeout
        self.headers = headers or {}

    def update(self, download_url: str, version: Optional[str] = None) -> UpdateResult:
        """
        Install the archive at ``download_url`` over the runtime tree.

        Args:
            download_url: Release archive to install
            version: Version to record; derived from the URL when omitted

        Returns:
            UpdateResult, truthy iff the new version is installed and running
        """
        name = self.profile.display_name
        kind = self.profile.kind

        if not self.lock.acquire(self.profile.name):
            return UpdateResult(
                kind=kind, success=False, stage=UpdateStage.IDLE,
                error_kind=ErrorKind.UPDATE_IN_PROGRESS,
                message=f"Another update ({self.lock.owner}) is already in progress",
            )

        session = UpdateSession(
            kind=kind,
            download_url=download_url,
            version=version or extract_version(download_url),
        )
        log_message(f"[UPDATE] Starting {name} update from {download_url}")

        try:
            session.stage = UpdateStage.DISK_SPACE_CHECK
            outcome = self._check_disk_space(session)
            if not outcome:
                return self._failed(session, outcome)

            with self.maintenance_flag.raised(f"{self.profile.name} update"):
                return self._run_stages(session)
        finally:
            self._cleanup(session)
            self.lock.release()

    def _run_stages(self, session: UpdateSession) -> UpdateResult:
        stages = [
            (UpdateStage.BACKUP, self._backup),
            (UpdateStage.STOP, self._stop),
            (UpdateStage.DOWNLOAD, self._download),
            (UpdateStage.VALIDATE_DOWNLOAD, self._validate_download),
            (UpdateStage.EXTRACT, self._extract),
            (UpdateStage.INSTALL, self._install),
            (UpdateStage.VALIDATE_INSTALL, self._validate_install),
            (UpdateStage.RESTORE_CONFIG, self._restore_config),
            (UpdateStage.RESTART, self._restart),
        ]

        for stage, step in stages:
            session.stage = stage
            log_message(f"[UPDATE] {self.profile.display_name}: {stage.value}", "DEBUG")
            try:
                outcome = step(session)
            except OSError as e:
                outcome = Outcome.failure(ErrorKind.INSTALL_FAILED, f"{stage.value} failed: {e}")
            except Exception as e:
                log_message(f"[UPDATE] Unexpected error during {stage.value}: {e!r}", "ERROR")
                outcome = Outcome.failure(ErrorKind.INSTALL_FAILED, f"{stage.value} failed: {e}")

            if not outcome:
                if session.rollbackable:
                    return self._rollback(session, outcome)
                return self._failed(session, outcome)

        session.stage = UpdateStage.DONE
        message = f"{self.profile.display_name} updated to {session.version or 'unknown version'}"
        log_message(f"[UPDATE] ✓ {message}")
        return UpdateResult(
            kind=session.kind, success=True, stage=UpdateStage.DONE,
            message=message, version=session.version,
        )

    def _failed(self, session: UpdateSession, outcome: Outcome) -> UpdateResult:
        failed_stage = session.stage
        log_message(f"[UPDATE] ✗ {self.profile.display_name} update failed at {failed_stage.value}: {outcome.detail}", "ERROR")
        session.stage = UpdateStage.FAILED
        return UpdateResult(
            kind=session.kind, success=False, stage=UpdateStage.FAILED,
            error_kind=outcome.kind, message=outcome.detail,
            version=session.version, failed_stage=failed_stage,
        )

    # Stages

    def _check_disk_space(self, session: UpdateSession) -> Outcome:
        required = int(self.profile.expected_download_bytes * DISK_SPACE_FACTOR)
        volume = _nearest_existing(self.runtime_dir)
        try:
            free = self.disk_usage(str(volume)).free
        except OSError as e:
            return Outcome.failure(ErrorKind.DISK_SPACE_INSUFFICIENT, f"Cannot read free space of {volume}: {e}")

        if free < required:
            return Outcome.failure(
                ErrorKind.DISK_SPACE_INSUFFICIENT,
                f"Insufficient disk space: {free // (1024 * 1024)} MB free, {required // (1024 * 1024)} MB required",
            )
        return Outcome.success(free)

    def _backup(self, session: UpdateSession) -> Outcome:
        try:
            session.snapshot = self.state_manager.snapshot(
                self.profile.name,
                str(self.runtime_dir),
                description=f"pre_update_{session.version or 'unknown'}",
            )
        except StateManagerError as e:
            return Outcome.failure(ErrorKind.INSTALL_FAILED, f"Backup failed: {e}")

        if session.snapshot is None:
            log_message(f"[UPDATE] No existing {self.runtime_dir}, continuing without rollback", "WARNING")
        return Outcome.success(session.snapshot)

    def _stop(self, session: UpdateSession) -> Outcome:
        self.supervisor.stop(self.stop_timeout)
        self._sleep(self.settle_seconds)

        if self.supervisor.is_running():
            log_message("[UPDATE] Server still detected after stop, force killing", "WARNING")
            self.supervisor.kill()
            if self.supervisor.is_running():
                return Outcome.failure(ErrorKind.PROCESS_CONTROL_FAILED, "Server process could not be stopped")
        return Outcome.success()

    def _download(self, session: UpdateSession) -> Outcome:
        file_name = os.path.basename(urlparse(session.download_url).path) or "download"
        fd, path = tempfile.mkstemp(prefix=f"{self.profile.name}_", suffix=f"_{file_name}", dir=self.temp_dir)
        os.close(fd)
        session.download_path = Path(path)

        log_message(f"[UPDATE] Downloading {file_name}")
        try:
            size = download_to_file(self.session, session.download_url, session.download_path,
                                    headers=self.headers, timeout=self.download_timeout)
        except DownloadError as e:
            return Outcome.failure(ErrorKind.TRANSIENT_NETWORK, str(e))

        log_message(f"[UPDATE] Downloaded {size / (1024 * 1024):.1f} MB")
        return Outcome.success(size)

    def _validate_download(self, session: UpdateSession) -> Outcome:
        size = session.download_path.stat().st_size
        if size == 0:
            return Outcome.failure(ErrorKind.VALIDATION_FAILED, "Downloaded file is empty")
        if size < self.profile.min_download_bytes:
            return Outcome.failure(
                ErrorKind.VALIDATION_FAILED,
                f"Downloaded file is too small ({size} bytes, expected at least {self.profile.min_download_bytes})",
            )
        return Outcome.success(size)

    def _extract(self, session: UpdateSession) -> Outcome:
        session.staging_dir = Path(tempfile.mkdtemp(prefix=f"{self.profile.name}_staging_", dir=self.temp_dir))
        try:
            fmt = extract_archive(session.download_path, session.staging_dir)
        except ArchiveError as e:
            return Outcome.failure(ErrorKind.VALIDATION_FAILED, str(e))

        if not any(session.staging_dir.iterdir()):
            return Outcome.failure(ErrorKind.VALIDATION_FAILED, "Archive contained no files")
        log_message(f"[UPDATE] Extracted {fmt} archive", "DEBUG")
        return Outcome.success(fmt)

    def _install(self, session: UpdateSession) -> Outcome:
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        copied = self.file_ops.overlay_copy(session.staging_dir, self.runtime_dir)
        log_message(f"[UPDATE] Installed {copied} files into {self.runtime_dir}")
        return Outcome.success(copied)

    def _validate_install(self, session: UpdateSession) -> Outcome:
        if not self.profile.validates_install:
            return Outcome.success()

        for marker in self.profile.marker_paths:
            if (session.staging_dir / marker).exists() and (self.runtime_dir / marker).exists():
                return Outcome.success(marker)
        return Outcome.failure(
            ErrorKind.VALIDATION_FAILED,
            f"{self.profile.display_name} files not found in the release archive: {', '.join(self.profile.marker_paths)}",
        )

    def _restore_config(self, session: UpdateSession) -> Outcome:
        if session.snapshot is None:
            return Outcome.success(0)

        restored = 0
        for rel_path in self.profile.preserved_configs:
            previous = Path(session.snapshot.path) / rel_path
            if not previous.is_file():
                continue

            live = self.runtime_dir / rel_path
            live.parent.mkdir(parents=True, exist_ok=True)
            if live.exists():
                self.file_ops.copy_file(live, live.with_name(live.name + ".new"))
            self.file_ops.copy_file(previous, live)
            restored += 1
            log_message(f"[UPDATE] Kept existing {rel_path}, new default saved as {live.name}.new")
        return Outcome.success(restored)

    def _restart(self, session: UpdateSession) -> Outcome:
        if not self.supervisor.start():
            return Outcome.failure(ErrorKind.PROCESS_CONTROL_FAILED, "Server failed to start after update")

        if session.version:
            if not self.version_store.write(self.profile.name, session.version):
                return Outcome.failure(
                    ErrorKind.INSTALL_FAILED,
                    f"Could not record version {session.version} in {self.version_store.version_file(self.profile.name)}",
                )
            if self.profile.kind == ArtifactKind.ENGINE:
                self.version_store.set_fallback(self.profile.name, session.version)
        else:
            log_message("[UPDATE] Could not determine the installed version, version file left unchanged", "WARNING")
        return Outcome.success()

    # Rollback and cleanup

    def _rollback(self, session: UpdateSession, outcome: Outcome) -> UpdateResult:
        failed_stage = session.stage
        name = self.profile.display_name
        log_message(f"[UPDATE] ✗ {name} update failed at {failed_stage.value}: {outcome.detail}", "ERROR")
        log_message(f"[UPDATE] Rolling back {self.runtime_dir}")
        session.stage = UpdateStage.ROLLBACK

        if self.supervisor.is_running():
            if not self.supervisor.stop(self.stop_timeout):
                self.supervisor.kill()

        try:
            self.state_manager.restore(session.snapshot, str(self.runtime_dir))
        except StateManagerError as e:
            session.keep_snapshot = True
            session.stage = UpdateStage.FAILED
            log_message(
                f"[UPDATE] ✗ ROLLBACK FAILED for {name}: {e}. Manual intervention required, "
                f"snapshot kept at {session.snapshot.path}",
                "CRITICAL",
            )
            return UpdateResult(
                kind=session.kind, success=False, stage=UpdateStage.FAILED,
                error_kind=ErrorKind.ROLLBACK_FAILED,
                message=f"{outcome.detail}; rollback failed: {e}",
                requires_manual_intervention=True,
                version=session.version, failed_stage=failed_stage,
            )

        session.snapshot = None
        session.stage = UpdateStage.ROLLED_BACK
        if self.supervisor.start():
            log_message(f"[UPDATE] ✓ Rolled back {name} and restarted the server")
        else:
            log_message(f"[UPDATE] Rolled back {name} but the server did not start", "WARNING")

        return UpdateResult(
            kind=session.kind, success=False, stage=UpdateStage.ROLLED_BACK,
            error_kind=outcome.kind, message=outcome.detail, rolled_back=True,
            version=session.version, failed_stage=failed_stage,
        )

    def _cleanup(self, session: UpdateSession) -> None:
        if session.download_path is not None:
            self.file_ops.delete_path(session.download_path)
        if session.staging_dir is not None:
            self.file_ops.delete_path(session.staging_dir)
        if session.snapshot is not None and not session.keep_snapshot:
            self.state_manager.discard(session.snapshot)
