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
Update serialization and maintenance signalling.

Two separate concerns:
- UpdateLock: in-process mutex, exactly one artifact update at a time
- MaintenanceFlag: a file on disk telling the external liveness monitor
  not to kill the server while an update has it stopped
"""

import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import psutil

from .index import log_message

DEFAULT_FLAG_PATH = "/tmp/updating.flag"


class UpdateLock:
    """Non-blocking process-wide mutex for update sessions."""

    def __init__(self):
        self._lock = threading.Lock()
        self._owner: Optional[str] = None

    def acquire(self, owner: str) -> bool:
        if not self._lock.acquire(blocking=False):
            log_message(f"[UPDATE] Update for {owner} refused, {self._owner} is already updating", "WARNING")
            return False
        self._owner = owner
        return True

    def release(self) -> None:
        self._owner = None
        self._lock.release()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def owner(self) -> Optional[str]:
        return self._owner


# Shared by every ArtifactUpdater in the process
UPDATE_LOCK = UpdateLock()


class MaintenanceFlag:
    """Persisted "update in progress" marker consumed by the liveness monitor."""

    def __init__(self, path: str = DEFAULT_FLAG_PATH):
        self.path = Path(path)

    def is_set(self) -> bool:
        return self.path.exists()

    def set(self, reason: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{reason}\npid={os.getpid()}\nsince={int(time.time())}\n")
        log_message(f"[UPDATE] Maintenance flag raised: {self.path}", "DEBUG")

    def clear(self) -> None:
        try:
            self.path.unlink()
            log_message(f"[UPDATE] Maintenance flag cleared: {self.path}", "DEBUG")
        except FileNotFoundError:
            pass
        except OSError as e:
            log_message(f"[UPDATE] Failed to clear maintenance flag {self.path}: {e}", "ERROR")

    def owner_pid(self) -> Optional[int]:
        """Pid recorded by the process that raised the flag, if readable."""
        try:
            lines = self.path.read_text().splitlines()
        except OSError:
            return None
        for line in lines:
            if line.startswith("pid="):
                try:
                    return int(line[4:].strip())
                except ValueError:
                    return None
        return None

    def clear_stale(self) -> bool:
        """
        Remove a flag left behind by a process that is gone.

        A flag owned by another live process, or by this process while an
        update holds the lock, is left alone.

        Returns:
            bool: True if a stale flag was removed
        """
        if not self.is_set():
            return False

        pid = self.owner_pid()
        if pid == os.getpid():
            if UPDATE_LOCK.locked:
                return False
        elif pid is not None and psutil.pid_exists(pid):
            log_message(f"[UPDATE] Maintenance flag held by running process {pid}, leaving it", "DEBUG")
            return False

        log_message(f"[UPDATE] Removing stale maintenance flag {self.path}", "WARNING")
        self.clear()
        return True

    @contextmanager
    def raised(self, reason: str) -> Iterator[None]:
        """Hold the flag for the duration of the block, even on errors."""
        self.set(reason)
        try:
            yield
        finally:
            self.clear()
