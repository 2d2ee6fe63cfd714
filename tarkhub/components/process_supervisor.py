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
ProcessSupervisor

Start, stop and liveness checks for the managed SPT server process.
Processes are found by executable name through psutil; there is no pid
file and no restart loop.
"""

import os
import stat
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import psutil

from ..utils.index import log_message

DEFAULT_LISTEN_ARGS = ("--port", "6970", "--ip", "0.0.0.0")

# Linux truncates /proc/<pid>/comm to 15 characters
KERNEL_NAME_LENGTH = 15


class ProcessSupervisor:
    """Controls the server executable inside the runtime tree."""

    def __init__(self, executable: str, working_dir: str, process_name: Optional[str] = None,
                 listen_args: Sequence[str] = DEFAULT_LISTEN_ARGS,
                 warmup_seconds: float = 5.0, stop_timeout: float = 10.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.executable = Path(executable)
        self.working_dir = Path(working_dir)
        self.process_name = process_name or self.executable.name
        self.listen_args = list(listen_args)
        self.warmup_seconds = warmup_seconds
        self.stop_timeout = stop_timeout
        self._sleep = sleep

    def _matches(self, info: dict) -> bool:
        name = info.get("name") or ""
        if name in (self.process_name, self.process_name[:KERNEL_NAME_LENGTH]):
            return True
        cmdline = info.get("cmdline") or []
        return bool(cmdline) and os.path.basename(cmdline[0]) == self.process_name

    def _find_processes(self) -> List[psutil.Process]:
        found = []
        for proc in psutil.process_iter(["name", "cmdline", "create_time"]):
            try:
                if self._matches(proc.info):
                    found.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return found

    def is_running(self) -> bool:
        return bool(self._find_processes())

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Terminate every matching process, force-killing the ones that ignore SIGTERM.

        Returns:
            bool: True if no matching process remains
        """
        timeout = self.stop_timeout if timeout is None else timeout
        processes = self._find_processes()
        if not processes:
            log_message("[PROC] Server is not running")
            return True

        log_message(f"[PROC] Stopping {self.process_name} ({len(processes)} process(es))")
        for proc in processes:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                log_message(f"[PROC] Cannot signal pid {proc.pid}: {e}", "WARNING")

        _, alive = psutil.wait_procs(processes, timeout=timeout)
        if alive:
            log_message(f"[PROC] {len(alive)} process(es) ignored SIGTERM, killing", "WARNING")
            self._kill_all(alive, timeout)

        if self.is_running():
            log_message(f"[PROC] ✗ {self.process_name} still running after kill", "ERROR")
            return False

        log_message("[PROC] ✓ Server stopped")
        return True

    def kill(self) -> bool:
        """
        Force-kill every matching process.

        Returns:
            bool: True if no matching process remains
        """
        processes = self._find_processes()
        if processes:
            self._kill_all(processes, self.stop_timeout)
        if self.is_running():
            log_message(f"[PROC] ✗ Force kill of {self.process_name} was ineffective", "ERROR")
            return False
        return True

    def _kill_all(self, processes: List[psutil.Process], timeout: float) -> None:
        for proc in processes:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                log_message(f"[PROC] Cannot kill pid {proc.pid}: {e}", "ERROR")
        psutil.wait_procs(processes, timeout=timeout)

    def start(self, args: Optional[Sequence[str]] = None) -> bool:
        """
        Launch the server detached and wait for its warm-up interval.

        Returns:
            bool: True if the process was spawned
        """
        if not self.executable.is_file():
            log_message(f"[PROC] ✗ Server executable not found: {self.executable}", "ERROR")
            return False

        try:
            mode = self.executable.stat().st_mode
            if not mode & stat.S_IXUSR:
                self.executable.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
                log_message(f"[PROC] Made {self.executable.name} executable", "DEBUG")

            command = [str(self.executable)] + list(self.listen_args if args is None else args)
            log_message(f"[PROC] Starting: {' '.join(command)}")
            process = subprocess.Popen(
                command,
                cwd=str(self.working_dir),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            log_message(f"[PROC] ✗ Failed to start server: {e}", "ERROR")
            return False

        self._sleep(self.warmup_seconds)
        log_message(f"[PROC] ✓ Server started (pid {process.pid})")
        return True

    def uptime_seconds(self) -> float:
        """Seconds since the oldest matching process started, 0 when stopped."""
        created = []
        for proc in self._find_processes():
            try:
                created.append(proc.info.get("create_time") or proc.create_time())
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        if not created:
            return 0.0
        return max(0.0, time.time() - min(created))
