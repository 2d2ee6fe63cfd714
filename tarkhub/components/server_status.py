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
ServerStatus

Lightweight status snapshot of the managed server: installed engine
version, liveness, uptime and a rough player count taken from profile
files and the newest server log.
"""

import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from ..utils.index import format_uptime, log_message
from ..utils.version_store import VersionStore
from .process_supervisor import ProcessSupervisor

PROFILES_DIR = Path("SPT/user/profiles")
LOGS_DIR = Path("SPT/user/logs")

PROFILE_NAME_PATTERN = re.compile(r"^[a-f0-9]+$")
WEBSOCKET_PATTERN = re.compile(r"/notifierServer/getwebsocket/([a-f0-9]{20,})")
LOGOUT_MARKER = "/client/game/logout"
LOG_TAIL_LINES = 50


@dataclass
class ServerStatus:
    installed_version: str
    is_running: bool
    uptime: str
    players: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installed_version": self.installed_version,
            "is_running": self.is_running,
            "uptime": self.uptime,
            "players": self.players,
            "timestamp": self.timestamp.isoformat(),
        }


class ServerStatusReader:
    """Builds ServerStatus snapshots for one runtime tree."""

    def __init__(self, runtime_dir: str, supervisor: ProcessSupervisor,
                 version_store: VersionStore, version_name: str = "spt"):
        self.runtime_dir = Path(runtime_dir)
        self.supervisor = supervisor
        self.version_store = version_store
        self.version_name = version_name

    def read(self) -> ServerStatus:
        is_running = self.supervisor.is_running()
        uptime = format_uptime(self.supervisor.uptime_seconds()) if is_running else "0s"
        return ServerStatus(
            installed_version=self.version_store.read(self.version_name),
            is_running=is_running,
            uptime=uptime,
            players=self.players(),
        )

    def known_profiles(self) -> int:
        profiles_dir = self.runtime_dir / PROFILES_DIR
        if not profiles_dir.is_dir():
            log_message(f"Profiles directory not found: {profiles_dir}", "DEBUG")
            return 0
        return sum(
            1 for path in profiles_dir.glob("*.json")
            if path.is_file() and PROFILE_NAME_PATTERN.match(path.stem)
        )

    def connected_players(self) -> int:
        """
        1 if the newest log shows a websocket connect and no logout, else 0.

        Only the tail of the log is inspected, so this is a hint and not a
        session count.
        """
        logs_dir = self.runtime_dir / LOGS_DIR
        if not logs_dir.is_dir():
            return 0

        logs = [path for path in logs_dir.rglob("spt*.log") if path.is_file()]
        if not logs:
            return 0
        newest = max(logs, key=lambda path: path.stat().st_mtime)

        try:
            with open(newest, "r", encoding="utf-8", errors="ignore") as f:
                tail = deque(f, maxlen=LOG_TAIL_LINES)
        except OSError as e:
            log_message(f"Error reading server log {newest}: {e}", "WARNING")
            return 0

        if any(LOGOUT_MARKER in line for line in tail):
            return 0
        return 1 if any(WEBSOCKET_PATTERN.search(line) for line in tail) else 0

    def players(self) -> str:
        return f"{self.connected_players()}/{self.known_profiles()}"
