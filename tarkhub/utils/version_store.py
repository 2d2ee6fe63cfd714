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

import os
from pathlib import Path
from typing import Dict, Mapping, Optional

from .index import log_message

UNKNOWN_VERSION = "unknown"


class VersionStore:
    """
    Plain-text version files, one per artifact.

    The file is the single source of truth for the installed version. The
    fallback (usually the build-time environment variable) only answers
    while no file exists yet.
    """

    def __init__(self, versions_dir: str, fallbacks: Optional[Mapping[str, str]] = None):
        self.versions_dir = Path(versions_dir)
        self._fallbacks: Dict[str, str] = dict(fallbacks or {})

    def version_file(self, name: str) -> Path:
        return self.versions_dir / f"{name}_version.txt"

    def read(self, name: str) -> str:
        """Get the installed version of an artifact, or ``unknown``."""
        version_file = self.version_file(name)
        try:
            if version_file.exists():
                version = version_file.read_text().strip()
                if version:
                    return version
        except OSError as e:
            log_message(f"Error reading version file {version_file}: {e}", "WARNING")
        return self._fallbacks.get(name) or UNKNOWN_VERSION

    def write(self, name: str, version: str) -> bool:
        """Persist an installed version. Returns False if the write failed."""
        version_file = self.version_file(name)
        try:
            version_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = version_file.with_suffix(".tmp")
            tmp_file.write_text(version)
            os.replace(tmp_file, version_file)
            log_message(f"{name} version saved: {version}", "DEBUG")
            return True
        except OSError as e:
            log_message(f"Error saving {name} version: {e}", "ERROR")
            return False

    def set_fallback(self, name: str, version: str) -> None:
        self._fallbacks[name] = version

    def fallback(self, name: str) -> Optional[str]:
        return self._fallbacks.get(name)
