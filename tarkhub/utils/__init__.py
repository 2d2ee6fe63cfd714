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
Utilities shared by the TarkHub components.
"""

from .index import log_message, slugify, format_uptime
from .results import ErrorKind, Outcome
from .state_manager import StateManager, StateManagerError, BackupSnapshot
from .maintenance import UPDATE_LOCK, UpdateLock, MaintenanceFlag
from .version_store import VersionStore, UNKNOWN_VERSION
from .file_operations import FileOperations, DownloadError
from .archives import ArchiveError, extract_archive
