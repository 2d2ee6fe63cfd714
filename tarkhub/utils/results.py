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
Result types shared by the update components.

Stages of an update report an Outcome instead of raising, so the state
machine in the artifact updater can branch on the failure kind.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    """Failure taxonomy for fetches, installs and updates."""
    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    AUTH_DENIED = "auth_denied"
    VALIDATION_FAILED = "validation_failed"
    PROCESS_CONTROL_FAILED = "process_control_failed"
    DISK_SPACE_INSUFFICIENT = "disk_space_insufficient"
    INSTALL_FAILED = "install_failed"
    UPDATE_IN_PROGRESS = "update_in_progress"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.TRANSIENT_NETWORK, ErrorKind.RATE_LIMITED)


@dataclass(frozen=True)
class Outcome:
    """Ok(value) | Err(kind, detail)."""
    ok: bool
    value: Any = None
    kind: Optional[ErrorKind] = None
    detail: str = ""

    @classmethod
    def success(cls, value: Any = None) -> 'Outcome':
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: str) -> 'Outcome':
        return cls(ok=False, kind=kind, detail=detail)

    def __bool__(self) -> bool:
        return self.ok
