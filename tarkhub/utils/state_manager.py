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
State Manager for TarkHub updates

Single-snapshot-per-artifact backup of the live runtime tree. Taking a new
snapshot for an artifact clobbers the previous one. A snapshot lives for one
update session: it is moved back into place on rollback and discarded
otherwise.

Usage:
    from tarkhub.utils.state_manager import StateManager

    state_manager = StateManager("/app/user/backups")
    snapshot = state_manager.snapshot("spt", "/app/spt-server")
    ...
    state_manager.restore(snapshot, "/app/spt-server")
"""

import json
import os
import shutil
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from .index import log_message


class StateManagerError(Exception):
    """Custom exception for state manager operation failures."""
    pass


@dataclass
class BackupSnapshot:
    """A full copy of a runtime tree."""
    name: str
    path: str
    source: str
    created_at: float
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupSnapshot':
        return cls(**data)

    def exists(self) -> bool:
        return os.path.isdir(self.path)


class StateManager:
    """
    Full-tree snapshot management.

    Each artifact gets exactly one snapshot slot under the backup root,
    tracked in ``snapshots.json`` so an operator can find a snapshot that
    was left behind by a failed rollback.
    """

    def __init__(self, backup_dir: str = "/app/user/backups"):
        self.backup_root = Path(backup_dir)
        self.index_file = self.backup_root / "snapshots.json"

    def _get_snapshot_dir(self, name: str) -> Path:
        """Get the snapshot directory for a specific artifact."""
        return self.backup_root / f"{name}_backup"

    def _load_index(self) -> Dict[str, BackupSnapshot]:
        """Load the snapshot index."""
        if not self.index_file.exists():
            return {}

        try:
            with open(self.index_file, 'r') as f:
                data = json.load(f)
                return {
                    name: BackupSnapshot.from_dict(entry)
                    for name, entry in data.items()
                }
        except (OSError, ValueError, TypeError) as e:
            log_message(f"[BACKUP] Failed to load snapshot index: {e}", "WARNING")
            return {}

    def _save_index(self, snapshots: Dict[str, BackupSnapshot]) -> None:
        """Save the snapshot index."""
        try:
            self.backup_root.mkdir(parents=True, exist_ok=True)
            with open(self.index_file, 'w') as f:
                json.dump({name: snap.to_dict() for name, snap in snapshots.items()}, f, indent=2)
        except OSError as e:
            log_message(f"[BACKUP] Failed to save snapshot index: {e}", "ERROR")

    def snapshot(self, name: str, source: str, description: str = "") -> Optional[BackupSnapshot]:
        """
        Copy the whole ``source`` tree into this artifact's snapshot slot.

        Args:
            name: Artifact name owning the slot
            source: Live runtime directory
            description: Free text stored in the index

        Returns:
            BackupSnapshot, or None when ``source`` does not exist yet (first install)

        Raises:
            StateManagerError: if the copy fails; the partial snapshot is removed
        """
        source_path = Path(source)
        if not source_path.is_dir():
            log_message(f"[BACKUP] Nothing to back up, {source} does not exist")
            return None

        snapshot_dir = self._get_snapshot_dir(name)

        try:
            if snapshot_dir.exists():
                shutil.rmtree(snapshot_dir)
                log_message(f"[BACKUP] Clobbered previous snapshot for {name}")

            self.backup_root.mkdir(parents=True, exist_ok=True)
            log_message(f"[BACKUP] Copying {source} -> {snapshot_dir}")
            shutil.copytree(source_path, snapshot_dir, symlinks=True)
        except (OSError, shutil.Error) as e:
            if snapshot_dir.exists():
                shutil.rmtree(snapshot_dir, ignore_errors=True)
            raise StateManagerError(f"Failed to snapshot {source}: {e}") from e

        snapshot = BackupSnapshot(
            name=name,
            path=str(snapshot_dir),
            source=str(source_path),
            created_at=time.time(),
            description=description or f"snapshot_{int(time.time())}",
        )

        snapshots = self._load_index()
        snapshots[name] = snapshot
        self._save_index(snapshots)

        log_message(f"[BACKUP] ✓ Snapshot created for {name}")
        return snapshot

    def restore(self, snapshot: BackupSnapshot, target: Optional[str] = None) -> None:
        """
        Replace the live tree with the snapshot.

        The live tree is deleted and the snapshot directory is moved into its
        place, so the snapshot is consumed.

        Raises:
            StateManagerError: if the snapshot is missing or the swap fails
        """
        target_path = Path(target or snapshot.source)
        snapshot_dir = Path(snapshot.path)

        if not snapshot_dir.is_dir():
            raise StateManagerError(f"Snapshot directory not found: {snapshot_dir}")

        try:
            if target_path.exists():
                shutil.rmtree(target_path)
            target_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(snapshot_dir), str(target_path))
        except (OSError, shutil.Error) as e:
            raise StateManagerError(f"Failed to restore {target_path} from {snapshot_dir}: {e}") from e

        self._forget(snapshot.name)
        log_message(f"[BACKUP] ✓ Restored {target_path} from snapshot")

    def discard(self, snapshot: BackupSnapshot) -> bool:
        """
        Delete a snapshot that is no longer needed.

        Returns:
            bool: True if nothing is left on disk
        """
        snapshot_dir = Path(snapshot.path)
        try:
            if snapshot_dir.exists():
                shutil.rmtree(snapshot_dir)
            self._forget(snapshot.name)
            log_message(f"[BACKUP] Discarded snapshot for {snapshot.name}", "DEBUG")
            return True
        except OSError as e:
            log_message(f"[BACKUP] Failed to discard snapshot {snapshot_dir}: {e}", "WARNING")
            return False

    def _forget(self, name: str) -> None:
        snapshots = self._load_index()
        if name in snapshots:
            del snapshots[name]
            self._save_index(snapshots)

    def get_snapshot(self, name: str) -> Optional[BackupSnapshot]:
        """
        Get the recorded snapshot for an artifact, if it still exists on disk.
        """
        snapshot = self._load_index().get(name)
        if snapshot and snapshot.exists():
            return snapshot
        return None

    def list_snapshots(self) -> Dict[str, BackupSnapshot]:
        """List all recorded snapshots."""
        return self._load_index()
