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
ModInstaller

Installs third-party mod archives into the runtime tree. Mods ship with
wildly different folder layouts; every package is normalised so that it
ends up as exactly one ``<slug>`` directory under each recognized root:

    SPT/user/mods/<slug>      server mods
    BepInEx/plugins/<slug>    client plugins

Anything else in the archive is copied over the runtime tree as-is.
"""

import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests

from ..models import ModPackage
from ..utils.archives import ArchiveError, extract_archive
from ..utils.file_operations import DownloadError, FileOperations, download_to_file
from ..utils.index import is_safe_slug, log_message
from ..utils.results import ErrorKind

SERVER_MODS_ROOT = Path("SPT/user/mods")
CLIENT_PLUGINS_ROOT = Path("BepInEx/plugins")
RECOGNIZED_ROOTS = (SERVER_MODS_ROOT, CLIENT_PLUGINS_ROOT)

CONFIG_DIRS = (Path("BepInEx/config"), Path("SPT/user/configs"))

# Config files bigger than this are matched by name only
MAX_CONFIG_SCAN_BYTES = 1024 * 1024


@dataclass
class ModInstallResult:
    """Outcome of one mod install."""
    success: bool
    slug: str
    message: str = ""
    error_kind: Optional[ErrorKind] = None
    installed_paths: List[str] = field(default_factory=list)
    mod_type: str = "unknown"

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "slug": self.slug,
            "message": self.message,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "installed_paths": list(self.installed_paths),
            "mod_type": self.mod_type,
        }


def detect_mod_type(tree: Path) -> str:
    """'server', 'client', 'both' or 'unknown' depending on the roots present."""
    has_server = (tree / SERVER_MODS_ROOT).is_dir()
    has_client = (tree / CLIENT_PLUGINS_ROOT).is_dir()
    if has_server and has_client:
        return "both"
    if has_server:
        return "server"
    if has_client:
        return "client"
    return "unknown"


def _reference_patterns(install_slug: str, package_id: Optional[int] = None):
    """
    Patterns for config files that belong to a mod.

    File names may reference the slug or the catalog id as a whole word.
    Contents must name the slug, or carry the id as an id value
    (`"id": 12`, `modId = 12`, `/mod/12`); a bare number is not enough.
    """
    word = r"(?<![A-Za-z0-9_])(?:{})(?![A-Za-z0-9_])"
    name_terms = [re.escape(install_slug)]
    content_terms = [word.format(re.escape(install_slug))]
    if package_id is not None:
        mod_id = re.escape(str(package_id))
        name_terms.append(mod_id)
        content_terms.append(
            r"(?:\b(?:mod_?)?id[\"']?\s*[:=]\s*[\"']?|/mods?/)" + mod_id + r"(?![0-9])"
        )
    name_pattern = re.compile(word.format("|".join(name_terms)), re.IGNORECASE)
    content_pattern = re.compile("|".join(content_terms), re.IGNORECASE)
    return name_pattern, content_pattern


class ModInstaller:
    """Download, normalise and install mod packages."""

    def __init__(self, runtime_dir: str, session: Optional[requests.Session] = None,
                 file_ops: Optional[FileOperations] = None, temp_dir: Optional[str] = None,
                 headers: Optional[Dict[str, str]] = None, download_timeout: float = 600):
        self.runtime_dir = Path(runtime_dir)
        self.session = session or requests.Session()
        self.file_ops = file_ops or FileOperations()
        self.temp_dir = temp_dir
        self.headers = headers or {}
        self.download_timeout = download_timeout

    def install_package(self, package: ModPackage) -> ModInstallResult:
        """Install a catalog package under its slug."""
        log_message(f"[MOD] Installing {package.name} {package.version} as '{package.install_slug}'")
        return self.install(package.download_url, package.install_slug)

    def install(self, download_url: str, install_slug: str) -> ModInstallResult:
        """
        Download an archive and install it under ``install_slug``.

        Re-installing the same slug replaces the previous files instead of
        merging with them.

        Returns:
            ModInstallResult, truthy on success
        """
        if not is_safe_slug(install_slug):
            return ModInstallResult(
                success=False, slug=install_slug,
                message=f"Invalid install name: {install_slug!r}",
                error_kind=ErrorKind.VALIDATION_FAILED,
            )

        work_dir = Path(tempfile.mkdtemp(prefix=f"mod_{install_slug}_", dir=self.temp_dir))
        try:
            file_name = os.path.basename(urlparse(download_url).path) or "package"
            archive_path = work_dir / file_name

            try:
                size = download_to_file(self.session, download_url, archive_path,
                                        headers=self.headers, timeout=self.download_timeout)
            except DownloadError as e:
                return self._failure(install_slug, ErrorKind.TRANSIENT_NETWORK, str(e))

            if size == 0:
                return self._failure(install_slug, ErrorKind.VALIDATION_FAILED, "Downloaded file is empty")

            staging = work_dir / "staging"
            try:
                extract_archive(archive_path, staging)
            except ArchiveError as e:
                return self._failure(install_slug, ErrorKind.VALIDATION_FAILED, str(e))

            try:
                return self._install_tree(staging, install_slug)
            except OSError as e:
                return self._failure(install_slug, ErrorKind.INSTALL_FAILED, f"Install failed: {e}")
        finally:
            self.file_ops.delete_path(work_dir)

    def _failure(self, slug: str, kind: ErrorKind, message: str) -> ModInstallResult:
        log_message(f"[MOD] ✗ {slug}: {message}", "ERROR")
        return ModInstallResult(success=False, slug=slug, message=message, error_kind=kind)

    def _unwrap(self, staging: Path) -> Path:
        """Descend into a lone wrapper directory that holds the real layout."""
        entries = list(staging.iterdir())
        if len(entries) == 1 and entries[0].is_dir():
            wrapper = entries[0]
            if any((wrapper / root).is_dir() for root in RECOGNIZED_ROOTS):
                log_message(f"[MOD] Unwrapping top-level folder {wrapper.name}", "DEBUG")
                return wrapper
        return staging

    def _assemble(self, package_root: Path, slug: str) -> Optional[Path]:
        """
        Gather everything under ``package_root`` into ``package_root/<slug>``.

        Returns:
            Path of the slug directory, or None if the root is empty
        """
        children = sorted(package_root.iterdir())
        if not children:
            return None

        target = package_root / slug
        if len(children) == 1 and children[0].is_dir():
            if children[0].name != slug:
                children[0].rename(target)
                log_message(f"[MOD] Renamed {children[0].name} -> {slug}", "DEBUG")
            return target

        holding = package_root / f".{slug}.assembling"
        holding.mkdir()
        for child in children:
            child.rename(holding / child.name)
        holding.rename(target)
        log_message(f"[MOD] Wrapped {len(children)} entries into {slug}", "DEBUG")
        return target

    def _install_tree(self, staging: Path, slug: str) -> ModInstallResult:
        tree = self._unwrap(staging)
        mod_type = detect_mod_type(tree)
        installed = []

        for rel_root in RECOGNIZED_ROOTS:
            package_root = tree / rel_root
            if not package_root.is_dir():
                continue

            assembled = self._assemble(package_root, slug)
            if assembled is None:
                continue

            live = self.runtime_dir / rel_root / slug
            self.file_ops.replace_directory(assembled, live)
            self.file_ops.delete_path(package_root)
            installed.append(str(live))
            log_message(f"[MOD] Installed {rel_root / slug}")

        has_other_files = any(path.is_file() for path in tree.rglob("*"))
        if not installed and not has_other_files:
            return self._failure(slug, ErrorKind.VALIDATION_FAILED, "Archive contains no installable files")

        if has_other_files:
            if not installed:
                log_message(f"[MOD] {slug} has no SPT/ or BepInEx/ layout, copying files as-is", "WARNING")
            copied = self.file_ops.overlay_copy(tree, self.runtime_dir)
            log_message(f"[MOD] Copied {copied} additional files into {self.runtime_dir}", "DEBUG")

        log_message(f"[MOD] ✓ {slug} installed ({mod_type})")
        return ModInstallResult(
            success=True, slug=slug,
            message=f"Mod '{slug}' installed successfully",
            installed_paths=installed, mod_type=mod_type,
        )

    def is_installed(self, install_slug: str) -> bool:
        if not is_safe_slug(install_slug):
            return False
        return any((self.runtime_dir / root / install_slug).is_dir() for root in RECOGNIZED_ROOTS)

    def uninstall(self, install_slug: str, package_id: Optional[int] = None) -> bool:
        """
        Remove a mod and the config files that belong to it.

        Args:
            install_slug: Directory name the mod was installed under
            package_id: Catalog id, also matched against config files

        Returns:
            bool: True if anything was removed
        """
        if not is_safe_slug(install_slug):
            log_message(f"[MOD] Refusing to uninstall invalid name {install_slug!r}", "ERROR")
            return False

        removed = False
        for root in RECOGNIZED_ROOTS:
            path = self.runtime_dir / root / install_slug
            if path.exists() and self.file_ops.delete_path(path):
                log_message(f"[MOD] Removed {root / install_slug}")
                removed = True

        name_pattern, content_pattern = _reference_patterns(install_slug, package_id)

        for config_dir in CONFIG_DIRS:
            base = self.runtime_dir / config_dir
            if not base.is_dir():
                continue
            for path in sorted(base.rglob("*")):
                if path.is_file() and self._references(path, name_pattern, content_pattern):
                    if self.file_ops.delete_path(path):
                        log_message(f"[MOD] Removed config {path.relative_to(self.runtime_dir)}")
                        removed = True

        if not removed:
            log_message(f"[MOD] Nothing to uninstall for {install_slug}")
        return removed

    @staticmethod
    def _references(path: Path, name_pattern, content_pattern) -> bool:
        if name_pattern.search(path.name):
            return True
        try:
            if path.stat().st_size > MAX_CONFIG_SCAN_BYTES:
                return False
            return bool(content_pattern.search(path.read_text(encoding="utf-8", errors="ignore")))
        except OSError as e:
            log_message(f"[MOD] Could not read {path}: {e}", "WARNING")
            return False
