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
File Operations

Copy and delete helpers used by the artifact updater and the mod installer:
- Overlay copies that overwrite but never delete
- Bounded retries for files still locked by a just-stopped server
- Streamed archive downloads into temporary files
"""

import os
import shutil
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Union

import requests

from .index import log_message

PathLike = Union[str, Path]

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class DownloadError(Exception):
    """Raised when an archive download does not complete with a 2xx status."""
    pass


class FileOperations:
    """Retrying copy/delete primitives for the live runtime tree."""

    def __init__(self, attempts: int = 3, delay: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.attempts = max(1, attempts)
        self.delay = delay
        self._sleep = sleep

    def copy_file(self, source: PathLike, target: PathLike) -> None:
        """
        Copy one file, retrying when the target is held by another process.

        Raises:
            OSError: the last error once all attempts are used up
        """
        for attempt in range(1, self.attempts + 1):
            try:
                shutil.copy2(source, target)
                return
            except OSError as e:
                if attempt == self.attempts:
                    log_message(f"[FILE] ✗ Copy failed after {attempt} attempts: {source} -> {target}: {e}", "ERROR")
                    raise
                log_message(f"[FILE] File in use, retrying ({attempt}/{self.attempts}): {target}", "DEBUG")
                self._sleep(self.delay)

    def overlay_copy(self, source_dir: PathLike, target_dir: PathLike) -> int:
        """
        Copy a directory tree onto another one.

        Existing files are overwritten and nothing outside the source paths
        is removed.

        Returns:
            int: number of files copied
        """
        source_dir = Path(source_dir)
        target_dir = Path(target_dir)
        copied = 0

        for root, dirs, files in os.walk(source_dir):
            dirs.sort()
            rel_root = Path(root).relative_to(source_dir)
            destination = target_dir / rel_root
            if destination.exists() and not destination.is_dir():
                destination.unlink()
            destination.mkdir(parents=True, exist_ok=True)

            for file_name in sorted(files):
                target_file = destination / file_name
                if target_file.is_dir() and not target_file.is_symlink():
                    shutil.rmtree(target_file)
                self.copy_file(Path(root) / file_name, target_file)
                copied += 1

        return copied

    def delete_path(self, path: PathLike) -> bool:
        """
        Delete a file or directory tree, retrying with a growing delay.

        Returns:
            bool: True if the path is gone afterwards
        """
        path = Path(path)
        for attempt in range(1, self.attempts + 1):
            if not path.exists() and not path.is_symlink():
                return True
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                else:
                    path.unlink()
                return True
            except OSError as e:
                if attempt == self.attempts:
                    log_message(f"[FILE] ✗ Failed to delete {path} after {attempt} attempts: {e}", "ERROR")
                    return False
                log_message(f"[FILE] Delete failed (attempt {attempt}), retrying: {e}", "WARNING")
                self._sleep(self.delay * attempt)
        return False

    def replace_directory(self, source: PathLike, target: PathLike) -> None:
        """
        Move ``source`` to ``target``, deleting whatever was at ``target``.

        Raises:
            OSError: if the old target cannot be removed or the move fails
        """
        target = Path(target)
        if not self.delete_path(target):
            raise OSError(f"Could not remove existing directory {target}")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))


def download_to_file(session, url: str, destination: PathLike,
                     headers: Optional[Dict[str, str]] = None,
                     timeout: float = 600) -> int:
    """
    Stream ``url`` into ``destination``.

    Args:
        session: requests.Session (or compatible) used for the GET
        url: Archive URL
        destination: File to write
        headers: Optional extra request headers
        timeout: Read timeout in seconds; archive downloads take minutes

    Returns:
        int: number of bytes written

    Raises:
        DownloadError: on a non-2xx status or a transport failure
    """
    written = 0
    try:
        with session.get(url, headers=headers, stream=True, timeout=(30, timeout)) as response:
            if not 200 <= response.status_code < 300:
                raise DownloadError(f"Download failed: HTTP {response.status_code} for {url}")
            with open(destination, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
    except requests.RequestException as e:
        raise DownloadError(f"Download failed for {url}: {e}") from e
    return written
