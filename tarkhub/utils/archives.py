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
Archive extraction for release and mod downloads.

Formats are detected from file content. Every failure, including damaged
or password-protected members and unsupported compression, is raised as
ArchiveError, and no member may land outside the output directory.
"""

import tarfile
import zipfile
from pathlib import Path
from typing import Iterable, Union

import py7zr
from py7zr.exceptions import ArchiveError as SevenZipError, PasswordRequired

from .index import log_message

ARCHIVE_EXTENSIONS = (".zip", ".7z", ".tar.gz", ".tgz", ".tar.xz", ".tar")

EXTRACTION_ERRORS = (
    zipfile.BadZipFile, tarfile.TarError, SevenZipError, PasswordRequired,
    NotImplementedError, RuntimeError, ValueError, OSError, EOFError,
)


class ArchiveError(Exception):
    """Raised when an archive cannot be identified or extracted."""
    pass


def is_archive_name(name: str) -> bool:
    """Check whether a file name carries one of the supported archive suffixes."""
    lowered = (name or "").lower()
    return any(lowered.endswith(ext) for ext in ARCHIVE_EXTENSIONS)


def detect_format(archive_path: Union[str, Path]) -> str:
    """
    Identify an archive by its content rather than its name.

    Downloads land in temp files whose suffix is not trustworthy.
    """
    path = str(archive_path)
    if zipfile.is_zipfile(path):
        return "zip"
    if py7zr.is_7zfile(path):
        return "7z"
    if tarfile.is_tarfile(path):
        return "tar"
    raise ArchiveError(f"Unsupported or corrupt archive: {archive_path}")


def check_member_paths(names: Iterable[str], output_dir: Union[str, Path]) -> None:
    """Raise ArchiveError if any member name resolves outside ``output_dir``."""
    root = Path(output_dir).resolve()
    for name in names:
        target = (root / name).resolve()
        if target != root and root not in target.parents:
            raise ArchiveError(f"Archive member escapes the extraction directory: {name}")


def extract_archive(archive_path: Union[str, Path], output_dir: Union[str, Path]) -> str:
    """
    Extract a zip, 7z or tar archive into ``output_dir``.

    Returns:
        str: the detected format

    Raises:
        ArchiveError: if the file is not a supported archive, is damaged,
            or has members pointing outside ``output_dir``
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    fmt = detect_format(archive_path)

    try:
        if fmt == "zip":
            with zipfile.ZipFile(archive_path, "r") as zf:
                check_member_paths(zf.namelist(), output_dir)
                zf.extractall(output_dir)
        elif fmt == "7z":
            with py7zr.SevenZipFile(archive_path, "r") as sz:
                check_member_paths(sz.getnames(), output_dir)
                sz.extractall(path=output_dir)
        else:
            with tarfile.open(archive_path, "r:*") as tar:
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(output_dir, filter="data")
                else:
                    members = tar.getmembers()
                    check_member_paths([m.name for m in members], output_dir)
                    if any(m.issym() or m.islnk() for m in members):
                        raise ArchiveError(f"Links are not allowed in {archive_path}")
                    tar.extractall(output_dir)
    except ArchiveError:
        raise
    except EXTRACTION_ERRORS as e:
        raise ArchiveError(f"Failed to extract {archive_path}: {e}") from e

    log_message(f"[FILE] Extracted {fmt} archive to {output_dir}", "DEBUG")
    return fmt
