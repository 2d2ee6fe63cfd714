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

import json
import logging
import os
import re

LOGGER_NAME = "tarkhub"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

def log_message(message, level="INFO"):
    """
    Log a message through the shared tarkhub logger.
    Args:
        message (str): The message to log.
        level (str): Log level (e.g., 'INFO', 'ERROR').
    """
    logging.getLogger(LOGGER_NAME).log(_LEVELS.get(level.upper(), logging.INFO), message)

def slugify(name: str) -> str:
    """
    Derive the filesystem-safe, lower-case install slug for a package name.

    Runs of characters outside ``[a-z0-9._-]`` collapse to a single dash, so
    "SAIN - Solarint's AI" becomes "sain-solarint-s-ai".

    Raises:
        ValueError: if nothing usable is left of the name
    """
    slug = re.sub(r"[^a-z0-9._-]+", "-", (name or "").strip().lower())
    slug = re.sub(r"-{2,}", "-", slug).strip("-.")
    if not slug:
        raise ValueError(f"Cannot derive an install slug from {name!r}")
    return slug

def is_safe_slug(slug: str) -> bool:
    """Check that a slug is a single, non-traversing path component."""
    if not slug or slug in (".", ".."):
        return False
    return re.fullmatch(r"[A-Za-z0-9._-]+", slug) is not None

def format_uptime(seconds: float) -> str:
    """Render an uptime the way the status panel shows it (``2d 3h``, ``5m 12s``)."""
    seconds = max(0, int(seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"

def get_module_version(module_path):
    """
    Read the schema version from a module's index.json.
    Returns:
        str: The version, or "0.0.0" if it cannot be read
    """
    try:
        with open(os.path.join(module_path, "index.json"), "r") as f:
            return json.load(f).get("metadata", {}).get("schema_version", "0.0.0")
    except (OSError, ValueError) as e:
        log_message(f"Could not read module version from {module_path}: {e}", "DEBUG")
        return "0.0.0"
