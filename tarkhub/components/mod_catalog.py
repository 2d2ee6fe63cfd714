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
ModCatalog

Client for the Forge mod catalog (forge.sp-tarkov.com). Version lists are
paginated oldest-first, so the current release of a mod is the last entry
of the last page.
"""

import json
import re
from typing import Any, List, Optional, Tuple

from packaging.version import InvalidVersion, Version

from ..models import EngineVersion, ModPackage
from ..utils.index import log_message, slugify
from .fetch_cache import CacheDuration, FetchCache

DEFAULT_BASE_URL = "https://forge.sp-tarkov.com/api/v0"
DEFAULT_DETAIL_URL = "https://forge.sp-tarkov.com/mod/{mod_id}"

MOD_ID_PATTERN = re.compile(r"/mod/(\d+)")


def extract_mod_id(url: str) -> Optional[str]:
    """Catalog id from a mod page URL such as ``https://forge.sp-tarkov.com/mod/123/name``."""
    match = MOD_ID_PATTERN.search(url or "")
    return match.group(1) if match else None


def format_megabytes(content_length) -> str:
    try:
        megabytes = int(content_length) / (1024.0 * 1024.0)
    except (TypeError, ValueError):
        return "0 MB"
    return f"{megabytes:.1f} MB"


def _version_key(version: str) -> Tuple[int, Any]:
    try:
        return 1, Version(version)
    except InvalidVersion:
        return 0, version


class ModCatalog:
    """Read-only view of the Forge catalog, cached through the shared FetchCache."""

    def __init__(self, fetch_cache: FetchCache, api_key: Optional[str] = None,
                 base_url: str = DEFAULT_BASE_URL, max_retries: int = 3):
        self.fetch_cache = fetch_cache
        self.api_key = api_key or None
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries

    @property
    def configured(self) -> bool:
        return self.api_key is not None

    def headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _get_json(self, path: str) -> Optional[dict]:
        url = f"{self.base_url}{path}"
        content = self.fetch_cache.fetch(
            url,
            max_retries=self.max_retries,
            duration=CacheDuration.SHORT,
            headers=self.headers(),
            credentials_hint="Check the FORGE_API_KEY environment variable",
        )
        if not content:
            return None
        try:
            data = json.loads(content)
        except ValueError as e:
            log_message(f"[CATALOG] Invalid JSON from {url}: {e}", "WARNING")
            return None
        return data if isinstance(data, dict) else None

    def _last_page_entries(self, path: str) -> Optional[list]:
        """Entries of the last page of a paginated listing."""
        first = self._get_json(f"{path}?page=1")
        if first is None:
            return None

        try:
            last_page = int((first.get("meta") or {}).get("last_page", 1))
        except (TypeError, ValueError):
            last_page = 1

        page = first if last_page <= 1 else self._get_json(f"{path}?page={last_page}")
        if page is None:
            return None
        entries = page.get("data")
        return entries if isinstance(entries, list) else None

    def _current_release(self, mod_id) -> Optional[dict]:
        entries = self._last_page_entries(f"/mod/{mod_id}/versions")
        if not entries:
            log_message(f"[CATALOG] No versions found for mod {mod_id}", "WARNING")
            return None
        latest = entries[-1]
        return latest if isinstance(latest, dict) else None

    def fetch_package(self, mod_id) -> Optional[ModPackage]:
        """
        Metadata and current release of a catalog mod.

        Returns:
            ModPackage, or None if the mod or its versions cannot be fetched
        """
        base = self._get_json(f"/mod/{mod_id}")
        data = base.get("data") if base else None
        if not isinstance(data, dict):
            log_message(f"[CATALOG] Mod {mod_id} not found", "WARNING")
            return None

        release = self._current_release(mod_id)
        if release is None:
            return None

        name = data.get("name") or "Unknown"
        try:
            slug = slugify(name)
        except ValueError:
            slug = f"mod-{mod_id}"

        package = ModPackage(
            id=int(data.get("id") or mod_id),
            name=name,
            version=release.get("version") or "0.0.0",
            download_url=release.get("link") or "",
            install_slug=slug,
            spt_version_constraint=release.get("spt_version_constraint") or "N/A",
            detail_url=data.get("detail_url") or DEFAULT_DETAIL_URL.format(mod_id=mod_id),
            thumbnail=data.get("thumbnail") or "",
            teaser=data.get("teaser") or "",
            content_length=format_megabytes(release.get("content_length")),
        )
        log_message(f"[CATALOG] {package.name} {package.version}: {package.download_url}")
        return package

    def latest_version(self, mod_id) -> Optional[str]:
        release = self._current_release(mod_id)
        return release.get("version") if release else None

    def engine_versions(self) -> List[EngineVersion]:
        """Engine versions known to the catalog, newest first."""
        entries = self._last_page_entries("/spt/versions") or []
        versions = []
        for item in entries:
            if not isinstance(item, dict):
                continue
            try:
                major = int(item.get("version_major") or 0)
            except (TypeError, ValueError):
                major = 0
            versions.append(EngineVersion(version=item.get("version") or "N/A", version_major=major))

        versions.sort(key=lambda v: (v.version_major, _version_key(v.version)), reverse=True)
        return versions

    def validate_api_key(self) -> bool:
        if not self.configured:
            log_message("[CATALOG] No FORGE_API_KEY configured", "WARNING")
            return False
        return self._get_json("/spt/versions?page=1") is not None
