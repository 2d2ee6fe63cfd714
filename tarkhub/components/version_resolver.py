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
VersionResolver

Turns an upstream release feed into an UpdateInfo for one artifact and
decides whether the latest release is newer than the installed version.
Upstream outages never propagate: they resolve to "no update available".
"""

import json
import re
from typing import Dict, List, Optional, Tuple

from packaging.version import InvalidVersion, Version

from ..models import ArtifactKind, ArtifactProfile, ReleaseCandidate, UpdateInfo
from ..utils.archives import is_archive_name
from ..utils.index import log_message
from ..utils.version_store import UNKNOWN_VERSION, VersionStore
from .fetch_cache import CacheDuration, FetchCache

VERSION_PATTERN = re.compile(r"(?P<version>\d+\.\d+\.\d+)")

USER_AGENT = "TarkHub/1.0"
GITHUB_ACCEPT = "application/vnd.github.v3+json"
GITHUB_TOKEN_HINT = "Consider adding a GITHUB_TOKEN environment variable for higher rate limits"


def extract_version(text: Optional[str]) -> Optional[str]:
    """Pull the first ``x.y.z`` out of a tag, file name or URL."""
    if not text:
        return None
    match = VERSION_PATTERN.search(text)
    return match.group("version") if match else None


def parse_version(version: Optional[str]) -> Optional[Tuple[int, int, int]]:
    """
    Parse a version string into ``(major, minor, patch)``.

    Returns:
        tuple, or None if the string is not a valid version
    """
    if not version:
        return None
    try:
        release = Version(version.strip()).release
    except InvalidVersion:
        return None
    padded = tuple(release) + (0, 0, 0)
    return padded[0], padded[1], padded[2]


def is_newer(latest: Optional[str], current: Optional[str]) -> bool:
    """
    Check whether ``latest`` is newer than ``current``.

    ``unknown`` (or empty) on either side is never newer. Versions that do
    not parse fall back to ordinal string comparison.
    """
    if not latest or not current:
        return False
    if latest.strip().lower() == UNKNOWN_VERSION or current.strip().lower() == UNKNOWN_VERSION:
        return False

    latest_parts = parse_version(latest)
    current_parts = parse_version(current)
    if latest_parts is None or current_parts is None:
        return latest > current
    return latest_parts > current_parts


def _release_candidates(profile: ArtifactProfile, release: dict) -> List[Tuple[str, str]]:
    """(name, url) download candidates, body links first, then assets."""
    candidates = []

    body = release.get("body") or ""
    if isinstance(body, str):
        for pattern in profile.body_link_patterns:
            for match in re.finditer(pattern, body, re.IGNORECASE):
                url = match.group(1).strip()
                candidates.append((url.rsplit("/", 1)[-1], url))

    for asset in release.get("assets") or []:
        if not isinstance(asset, dict):
            continue
        name = asset.get("name")
        url = asset.get("browser_download_url")
        if isinstance(name, str) and isinstance(url, str) and url:
            candidates.append((name, url))

    return candidates


def select_asset(profile: ArtifactProfile, candidates: List[Tuple[str, str]]) -> Optional[Tuple[str, str]]:
    """
    Pick the download for a release.

    Precedence: filename pattern match, then an archive whose name contains
    the product name, then the first archive of any name.
    """
    pattern = re.compile(profile.asset_pattern, re.IGNORECASE)
    for name, url in candidates:
        if pattern.search(name):
            return name, url

    product = profile.product_name.lower()
    for name, url in candidates:
        if product in name.lower() and is_archive_name(name):
            return name, url

    for name, url in candidates:
        if is_archive_name(name):
            return name, url

    return None


def resolve_release(profile: ArtifactProfile, release: dict) -> Optional[ReleaseCandidate]:
    """
    Build the ReleaseCandidate for one release entry.

    Returns:
        ReleaseCandidate, or None when the release offers no archive to install
    """
    asset = select_asset(profile, _release_candidates(profile, release))
    if asset is None:
        return None
    asset_name, asset_url = asset

    tag = release.get("tag_name") or ""
    if not isinstance(tag, str):
        tag = str(tag)
    body = release.get("body") or ""

    version = extract_version(tag) or extract_version(asset_name)
    numeric = version is not None
    if not numeric:
        version = tag.strip() or UNKNOWN_VERSION

    return ReleaseCandidate(
        tag=tag,
        asset_name=asset_name,
        asset_url=asset_url,
        body=body if isinstance(body, str) else "",
        version=version,
        version_is_numeric=numeric,
    )


class VersionResolver:
    """Checks the engine and plugin release feeds against the installed versions."""

    def __init__(self, fetch_cache: FetchCache, version_store: VersionStore,
                 profiles: Dict[ArtifactKind, ArtifactProfile],
                 github_token: Optional[str] = None, max_retries: int = 3):
        self.fetch_cache = fetch_cache
        self.version_store = version_store
        self.profiles = profiles
        self.github_token = github_token or None
        self.max_retries = max_retries

    def profile(self, kind) -> ArtifactProfile:
        return self.profiles[ArtifactKind.parse(kind)]

    def github_headers(self) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT, "Accept": GITHUB_ACCEPT}
        if self.github_token:
            headers["Authorization"] = f"Bearer {self.github_token}"
        return headers

    def current_version(self, kind) -> str:
        return self.version_store.read(self.profile(kind).name)

    def fetch_releases(self, kind) -> Optional[list]:
        """
        Fetch and decode the release feed of an artifact.

        Returns:
            list of release dicts (newest first), or None if unavailable
        """
        profile = self.profile(kind)
        content = self.fetch_cache.fetch(
            profile.feed_url,
            max_retries=self.max_retries,
            duration=CacheDuration.LONG,
            headers=self.github_headers(),
            credentials_hint=None if self.github_token else GITHUB_TOKEN_HINT,
        )
        if not content:
            log_message(f"Failed to fetch {profile.display_name} releases", "WARNING")
            return None

        try:
            releases = json.loads(content)
        except ValueError as e:
            log_message(f"Invalid {profile.display_name} release feed: {e}", "WARNING")
            return None

        if not isinstance(releases, list):
            log_message(f"Unexpected {profile.display_name} release feed shape: {type(releases).__name__}", "WARNING")
            return None
        return releases

    def latest_release(self, kind) -> Optional[ReleaseCandidate]:
        """The newest release with an installable archive, or None."""
        profile = self.profile(kind)
        releases = self.fetch_releases(kind)
        if not releases or not isinstance(releases[0], dict):
            return None

        candidate = resolve_release(profile, releases[0])
        if candidate is None:
            log_message(f"No {profile.display_name} download URL found in release {releases[0].get('tag_name')}", "WARNING")
        return candidate

    def check_update(self, kind) -> UpdateInfo:
        """
        Compare the installed version of an artifact with the latest release.

        Never raises; any failure reports "no update" with latest = current.
        """
        kind = ArtifactKind.parse(kind)
        profile = self.profiles[kind]
        current = self.version_store.read(profile.name)

        try:
            release = self.latest_release(kind)
        except Exception as e:
            log_message(f"Error checking {profile.display_name} updates: {e}", "ERROR")
            release = None

        if release is None:
            return UpdateInfo(kind=kind, update_available=False,
                              current_version=current, latest_version=current)

        update_available = release.version_is_numeric and is_newer(release.version, current)
        if update_available:
            log_message(f"{profile.display_name} update: {current} -> {release.version}")
        else:
            log_message(f"{profile.display_name} is up to date ({current}, latest {release.version})", "DEBUG")

        return UpdateInfo(
            kind=kind,
            update_available=update_available,
            current_version=current,
            latest_version=release.version,
            download_url=release.asset_url,
            release_notes=release.body,
        )
