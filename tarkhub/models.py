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
Data model shared by the TarkHub components.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Tuple


class ArtifactKind(Enum):
    """The two versioned runtime artifacts."""
    ENGINE = "spt"
    PLUGIN = "fika"

    @classmethod
    def parse(cls, value) -> 'ArtifactKind':
        """Accept an ArtifactKind, its value ("spt"/"fika") or its role ("engine"/"plugin")."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for kind in cls:
            if text in (kind.value, kind.name.lower()):
                return kind
        raise ValueError(f"Unknown artifact kind: {value!r}")


@dataclass(frozen=True)
class ArtifactProfile:
    """Per-artifact configuration, loaded from the artifact module's index.json."""
    kind: ArtifactKind
    display_name: str
    feed_url: str
    asset_pattern: str
    product_name: str
    expected_download_bytes: int
    min_download_bytes: int
    fallback_env: str
    body_link_patterns: Tuple[str, ...] = ()
    marker_paths: Tuple[str, ...] = ()
    preserved_configs: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def validates_install(self) -> bool:
        return bool(self.marker_paths)


@dataclass(frozen=True)
class ReleaseCandidate:
    """The latest upstream release as seen by one version check."""
    tag: str
    asset_name: str
    asset_url: str
    body: str
    version: str
    version_is_numeric: bool


@dataclass
class UpdateInfo:
    """Installed vs latest version of one artifact."""
    kind: ArtifactKind
    update_available: bool
    current_version: str
    latest_version: str
    download_url: str = ""
    release_notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass
class ModPackage:
    """One catalog mod at its current release."""
    id: int
    name: str
    version: str
    download_url: str
    install_slug: str
    spt_version_constraint: str = "N/A"
    detail_url: str = ""
    thumbnail: str = ""
    teaser: str = ""
    content_length: str = "0 MB"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EngineVersion:
    """An engine release known to the mod catalog."""
    version: str
    version_major: int = 0
