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
Configuration loading for TarkHub.

Settings come from ``tarkhub/index.json`` (or the file named by
``TARKHUB_CONFIG``), fall back to built-in defaults when that file is
missing or broken, and are finally overridden by environment variables.
"""

import copy
import importlib
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .models import ArtifactKind, ArtifactProfile
from .utils.index import log_message

CONFIG_PATH = Path(__file__).parent / "index.json"

DEFAULT_CONFIG = {
    "metadata": {
        "schema_version": "1.0.0",
        "module_name": "tarkhub"
    },
    "config": {
        "directories": {
            "runtime_dir": "/app/spt-server",
            "versions_dir": "/app/user/versions",
            "backup_dir": "/app/user/backups",
            "temp_dir": None,
            "maintenance_flag": "/tmp/updating.flag"
        },
        "server": {
            "executable": "SPT/SPT.Server.Linux",
            "working_dir": "SPT",
            "listen_args": ["--port", "6970", "--ip", "0.0.0.0"],
            "warmup_seconds": 5,
            "stop_timeout": 10,
            "settle_seconds": 2
        },
        "network": {
            "metadata_timeout": 30,
            "download_timeout": 600,
            "max_concurrent_requests": 2,
            "min_request_interval": 0.5,
            "max_retries": 3,
            "forge_base_url": "https://forge.sp-tarkov.com/api/v0"
        },
        "modules": ["spt", "fika"]
    }
}

# Environment variable -> (config section, key)
DIRECTORY_OVERRIDES = {
    "TARKHUB_RUNTIME_DIR": "runtime_dir",
    "TARKHUB_VERSIONS_DIR": "versions_dir",
    "TARKHUB_TEMP_DIR": "temp_dir",
    "TARKHUB_BACKUP_DIR": "backup_dir",
}


@dataclass
class Settings:
    runtime_dir: str = "/app/spt-server"
    versions_dir: str = "/app/user/versions"
    backup_dir: str = "/app/user/backups"
    temp_dir: Optional[str] = None
    maintenance_flag: str = "/tmp/updating.flag"
    server_executable: str = "SPT/SPT.Server.Linux"
    server_working_dir: str = "SPT"
    listen_args: List[str] = field(default_factory=lambda: ["--port", "6970", "--ip", "0.0.0.0"])
    warmup_seconds: float = 5.0
    stop_timeout: float = 10.0
    settle_seconds: float = 2.0
    metadata_timeout: float = 30.0
    download_timeout: float = 600.0
    max_concurrent_requests: int = 2
    min_request_interval: float = 0.5
    max_retries: int = 3
    forge_base_url: str = "https://forge.sp-tarkov.com/api/v0"
    github_token: Optional[str] = None
    forge_api_key: Optional[str] = None
    version_fallbacks: Dict[str, str] = field(default_factory=dict)
    modules: List[str] = field(default_factory=lambda: ["spt", "fika"])

    @property
    def executable_path(self) -> Path:
        return Path(self.runtime_dir) / self.server_executable

    @property
    def working_dir_path(self) -> Path:
        return Path(self.runtime_dir) / self.server_working_dir

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        data = dict(self.__dict__)
        if redact:
            for secret in ("github_token", "forge_api_key"):
                if data.get(secret):
                    data[secret] = "***"
        return data


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load index.json merged over the built-in defaults.

    Returns:
        dict: Configuration data, or the defaults if loading fails
    """
    path = Path(config_path) if config_path else CONFIG_PATH
    try:
        with open(path, 'r') as f:
            return _merge(DEFAULT_CONFIG, json.load(f))
    except (OSError, ValueError) as e:
        log_message(f"Failed to load config {path}: {e}, using defaults", "WARNING")
        return copy.deepcopy(DEFAULT_CONFIG)


def load_settings(config_path: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from the config file and the environment.

    Args:
        config_path: Explicit config file; defaults to $TARKHUB_CONFIG, then the packaged index.json
        environ: Environment mapping, os.environ by default
    """
    environ = os.environ if environ is None else environ
    data = load_config_file(config_path or environ.get("TARKHUB_CONFIG"))["config"]

    directories = dict(data["directories"])
    for env_name, key in DIRECTORY_OVERRIDES.items():
        if environ.get(env_name):
            directories[key] = environ[env_name]

    server = data["server"]
    network = data["network"]

    modules = list(data.get("modules") or ["spt", "fika"])
    fallbacks = {
        profile.name: environ[profile.fallback_env]
        for profile in load_profiles(modules).values()
        if environ.get(profile.fallback_env)
    }

    return Settings(
        runtime_dir=directories["runtime_dir"],
        versions_dir=directories["versions_dir"],
        backup_dir=directories["backup_dir"],
        temp_dir=directories.get("temp_dir") or None,
        maintenance_flag=directories["maintenance_flag"],
        server_executable=server["executable"],
        server_working_dir=server["working_dir"],
        listen_args=[str(arg) for arg in server["listen_args"]],
        warmup_seconds=float(server["warmup_seconds"]),
        stop_timeout=float(server["stop_timeout"]),
        settle_seconds=float(server["settle_seconds"]),
        metadata_timeout=float(network["metadata_timeout"]),
        download_timeout=float(network["download_timeout"]),
        max_concurrent_requests=int(network["max_concurrent_requests"]),
        min_request_interval=float(network["min_request_interval"]),
        max_retries=int(network["max_retries"]),
        forge_base_url=network["forge_base_url"],
        github_token=environ.get("GITHUB_TOKEN") or None,
        forge_api_key=environ.get("FORGE_API_KEY") or None,
        version_fallbacks=fallbacks,
        modules=modules,
    )


def build_profile(kind: ArtifactKind, module_config: Dict[str, Any]) -> ArtifactProfile:
    """Turn an artifact module's index.json into an ArtifactProfile."""
    metadata = module_config.get("metadata", {})
    config = module_config.get("config", {})
    feed = config.get("release_feed", {})
    download = config.get("download", {})
    install = config.get("install", {})

    return ArtifactProfile(
        kind=kind,
        display_name=metadata.get("display_name", kind.value.upper()),
        feed_url=feed["url"],
        asset_pattern=feed["asset_pattern"],
        product_name=feed.get("product_name", kind.value),
        expected_download_bytes=int(download.get("expected_bytes", 0)),
        min_download_bytes=int(download.get("min_bytes", 1)),
        fallback_env=config.get("version", {}).get("fallback_env", f"{kind.value.upper()}_VERSION"),
        body_link_patterns=tuple(feed.get("body_link_patterns", ())),
        marker_paths=tuple(install.get("marker_paths", ())),
        preserved_configs=tuple(install.get("preserved_configs", ())),
    )


def load_profiles(modules: Optional[List[str]] = None) -> Dict[ArtifactKind, ArtifactProfile]:
    """Profiles of the artifact modules, keyed by kind."""
    profiles = {}
    for name in modules or [kind.value for kind in ArtifactKind]:
        module = importlib.import_module(f".modules.{name}.index", package=__package__)
        profile = module.get_profile()
        profiles[profile.kind] = profile
    return profiles
