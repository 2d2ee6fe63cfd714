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

import os
import json
from typing import Any, Dict

from tarkhub.config import build_profile, load_settings
from tarkhub.models import ArtifactKind, ArtifactProfile
from tarkhub.service import build_service
from tarkhub.utils.index import log_message


# Load module configuration from index.json
def load_module_config():
    """
    Load configuration from the module's index.json file.
    Returns:
        dict: Configuration data or default values if loading fails
    """
    try:
        config_path = os.path.join(os.path.dirname(__file__), "index.json")
        with open(config_path, 'r') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        log_message(f"Failed to load module config: {e}", "WARNING")
        return {
            "metadata": {
                "schema_version": "1.0.0",
                "module_name": "fika",
                "display_name": "Fika"
            },
            "config": {
                "release_feed": {
                    "url": "https://api.github.com/repos/project-fika/Fika-Server-CSharp/releases",
                    "asset_pattern": r"^fika.*server.*\.zip$",
                    "product_name": "fika"
                },
                "download": {
                    "expected_bytes": 200 * 1024 * 1024,
                    "min_bytes": 100 * 1024
                },
                "version": {
                    "fallback_env": "FIKA_VERSION"
                },
                "install": {
                    "marker_paths": ["SPT/user/mods/fika-server"],
                    "preserved_configs": ["SPT/user/mods/fika-server/assets/configs/fika.jsonc"]
                }
            }
        }

MODULE_CONFIG = load_module_config()


def get_profile() -> ArtifactProfile:
    return build_profile(ArtifactKind.PLUGIN, MODULE_CONFIG)


def verify_fika_installation(runtime_dir: str) -> Dict[str, Any]:
    """Report which Fika marker paths exist under the runtime tree."""
    profile = get_profile()
    markers = {
        marker: os.path.exists(os.path.join(runtime_dir, marker))
        for marker in profile.marker_paths
    }
    return {"installed": any(markers.values()), "markers": markers}


def main(args=None):
    """
    Main entry point for the Fika update module.
    Args:
        args: List of arguments (supports '--check', '--verify', '--config', '--update [URL [VERSION]]')
    Returns:
        dict: Status and results of the update
    """
    if args is None:
        args = []

    profile = get_profile()
    mode = args[0] if args else "--update"

    if mode == "--config":
        log_message("Current Fika module configuration:")
        log_message(f"  Release feed: {profile.feed_url}")
        log_message(f"  Marker paths: {', '.join(profile.marker_paths)}")
        log_message(f"  Preserved configs: {', '.join(profile.preserved_configs)}")
        return {"success": True, "config": MODULE_CONFIG}

    settings = load_settings()

    if mode == "--verify":
        verification = verify_fika_installation(settings.runtime_dir)
        if verification["installed"]:
            log_message("✓ Fika server mod is installed")
        else:
            log_message("✗ Fika server mod not found", "ERROR")
        return {"success": verification["installed"], "verification": verification}

    service = build_service(settings)
    info = service.check_update(profile.kind)

    if mode == "--check":
        if info.update_available:
            log_message(f"Fika update available: {info.current_version} -> {info.latest_version}")
        else:
            log_message(f"OK - Current version: {info.current_version}")
        return {"success": True, **info.to_dict()}

    download_url = args[1] if len(args) > 1 else None
    version = args[2] if len(args) > 2 else None

    if download_url is None and not info.update_available:
        log_message(f"Fika is already at the latest version ({info.current_version})")
        return {"success": True, "updated": False, "version": info.current_version}

    result = service.perform_update(profile.kind, download_url, version)
    return {"updated": result.success, **result.to_dict()}
