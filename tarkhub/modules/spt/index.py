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
        # Return default configuration
        return {
            "metadata": {
                "schema_version": "1.0.0",
                "module_name": "spt",
                "display_name": "SPT"
            },
            "config": {
                "release_feed": {
                    "url": "https://api.github.com/repos/sp-tarkov/build/releases",
                    "asset_pattern": r"^SPT-\d+\.\d+\.\d+.*\.7z$",
                    "product_name": "SPT",
                    "body_link_patterns": [
                        r"Direct Download\s+(https?://[^\s]+\.7z)",
                        r"(https?://spt-releases\.modd\.in/SPT-[\w\d\.\-]+\.7z)"
                    ]
                },
                "download": {
                    "expected_bytes": 500 * 1024 * 1024,
                    "min_bytes": 50 * 1024 * 1024
                },
                "version": {
                    "fallback_env": "SPT_VERSION"
                }
            }
        }

# Global configuration
MODULE_CONFIG = load_module_config()


def get_profile() -> ArtifactProfile:
    return build_profile(ArtifactKind.ENGINE, MODULE_CONFIG)


def verify_spt_installation(settings=None) -> Dict[str, Any]:
    """
    Check that the server executable is in place.
    Returns:
        dict: Individual check results
    """
    settings = settings or load_settings()
    executable = settings.executable_path
    return {
        "executable_exists": executable.is_file(),
        "executable_runnable": executable.is_file() and os.access(executable, os.X_OK),
        "working_dir_exists": settings.working_dir_path.is_dir(),
        "executable_path": str(executable),
    }


def main(args=None):
    """
    Main entry point for the SPT update module.
    Args:
        args: List of arguments (supports '--check', '--verify', '--config', '--update [URL [VERSION]]')
    Returns:
        dict: Status and results of the update
    """
    if args is None:
        args = []

    profile = get_profile()
    mode = args[0] if args else "--update"

    # --config mode: show current configuration
    if mode == "--config":
        log_message("Current SPT module configuration:")
        log_message(f"  Release feed: {profile.feed_url}")
        log_message(f"  Asset pattern: {profile.asset_pattern}")
        log_message(f"  Expected download: {profile.expected_download_bytes // (1024 * 1024)} MB")
        return {"success": True, "config": MODULE_CONFIG}

    settings = load_settings()

    # --verify mode: installation checks only
    if mode == "--verify":
        verification = verify_spt_installation(settings)
        success = verification["executable_exists"] and verification["working_dir_exists"]
        if success:
            log_message("✓ SPT installation looks complete")
        else:
            log_message(f"✗ SPT server executable not found at {verification['executable_path']}", "ERROR")
        return {"success": success, "verification": verification}

    service = build_service(settings)
    info = service.check_update(profile.kind)

    # --check mode: version check without side effects
    if mode == "--check":
        if info.update_available:
            log_message(f"SPT update available: {info.current_version} -> {info.latest_version}")
        else:
            log_message(f"OK - Current version: {info.current_version}")
        return {"success": True, **info.to_dict()}

    download_url = args[1] if len(args) > 1 else None
    version = args[2] if len(args) > 2 else None

    if download_url is None and not info.update_available:
        log_message(f"SPT is already at the latest version ({info.current_version})")
        return {"success": True, "updated": False, "version": info.current_version}

    result = service.perform_update(profile.kind, download_url, version)
    return {"updated": result.success, **result.to_dict()}
