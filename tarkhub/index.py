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

import argparse
import json
import logging
import os
import sys

from .config import load_settings
from .service import build_service
from .utils.index import log_message

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ROLLBACK_FAILED = 2


def setup_global_update_logging(level=logging.INFO):
    """
    Log to stdout only; the container owns log collection.
    """
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    unified_format = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s',
                                       datefmt='%Y-%m-%d %H:%M:%S')
    console_handler.setFormatter(unified_format)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(console_handler)
    logging.info("="*80)
    logging.info("TARKHUB UPDATE SESSION STARTED")
    logging.info(f"Command: {' '.join(sys.argv)}")
    logging.info(f"Working Directory: {os.getcwd()}")
    logging.info(f"Python Version: {sys.version}")
    logging.info("="*80)


def _log_json(title: str, data: dict) -> None:
    log_message(f"{title}:")
    for line in json.dumps(data, indent=2, default=str).splitlines():
        log_message(f"  {line}")


def check_update(service, kind: str) -> bool:
    info = service.check_update(kind)
    if info.update_available:
        log_message(f"Update available for {kind}: {info.current_version} -> {info.latest_version}")
        log_message(f"  Download: {info.download_url}")
    else:
        log_message(f"{kind} is up to date ({info.current_version})")
    return True


def perform_update(service, kind: str, url=None, version=None) -> int:
    result = service.perform_update(kind, url, version)
    _log_json("Update result", result.to_dict())
    if result.success:
        return EXIT_OK
    if result.requires_manual_intervention:
        log_message("Rollback failed - manual intervention required", "CRITICAL")
        return EXIT_ROLLBACK_FAILED
    return EXIT_FAILED


def main():
    """
    Main entry point for the TarkHub command line.
    """
    parser = argparse.ArgumentParser(description="TarkHub SPT/Fika update manager")
    parser.add_argument("--config", metavar="PATH", default=None,
                       help="Path to an alternative index.json")
    parser.add_argument("--verbose", action="store_true",
                       help="Include debug messages in the output")

    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--check", metavar="KIND",
                       help="Check for an update of 'spt' or 'fika'")
    action.add_argument("--update", metavar="KIND",
                       help="Update 'spt' or 'fika' (latest release unless --url is given)")
    action.add_argument("--install-mod", metavar="URL",
                       help="Install a mod archive (requires --slug)")
    action.add_argument("--uninstall-mod", metavar="SLUG",
                       help="Remove an installed mod and its config files")
    action.add_argument("--mod-status", metavar="SLUG",
                       help="Report whether a mod is installed")
    action.add_argument("--status", action="store_true",
                       help="Show server status")

    parser.add_argument("--url", default=None,
                       help="Archive URL for --update")
    parser.add_argument("--version", dest="version", default=None,
                       help="Version to record for --update")
    parser.add_argument("--slug", default=None,
                       help="Install name for --install-mod")
    parser.add_argument("--mod-id", type=int, default=None,
                       help="Catalog id, also matched in config files by --uninstall-mod")

    args = parser.parse_args()

    if args.install_mod and not args.slug:
        parser.error("--install-mod requires --slug")

    try:
        setup_global_update_logging(logging.DEBUG if args.verbose else logging.INFO)
        service = build_service(load_settings(args.config))

        if args.check:
            success = check_update(service, args.check)
            sys.exit(EXIT_OK if success else EXIT_FAILED)

        elif args.update:
            sys.exit(perform_update(service, args.update, args.url, args.version))

        elif args.install_mod:
            result = service.install_mod(args.install_mod, args.slug)
            _log_json("Install result", result.to_dict())
            sys.exit(EXIT_OK if result.success else EXIT_FAILED)

        elif args.uninstall_mod:
            success = service.uninstall_mod(args.uninstall_mod, args.mod_id)
            sys.exit(EXIT_OK if success else EXIT_FAILED)

        elif args.mod_status:
            installed = service.is_mod_installed(args.mod_status)
            log_message(f"{args.mod_status}: {'installed' if installed else 'not installed'}")
            sys.exit(EXIT_OK if installed else EXIT_FAILED)

        elif args.status:
            _log_json("Server status", service.server_status().to_dict())
            sys.exit(EXIT_OK)

    except KeyboardInterrupt:
        log_message("Interrupted by user", "WARNING")
        sys.exit(130)
    except ValueError as e:
        log_message(str(e), "ERROR")
        sys.exit(EXIT_FAILED)

if __name__ == "__main__":
    main()
