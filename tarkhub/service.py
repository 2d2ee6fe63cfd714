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
UpdateService

Facade over the TarkHub components. The HTTP layer, the CLI and the
artifact modules all go through this class.

Usage:
    from tarkhub.service import build_service

    service = build_service()
    info = service.check_update("spt")
    if info.update_available:
        service.perform_update("spt", info.download_url, info.latest_version)
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional

import requests

from .components.artifact_updater import ArtifactUpdater, UpdateResult, UpdateStage
from .components.fetch_cache import FetchCache, get_fetch_cache
from .components.mod_catalog import ModCatalog, extract_mod_id
from .components.mod_installer import ModInstaller, ModInstallResult
from .components.process_supervisor import ProcessSupervisor
from .components.server_status import ServerStatus, ServerStatusReader
from .components.version_resolver import USER_AGENT, VersionResolver
from .config import Settings, load_profiles, load_settings
from .models import ArtifactKind, ArtifactProfile, ModPackage, UpdateInfo
from .utils.file_operations import FileOperations
from .utils.index import log_message
from .utils.maintenance import MaintenanceFlag
from .utils.results import ErrorKind
from .utils.state_manager import StateManager
from .utils.version_store import UNKNOWN_VERSION, VersionStore


class UpdateService:
    """Engine/plugin updates, mod installs and server status for one installation."""

    def __init__(self, settings: Settings, profiles: Dict[ArtifactKind, ArtifactProfile],
                 fetch_cache: Optional[FetchCache] = None,
                 session: Optional[requests.Session] = None,
                 supervisor: Optional[ProcessSupervisor] = None,
                 version_store: Optional[VersionStore] = None,
                 state_manager: Optional[StateManager] = None,
                 maintenance_flag: Optional[MaintenanceFlag] = None,
                 file_ops: Optional[FileOperations] = None):
        self.settings = settings
        self.profiles = profiles
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)

        self.fetch_cache = fetch_cache or get_fetch_cache(
            max_concurrent=settings.max_concurrent_requests,
            min_interval=settings.min_request_interval,
            timeout=settings.metadata_timeout,
        )
        self.fetch_cache.session.headers.setdefault("User-Agent", USER_AGENT)
        self.version_store = version_store or VersionStore(settings.versions_dir, settings.version_fallbacks)
        self.state_manager = state_manager or StateManager(settings.backup_dir)
        self.maintenance_flag = maintenance_flag or MaintenanceFlag(settings.maintenance_flag)
        self.file_ops = file_ops or FileOperations()
        self.supervisor = supervisor or ProcessSupervisor(
            executable=str(settings.executable_path),
            working_dir=str(settings.working_dir_path),
            listen_args=settings.listen_args,
            warmup_seconds=settings.warmup_seconds,
            stop_timeout=settings.stop_timeout,
        )

        self.resolver = VersionResolver(
            self.fetch_cache, self.version_store, profiles,
            github_token=settings.github_token, max_retries=settings.max_retries,
        )
        self.catalog = ModCatalog(
            self.fetch_cache, api_key=settings.forge_api_key,
            base_url=settings.forge_base_url, max_retries=settings.max_retries,
        )
        self.installer = ModInstaller(
            settings.runtime_dir, session=self.session, file_ops=self.file_ops,
            temp_dir=settings.temp_dir, headers=self.catalog.headers(),
            download_timeout=settings.download_timeout,
        )
        self.status_reader = ServerStatusReader(
            settings.runtime_dir, self.supervisor, self.version_store,
            version_name=ArtifactKind.ENGINE.value,
        )
        self.updaters = {
            kind: ArtifactUpdater(
                profile, settings.runtime_dir, self.supervisor, self.version_store,
                self.state_manager, file_ops=self.file_ops, session=self.session,
                temp_dir=settings.temp_dir, maintenance_flag=self.maintenance_flag,
                settle_seconds=settings.settle_seconds, stop_timeout=settings.stop_timeout,
                download_timeout=settings.download_timeout,
            )
            for kind, profile in profiles.items()
        }

        self.maintenance_flag.clear_stale()

    # Engine and plugin updates

    def check_update(self, kind) -> UpdateInfo:
        return self.resolver.check_update(ArtifactKind.parse(kind))

    async def check_updates_async(self, max_workers: Optional[int] = None) -> Dict[str, UpdateInfo]:
        """
        Check every artifact concurrently using a thread pool.

        Returns:
            dict: Artifact name -> UpdateInfo
        """
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            loop = asyncio.get_running_loop()
            kinds = list(self.profiles)
            futures = [loop.run_in_executor(executor, self.check_update, kind) for kind in kinds]
            results = await asyncio.gather(*futures)
        return {kind.value: info for kind, info in zip(kinds, results)}

    def perform_update(self, kind, download_url: Optional[str] = None,
                       version: Optional[str] = None) -> UpdateResult:
        """
        Update an artifact.

        Without ``download_url`` the latest release is looked up first and
        installed only if it is newer than the installed version.
        """
        kind = ArtifactKind.parse(kind)
        if not download_url:
            info = self.check_update(kind)
            if not info.update_available or not info.download_url:
                return UpdateResult(
                    kind=kind, success=False, stage=UpdateStage.IDLE,
                    error_kind=ErrorKind.VALIDATION_FAILED,
                    message=f"No {self.profiles[kind].display_name} update available",
                    version=info.current_version,
                )
            download_url = info.download_url
            version = version or info.latest_version

        return self.updaters[kind].update(download_url, version)

    # Mods

    def install_mod(self, download_url: str, slug: str) -> ModInstallResult:
        return self.installer.install(download_url, slug)

    def is_mod_installed(self, slug: str) -> bool:
        return self.installer.is_installed(slug)

    def uninstall_mod(self, slug: str, package_id: Optional[int] = None) -> bool:
        return self.installer.uninstall(slug, package_id)

    def fetch_mod(self, mod_id) -> Optional[ModPackage]:
        """Catalog package for a mod id or a mod page URL."""
        text = str(mod_id)
        mod_id = text if text.isdigit() else extract_mod_id(text)
        if mod_id is None:
            log_message(f"[CATALOG] Not a mod URL: {text}", "WARNING")
            return None
        return self.catalog.fetch_package(mod_id)

    def install_catalog_mod(self, mod_id) -> ModInstallResult:
        if not self.catalog.configured:
            return ModInstallResult(
                success=False, slug=str(mod_id),
                message="Mod catalog is not configured, set FORGE_API_KEY",
                error_kind=ErrorKind.AUTH_DENIED,
            )
        package = self.fetch_mod(mod_id)
        if package is None:
            return ModInstallResult(
                success=False, slug=str(mod_id),
                message="Mod not found or API error",
                error_kind=ErrorKind.TRANSIENT_NETWORK,
            )
        if not package.download_url:
            return ModInstallResult(
                success=False, slug=package.install_slug,
                message=f"No download available for {package.name}",
                error_kind=ErrorKind.VALIDATION_FAILED,
            )
        return self.installer.install_package(package)

    # Status

    def server_status(self) -> ServerStatus:
        try:
            return self.status_reader.read()
        except (OSError, ValueError) as e:
            log_message(f"Error getting server status: {e}", "ERROR")
            return ServerStatus(installed_version=UNKNOWN_VERSION, is_running=False, uptime="0s", players="0/0")


def build_service(settings: Optional[Settings] = None, **components) -> UpdateService:
    """Wire an UpdateService from settings, loading them from index.json if needed."""
    settings = settings or load_settings()
    return UpdateService(settings, load_profiles(settings.modules), **components)
