import asyncio
import json
import os
import sys

import pytest

import tarkhub
from tarkhub import index as cli
from tarkhub.components.fetch_cache import FetchCache, get_fetch_cache
from tarkhub.components.server_status import ServerStatusReader
from tarkhub.components.version_resolver import USER_AGENT
from tarkhub.config import load_settings
from tarkhub.models import ArtifactKind
from tarkhub.service import build_service
from tarkhub.utils.results import ErrorKind
from tarkhub.utils.version_store import VersionStore

from conftest import FakeResponse, FakeSession, FakeSupervisor, make_zip, write_tree

ENGINE_FEED = "https://api.github.com/repos/sp-tarkov/build/releases"
PLUGIN_FEED = "https://api.github.com/repos/project-fika/Fika-Server-CSharp/releases"
FORGE = "https://forge.sp-tarkov.com/api/v0"


@pytest.fixture
def settings(tmp_path):
    return load_settings(environ={
        "TARKHUB_RUNTIME_DIR": str(tmp_path / "spt-server"),
        "TARKHUB_VERSIONS_DIR": str(tmp_path / "versions"),
        "TARKHUB_BACKUP_DIR": str(tmp_path / "backups"),
        "TARKHUB_TEMP_DIR": str(tmp_path),
        "FORGE_API_KEY": "forge",
    })


@pytest.fixture
def http():
    return FakeSession()


@pytest.fixture
def service(settings, http, tmp_path):
    settings.maintenance_flag = str(tmp_path / "updating.flag")
    return build_service(settings, session=http, supervisor=FakeSupervisor(running=False),
                         fetch_cache=FetchCache(session=http, sleep=lambda s: None))


def releases(tag, asset):
    return FakeResponse(200, json.dumps([{
        "tag_name": tag,
        "body": "",
        "assets": [{"name": asset, "browser_download_url": f"https://dl/{asset}"}],
    }]))


def test_check_update_accepts_names(service, http):
    service.version_store.write("spt", "3.9.0")
    http.add(ENGINE_FEED, releases("v4.0.1", "SPT-4.0.1-40087.7z"))

    info = service.check_update("spt")

    assert info.kind == ArtifactKind.ENGINE
    assert info.update_available


def test_check_updates_async(service, http):
    service.version_store.write("spt", "4.0.1")
    service.version_store.write("fika", "1.0.0")
    http.add(ENGINE_FEED, releases("v4.0.1", "SPT-4.0.1-40087.7z"))
    http.add(PLUGIN_FEED, releases("v1.1.0", "Fika.Server.Release.1.1.0.zip"))

    results = asyncio.run(service.check_updates_async())

    assert results["spt"].update_available is False
    assert results["fika"].update_available is True


def test_perform_update_without_url_and_nothing_new(service, http):
    service.version_store.write("fika", "1.1.0")
    http.add(PLUGIN_FEED, releases("v1.1.0", "Fika.Server.Release.1.1.0.zip"))

    result = service.perform_update("fika")

    assert not result
    assert result.error_kind == ErrorKind.VALIDATION_FAILED


def test_install_catalog_mod(service, http, settings):
    http.add(f"{FORGE}/mod/7", FakeResponse(200, json.dumps({"data": {"id": 7, "name": "Cool Mod"}})))
    http.add(f"{FORGE}/mod/7/versions?page=1", FakeResponse(200, json.dumps({
        "data": [{"version": "1.0.0", "link": "https://forge/dl/cool.zip"}],
        "meta": {"last_page": 1},
    })))
    http.add("https://forge/dl/cool.zip", FakeResponse(200, content=make_zip({"BepInEx/plugins/CoolMod/Cool.dll": "x"})))

    result = service.install_catalog_mod("https://forge.sp-tarkov.com/mod/7/cool-mod")

    assert result
    assert service.is_mod_installed("cool-mod")
    assert os.path.isdir(os.path.join(settings.runtime_dir, "BepInEx/plugins/cool-mod"))
    assert service.uninstall_mod("cool-mod", package_id=7)
    assert not service.is_mod_installed("cool-mod")


def test_install_catalog_mod_unknown(service, http):
    result = service.install_catalog_mod(404)

    assert not result
    assert result.error_kind == ErrorKind.TRANSIENT_NETWORK


def test_install_catalog_mod_without_api_key(service, http):
    service.catalog.api_key = None

    result = service.install_catalog_mod(7)

    assert result.error_kind == ErrorKind.AUTH_DENIED
    assert http.calls == []


def test_stale_flag_cleared_on_start(settings, http, tmp_path):
    flag = tmp_path / "updating.flag"
    flag.write_text("left over")
    settings.maintenance_flag = str(flag)

    build_service(settings, session=http, supervisor=FakeSupervisor(running=False))

    assert not flag.exists()


def test_flag_of_other_running_process_survives_start(settings, http, tmp_path):
    flag = tmp_path / "updating.flag"
    flag.write_text(f"spt update\npid={os.getppid()}\nsince=0\n")
    settings.maintenance_flag = str(flag)

    build_service(settings, session=http, supervisor=FakeSupervisor(running=False))

    assert flag.exists()


def test_services_share_one_fetch_cache(settings, http, tmp_path):
    settings.maintenance_flag = str(tmp_path / "updating.flag")

    first = build_service(settings, session=http, supervisor=FakeSupervisor(running=False))
    second = build_service(settings, supervisor=FakeSupervisor(running=False))

    assert first.fetch_cache is second.fetch_cache
    assert first.fetch_cache is get_fetch_cache()
    assert first.fetch_cache.session.headers["User-Agent"] == USER_AGENT


def test_server_status(tmp_path):
    runtime = write_tree(tmp_path / "spt-server", {
        "SPT/user/profiles/6612ab34cd56ef7890123456.json": "{}",
        "SPT/user/profiles/aabbcc.json": "{}",
        "SPT/user/profiles/notes.json": "{}",
        "SPT/user/logs/spt/spt-2025-01-01.log": "\n".join([
            "boot",
            "[INFO] /notifierServer/getwebsocket/6612ab34cd56ef7890123456",
        ]),
    })
    versions = VersionStore(str(tmp_path / "versions"))
    versions.write("spt", "4.0.1")

    status = ServerStatusReader(str(runtime), FakeSupervisor(running=True), versions).read()

    assert status.installed_version == "4.0.1"
    assert status.is_running
    assert status.uptime == "1h 2m"
    assert status.players == "1/2"


def test_logout_means_nobody_connected(tmp_path):
    runtime = write_tree(tmp_path / "spt-server", {
        "SPT/user/logs/spt.log": "/notifierServer/getwebsocket/6612ab34cd56ef7890123456\n/client/game/logout\n",
    })
    reader = ServerStatusReader(str(runtime), FakeSupervisor(running=False), VersionStore(str(tmp_path)))

    status = reader.read()

    assert status.players == "0/0"
    assert status.uptime == "0s"
    assert status.installed_version == "unknown"


def test_run_update_config_mode():
    result = tarkhub.run_update("spt", ["--config"])

    assert result["success"] is True
    assert result["config"]["metadata"]["module_name"] == "spt"


def test_run_update_unknown_module():
    assert tarkhub.run_update("nope", ["--check"]) is None


def test_cli_exit_codes():
    class Result:
        success = False
        requires_manual_intervention = True

        def to_dict(self):
            return {"success": False}

    class Service:
        def perform_update(self, kind, url, version):
            return Result()

    assert cli.perform_update(Service(), "spt") == cli.EXIT_ROLLBACK_FAILED
    Result.requires_manual_intervention = False
    assert cli.perform_update(Service(), "spt") == cli.EXIT_FAILED
    Result.success = True
    assert cli.perform_update(Service(), "spt") == cli.EXIT_OK


def test_cli_mod_status(monkeypatch, settings, http, tmp_path):
    settings.maintenance_flag = str(tmp_path / "updating.flag")
    monkeypatch.setattr(cli, "load_settings", lambda path=None: settings)
    monkeypatch.setattr(cli, "build_service",
                        lambda s: build_service(s, session=http, supervisor=FakeSupervisor(running=False)))
    monkeypatch.setattr(cli, "setup_global_update_logging", lambda level=None: None)
    monkeypatch.setattr(sys, "argv", ["tarkhub", "--mod-status", "missing-mod"])

    with pytest.raises(SystemExit) as exit_info:
        cli.main()

    assert exit_info.value.code == cli.EXIT_FAILED
