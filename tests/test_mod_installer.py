import pytest

from tarkhub.components.mod_installer import ModInstaller, detect_mod_type
from tarkhub.models import ModPackage
from tarkhub.utils.file_operations import FileOperations
from tarkhub.utils.results import ErrorKind

from conftest import FakeResponse, FakeSession, make_zip, tree_state, with_compression_method, write_tree

URL = "https://forge.example/downloads/mod.zip"


@pytest.fixture
def runtime(tmp_path):
    return write_tree(tmp_path / "spt-server", {"SPT/SPT.Server.Linux": "bin"})


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def installer(runtime, session, tmp_path):
    (tmp_path / "tmp").mkdir()
    return ModInstaller(str(runtime), session=session,
                        file_ops=FileOperations(sleep=lambda s: None),
                        temp_dir=str(tmp_path / "tmp"))


def serve(session, files, url=URL):
    session.add(url, FakeResponse(200, content=make_zip(files)))


def test_single_plugin_folder_is_renamed_to_slug(installer, session, runtime):
    serve(session, {"BepInEx/plugins/MyMod/MyMod.dll": "dll"})

    result = installer.install(URL, "my-mod")

    assert result
    assert result.mod_type == "client"
    assert (runtime / "BepInEx/plugins/my-mod/MyMod.dll").read_text() == "dll"
    assert not (runtime / "BepInEx/plugins/MyMod").exists()


def test_loose_plugin_files_are_wrapped(installer, session, runtime):
    serve(session, {
        "BepInEx/plugins/a.dll": "a",
        "BepInEx/plugins/b.dll": "b",
    })

    assert installer.install(URL, "pair")
    assert sorted(p.name for p in (runtime / "BepInEx/plugins/pair").iterdir()) == ["a.dll", "b.dll"]
    assert not (runtime / "BepInEx/plugins/a.dll").exists()


def test_wrapper_directory_is_unwrapped(installer, session, runtime):
    serve(session, {
        "SuperMod-1.2.0/SPT/user/mods/SuperModServer/package.json": "{}",
        "SuperMod-1.2.0/BepInEx/plugins/SuperMod.dll": "client",
    })

    result = installer.install(URL, "supermod")

    assert result.mod_type == "both"
    assert (runtime / "SPT/user/mods/supermod/package.json").exists()
    assert (runtime / "BepInEx/plugins/supermod/SuperMod.dll").exists()
    assert not (runtime / "SuperMod-1.2.0").exists()
    assert len(result.installed_paths) == 2


def test_other_files_are_copied_verbatim(installer, session, runtime):
    serve(session, {
        "SPT/user/mods/Thing/src/mod.js": "js",
        "BepInEx/config/com.thing.cfg": "cfg",
    })

    assert installer.install(URL, "thing")
    assert (runtime / "SPT/user/mods/thing/src/mod.js").exists()
    assert (runtime / "BepInEx/config/com.thing.cfg").read_text() == "cfg"


def test_reinstall_replaces_instead_of_merging(installer, session, runtime):
    serve(session, {"BepInEx/plugins/MyMod/old.dll": "1", "BepInEx/plugins/MyMod/keep.dll": "1"})
    installer.install(URL, "my-mod")

    url2 = "https://forge.example/downloads/mod-2.zip"
    serve(session, {"BepInEx/plugins/MyMod/keep.dll": "2"}, url=url2)
    installer.install(url2, "my-mod")

    files = sorted(p.name for p in (runtime / "BepInEx/plugins/my-mod").iterdir())
    assert files == ["keep.dll"]
    assert (runtime / "BepInEx/plugins/my-mod/keep.dll").read_text() == "2"


def test_install_is_idempotent(installer, session, runtime):
    serve(session, {"SPT/user/mods/Mod/package.json": "{}", "BepInEx/plugins/Mod.dll": "x"})

    installer.install(URL, "mod")
    first = tree_state(runtime)
    installer.install(URL, "mod")

    assert tree_state(runtime) == first


def test_installed_then_uninstalled(installer, session, runtime):
    serve(session, {"BepInEx/plugins/MyMod/MyMod.dll": "dll"})

    assert installer.is_installed("my-mod") is False
    installer.install(URL, "my-mod")
    assert installer.is_installed("my-mod") is True
    assert installer.uninstall("my-mod") is True
    assert installer.is_installed("my-mod") is False


def test_uninstall_sweeps_related_configs(installer, runtime):
    write_tree(runtime, {
        "BepInEx/plugins/my-mod/MyMod.dll": "dll",
        "BepInEx/config/com.author.my-mod.cfg": "x",
        "SPT/user/configs/settings.json": '{"modId": 4321}',
        "SPT/user/configs/4321.json": "{}",
        "SPT/user/configs/unrelated.json": '{"value": 43210, "name": "my-modder"}',
    })

    assert installer.uninstall("my-mod", package_id=4321)

    assert not (runtime / "BepInEx/plugins/my-mod").exists()
    assert not (runtime / "BepInEx/config/com.author.my-mod.cfg").exists()
    assert not (runtime / "SPT/user/configs/settings.json").exists()
    assert not (runtime / "SPT/user/configs/4321.json").exists()
    assert (runtime / "SPT/user/configs/unrelated.json").exists()


def test_uninstall_ignores_bare_numbers_in_configs(installer, runtime):
    write_tree(runtime, {
        "SPT/user/mods/sain/package.json": "{}",
        "BepInEx/config/com.other.bots.cfg": "[Spawning]\nMaxBots = 5\n",
        "SPT/user/configs/tracked.json": '{"modId": 5}',
        "SPT/user/configs/link.txt": "https://forge.sp-tarkov.com/mod/5/",
        "SPT/user/configs/versions.json": '{"id": 55, "count": 5}',
    })

    assert installer.uninstall("sain", package_id=5)

    assert (runtime / "BepInEx/config/com.other.bots.cfg").exists()
    assert (runtime / "SPT/user/configs/versions.json").exists()
    assert not (runtime / "SPT/user/configs/tracked.json").exists()
    assert not (runtime / "SPT/user/configs/link.txt").exists()


def test_uninstall_of_missing_mod(installer):
    assert installer.uninstall("ghost") is False


@pytest.mark.parametrize("slug", ["../evil", "a/b", "", ".."])
def test_unsafe_slug_is_rejected(installer, session, slug):
    result = installer.install(URL, slug)

    assert result.error_kind == ErrorKind.VALIDATION_FAILED
    assert session.calls == []
    assert installer.is_installed(slug) is False


def test_download_failure(installer, session):
    session.add(URL, FakeResponse(404))

    result = installer.install(URL, "mod")

    assert not result
    assert result.error_kind == ErrorKind.TRANSIENT_NETWORK


def test_empty_download(installer, session):
    session.add(URL, FakeResponse(200, content=b""))

    assert installer.install(URL, "mod").error_kind == ErrorKind.VALIDATION_FAILED


def test_empty_archive(installer, session, runtime):
    before = tree_state(runtime)
    serve(session, {"BepInEx/plugins/": ""})

    result = installer.install(URL, "mod")

    assert result.error_kind == ErrorKind.VALIDATION_FAILED
    assert tree_state(runtime) == before


def test_unsupported_compression_is_reported(installer, session, runtime):
    before = tree_state(runtime)
    broken = with_compression_method(make_zip({"BepInEx/plugins/MyMod/MyMod.dll": "dll"}), 99)
    session.add(URL, FakeResponse(200, content=broken))

    result = installer.install(URL, "my-mod")

    assert not result
    assert result.error_kind == ErrorKind.VALIDATION_FAILED
    assert tree_state(runtime) == before


def test_temp_files_are_removed(installer, session, tmp_path):
    serve(session, {"BepInEx/plugins/MyMod/MyMod.dll": "dll"})

    installer.install(URL, "my-mod")

    assert list((tmp_path / "tmp").iterdir()) == []


def test_install_package_uses_slug(installer, session, runtime):
    serve(session, {"SPT/user/mods/SAIN/package.json": "{}"})
    package = ModPackage(id=7, name="SAIN - Solarint's AI", version="3.0.0",
                         download_url=URL, install_slug="sain-solarint-s-ai")

    assert installer.install_package(package)
    assert installer.is_installed("sain-solarint-s-ai")


def test_detect_mod_type(tmp_path):
    assert detect_mod_type(tmp_path) == "unknown"
    (tmp_path / "SPT/user/mods").mkdir(parents=True)
    assert detect_mod_type(tmp_path) == "server"
