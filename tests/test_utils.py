import io
import tarfile

import py7zr
import pytest

from tarkhub.utils.archives import ArchiveError, detect_format, extract_archive, is_archive_name
from tarkhub.utils.file_operations import FileOperations
from tarkhub.utils.index import format_uptime, is_safe_slug, slugify
from tarkhub.utils.maintenance import MaintenanceFlag, UPDATE_LOCK, UpdateLock
from tarkhub.utils.results import ErrorKind, Outcome
from tarkhub.utils.state_manager import StateManager, StateManagerError
from tarkhub.utils.version_store import VersionStore

from conftest import make_zip, tree_state, with_compression_method, write_tree


@pytest.mark.parametrize("name,slug", [
    ("MyMod", "mymod"),
    ("SAIN - Solarint's AI", "sain-solarint-s-ai"),
    ("Fika.Server", "fika.server"),
    ("  Realism Mod (SPT 4.0)  ", "realism-mod-spt-4.0"),
])
def test_slugify(name, slug):
    assert slugify(name) == slug
    assert is_safe_slug(slug)


def test_slugify_rejects_empty_result():
    with pytest.raises(ValueError):
        slugify("!!!")


@pytest.mark.parametrize("seconds,text", [
    (0, "0s"),
    (42, "42s"),
    (125, "2m 5s"),
    (3725, "1h 2m"),
    (2 * 86400 + 3 * 3600 + 59, "2d 3h"),
])
def test_format_uptime(seconds, text):
    assert format_uptime(seconds) == text


def test_outcome_truthiness():
    assert Outcome.success(3)
    failure = Outcome.failure(ErrorKind.RATE_LIMITED, "slow down")
    assert not failure
    assert failure.kind.retryable
    assert not ErrorKind.AUTH_DENIED.retryable


def test_version_store_file_beats_fallback(tmp_path):
    store = VersionStore(str(tmp_path), fallbacks={"spt": "3.9.0"})
    assert store.read("spt") == "3.9.0"
    assert store.read("fika") == "unknown"

    assert store.write("spt", "4.0.1")
    assert store.read("spt") == "4.0.1"
    assert (tmp_path / "spt_version.txt").read_text() == "4.0.1"


def test_update_lock_is_exclusive():
    lock = UpdateLock()
    assert lock.acquire("spt")
    assert not lock.acquire("fika")
    assert lock.owner == "spt"
    lock.release()
    assert lock.acquire("fika")
    lock.release()


def test_maintenance_flag_lifecycle(tmp_path):
    flag = MaintenanceFlag(str(tmp_path / "updating.flag"))

    with pytest.raises(RuntimeError):
        with flag.raised("spt update"):
            assert flag.is_set()
            assert "spt update" in flag.path.read_text()
            raise RuntimeError("boom")

    assert not flag.is_set()


def test_stale_flag_is_cleared_only_when_idle(tmp_path):
    flag = MaintenanceFlag(str(tmp_path / "updating.flag"))
    flag.set("crashed run")

    assert UPDATE_LOCK.acquire("spt")
    try:
        assert flag.clear_stale() is False
        assert flag.is_set()
    finally:
        UPDATE_LOCK.release()

    assert flag.clear_stale() is True
    assert not flag.is_set()


def test_flag_of_live_process_is_kept(tmp_path, monkeypatch):
    flag = MaintenanceFlag(str(tmp_path / "updating.flag"))
    flag.path.write_text("fika update\npid=424242\nsince=0\n")
    monkeypatch.setattr("tarkhub.utils.maintenance.psutil.pid_exists", lambda pid: pid == 424242)

    assert flag.owner_pid() == 424242
    assert flag.clear_stale() is False
    assert flag.is_set()


def test_flag_of_dead_process_is_cleared(tmp_path, monkeypatch):
    flag = MaintenanceFlag(str(tmp_path / "updating.flag"))
    flag.path.write_text("fika update\npid=424242\nsince=0\n")
    monkeypatch.setattr("tarkhub.utils.maintenance.psutil.pid_exists", lambda pid: False)

    assert flag.clear_stale() is True
    assert not flag.is_set()


def test_overlay_copy_overwrites_but_never_deletes(tmp_path):
    source = write_tree(tmp_path / "src", {"a/one.txt": "new", "b/two.txt": "2"})
    target = write_tree(tmp_path / "dst", {"a/one.txt": "old", "a/keep.txt": "keep"})

    copied = FileOperations(sleep=lambda s: None).overlay_copy(source, target)

    assert copied == 2
    assert tree_state(target) == {
        "a": "<dir>",
        "a/keep.txt": b"keep",
        "a/one.txt": b"new",
        "b": "<dir>",
        "b/two.txt": b"2",
    }


def test_copy_file_retries_then_succeeds(tmp_path, monkeypatch):
    import tarkhub.utils.file_operations as fo

    source = write_tree(tmp_path, {"f.txt": "x"}) / "f.txt"
    real_copy = fo.shutil.copy2
    attempts = []

    def flaky_copy(src, dst):
        attempts.append(1)
        if len(attempts) < 3:
            raise PermissionError("busy")
        return real_copy(src, dst)

    monkeypatch.setattr(fo.shutil, "copy2", flaky_copy)
    delays = []
    FileOperations(attempts=3, delay=1.0, sleep=delays.append).copy_file(source, tmp_path / "g.txt")

    assert len(attempts) == 3
    assert delays == [1.0, 1.0]
    assert (tmp_path / "g.txt").read_text() == "x"


def test_copy_file_gives_up(tmp_path, monkeypatch):
    import tarkhub.utils.file_operations as fo

    def always_busy(src, dst):
        raise PermissionError("busy")

    monkeypatch.setattr(fo.shutil, "copy2", always_busy)
    with pytest.raises(OSError):
        FileOperations(sleep=lambda s: None).copy_file(tmp_path / "a", tmp_path / "b")


def test_delete_path(tmp_path):
    ops = FileOperations(sleep=lambda s: None)
    tree = write_tree(tmp_path / "tree", {"x/y.txt": "y"})

    assert ops.delete_path(tree)
    assert not tree.exists()
    assert ops.delete_path(tmp_path / "never-existed")


def test_snapshot_and_restore(tmp_path):
    live = write_tree(tmp_path / "live", {"SPT/a.txt": "a", "SPT/user/b.txt": "b"})
    before = tree_state(live)
    manager = StateManager(str(tmp_path / "backups"))

    snapshot = manager.snapshot("spt", str(live))
    write_tree(live, {"SPT/a.txt": "changed", "SPT/new.txt": "new"})
    manager.restore(snapshot)

    assert tree_state(live) == before
    assert manager.get_snapshot("spt") is None


def test_snapshot_of_missing_tree(tmp_path):
    assert StateManager(str(tmp_path / "b")).snapshot("spt", str(tmp_path / "nope")) is None


def test_restore_without_snapshot_dir(tmp_path):
    manager = StateManager(str(tmp_path / "backups"))
    live = write_tree(tmp_path / "live", {"a": "a"})
    snapshot = manager.snapshot("spt", str(live))
    manager.discard(snapshot)

    with pytest.raises(StateManagerError):
        manager.restore(snapshot)


def test_archive_names():
    assert is_archive_name("SPT-4.0.1.7z")
    assert is_archive_name("mod.TAR.GZ")
    assert not is_archive_name("notes.md")


def test_extract_zip(tmp_path):
    archive = tmp_path / "download.bin"
    archive.write_bytes(make_zip({"BepInEx/plugins/x.dll": "x"}))

    assert extract_archive(archive, tmp_path / "out") == "zip"
    assert (tmp_path / "out/BepInEx/plugins/x.dll").read_text() == "x"


def test_extract_7z(tmp_path):
    archive = tmp_path / "SPT.7z"
    with py7zr.SevenZipFile(archive, "w") as sz:
        sz.writestr("server", "SPT/SPT.Server.Linux")

    assert detect_format(archive) == "7z"
    extract_archive(archive, tmp_path / "out")
    assert (tmp_path / "out/SPT/SPT.Server.Linux").read_text() == "server"


def test_extract_tar(tmp_path):
    archive = tmp_path / "mod.tar.gz"
    data = b"hello"
    with tarfile.open(archive, "w:gz") as tar:
        info = tarfile.TarInfo("SPT/user/mods/m/readme.txt")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))

    assert extract_archive(archive, tmp_path / "out") == "tar"
    assert (tmp_path / "out/SPT/user/mods/m/readme.txt").read_bytes() == data


def test_extract_rejects_garbage(tmp_path):
    archive = tmp_path / "bad.zip"
    archive.write_bytes(b"nope")

    with pytest.raises(ArchiveError):
        extract_archive(archive, tmp_path / "out")


def test_extract_unsupported_compression(tmp_path):
    archive = tmp_path / "fika.zip"
    archive.write_bytes(with_compression_method(make_zip({"SPT/readme.txt": "x"}), 99))

    with pytest.raises(ArchiveError):
        extract_archive(archive, tmp_path / "out")


def test_extract_rejects_members_outside_target(tmp_path):
    archive = tmp_path / "evil.zip"
    archive.write_bytes(make_zip({"../evil.txt": "x"}))

    with pytest.raises(ArchiveError):
        extract_archive(archive, tmp_path / "out")

    assert not (tmp_path / "evil.txt").exists()
