import io
import zipfile
from pathlib import Path

import pytest

from tarkhub.components.fetch_cache import FetchCache
from tarkhub.models import ArtifactKind, ArtifactProfile


class FakeResponse:
    def __init__(self, status_code=200, text="", content=None, headers=None):
        self.status_code = status_code
        self.text = text
        self.content = text.encode() if content is None else content
        self.headers = headers or {}

    def iter_content(self, chunk_size=1024):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Routes GETs to queued responses; the last queued response repeats."""

    def __init__(self, clock=None):
        self.routes = {}
        self.calls = []
        self.headers = {}
        self._clock = clock

    def add(self, url, *responses):
        self.routes.setdefault(url, []).extend(responses)
        return self

    def get(self, url, headers=None, timeout=None, stream=False):
        self.calls.append({
            "url": url,
            "at": self._clock() if self._clock else None,
            "headers": headers,
        })
        queue = self.routes.get(url)
        if not queue:
            return FakeResponse(404, "not found")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def urls(self):
        return [call["url"] for call in self.calls]


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds):
        self.now += seconds


class FakeSupervisor:
    def __init__(self, running=True, start_ok=True, stoppable=True):
        self.running = running
        self.start_ok = start_ok
        self.stoppable = stoppable
        self.events = []
        self.on_stop = None

    def is_running(self):
        return self.running

    def stop(self, timeout=None):
        self.events.append("stop")
        if self.on_stop:
            self.on_stop()
        if self.stoppable:
            self.running = False
        return not self.running

    def kill(self):
        self.events.append("kill")
        if self.stoppable:
            self.running = False
        return not self.running

    def start(self, args=None):
        self.events.append("start")
        if self.start_ok:
            self.running = True
        return self.start_ok

    def uptime_seconds(self):
        return 3725.0 if self.running else 0.0


def make_zip(files):
    """Zip bytes holding ``{relative path: bytes or str}``."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


def with_compression_method(zip_bytes, method):
    """Rewrite the compression method of the first member of a one-file zip."""
    data = bytearray(zip_bytes)
    local = data.index(b"PK\x03\x04")
    central = data.index(b"PK\x01\x02")
    data[local + 8:local + 10] = method.to_bytes(2, "little")
    data[central + 10:central + 12] = method.to_bytes(2, "little")
    return bytes(data)


def write_tree(root, files):
    root = Path(root)
    for name, data in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            data = data.encode()
        path.write_bytes(data)
    return root


def tree_state(root):
    """Every file (with content) and directory under ``root``."""
    root = Path(root)
    if not root.exists():
        return None
    state = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        state[rel] = path.read_bytes() if path.is_file() else "<dir>"
    return state


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session(clock):
    return FakeSession(clock=clock)


@pytest.fixture
def fetch_cache(session, clock):
    return FetchCache(session=session, clock=clock, sleep=clock.sleep)


@pytest.fixture
def engine_profile():
    return ArtifactProfile(
        kind=ArtifactKind.ENGINE,
        display_name="SPT",
        feed_url="https://api.github.com/repos/sp-tarkov/build/releases",
        asset_pattern=r"^SPT-\d+\.\d+\.\d+.*\.7z$",
        product_name="SPT",
        expected_download_bytes=1000,
        min_download_bytes=1,
        fallback_env="SPT_VERSION",
        body_link_patterns=(
            r"Direct Download\s+(https?://[^\s]+\.7z)",
            r"(https?://spt-releases\.modd\.in/SPT-[\w\d\.\-]+\.7z)",
        ),
    )


@pytest.fixture
def plugin_profile():
    return ArtifactProfile(
        kind=ArtifactKind.PLUGIN,
        display_name="Fika",
        feed_url="https://api.github.com/repos/project-fika/Fika-Server-CSharp/releases",
        asset_pattern=r"^fika.*server.*\.zip$",
        product_name="fika",
        expected_download_bytes=1000,
        min_download_bytes=1,
        fallback_env="FIKA_VERSION",
        marker_paths=("SPT/user/mods/fika-server",),
        preserved_configs=("SPT/user/mods/fika-server/assets/configs/fika.jsonc",),
    )
