import json

from tarkhub.config import load_profiles, load_settings
from tarkhub.models import ArtifactKind


def test_packaged_defaults():
    settings = load_settings(environ={})

    assert settings.runtime_dir == "/app/spt-server"
    assert str(settings.executable_path) == "/app/spt-server/SPT/SPT.Server.Linux"
    assert settings.listen_args == ["--port", "6970", "--ip", "0.0.0.0"]
    assert settings.min_request_interval == 0.5
    assert settings.github_token is None
    assert settings.version_fallbacks == {}


def test_environment_overrides(tmp_path):
    settings = load_settings(environ={
        "TARKHUB_RUNTIME_DIR": str(tmp_path / "server"),
        "TARKHUB_VERSIONS_DIR": str(tmp_path / "versions"),
        "GITHUB_TOKEN": "ghp_x",
        "FORGE_API_KEY": "forge",
        "SPT_VERSION": "3.11.0",
        "FIKA_VERSION": "1.2.0",
    })

    assert settings.runtime_dir == str(tmp_path / "server")
    assert settings.versions_dir == str(tmp_path / "versions")
    assert settings.github_token == "ghp_x"
    assert settings.forge_api_key == "forge"
    assert settings.version_fallbacks == {"spt": "3.11.0", "fika": "1.2.0"}
    assert settings.to_dict()["github_token"] == "***"


def test_config_file_is_merged_over_defaults(tmp_path):
    config = tmp_path / "index.json"
    config.write_text(json.dumps({"config": {"server": {"warmup_seconds": 1}}}))

    settings = load_settings(environ={"TARKHUB_CONFIG": str(config)})

    assert settings.warmup_seconds == 1.0
    assert settings.stop_timeout == 10.0


def test_broken_config_file_falls_back(tmp_path):
    config = tmp_path / "index.json"
    config.write_text("{ not json")

    assert load_settings(str(config), environ={}).runtime_dir == "/app/spt-server"


def test_profiles_from_modules():
    profiles = load_profiles()

    engine = profiles[ArtifactKind.ENGINE]
    plugin = profiles[ArtifactKind.PLUGIN]
    assert engine.feed_url == "https://api.github.com/repos/sp-tarkov/build/releases"
    assert engine.expected_download_bytes == 500 * 1024 * 1024
    assert len(engine.body_link_patterns) == 4
    assert plugin.expected_download_bytes == 200 * 1024 * 1024
    assert plugin.validates_install
    assert not engine.validates_install
