"""
Smoke tests for the command-line interface.
"""

import json

import pytest
from typer.testing import CliRunner

from signage_cache import __version__
from signage_cache.cli import app as app_module
from signage_cache.core.orchestrator import create_orchestrator
from signage_cache.exceptions import DownloadError
from signage_cache.storage.config_manager import ConfigManager

from .conftest import FakeDownloader

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Points the CLI at a throwaway config file and cache directory."""
    config_file = tmp_path / "config" / "config.ini"
    monkeypatch.setattr(app_module, "CONFIG_FILE", config_file)
    cache_dir = tmp_path / "cache"
    result = runner.invoke(
        app_module.app, ["init", "--cache-dir", str(cache_dir), "--force"]
    )
    assert result.exit_code == 0, result.output
    return config_file, cache_dir


@pytest.fixture
def fake_network(monkeypatch):
    downloader = FakeDownloader()

    def factory(config, event_logger=None):
        return create_orchestrator(
            config, downloader=downloader, event_logger=event_logger
        )

    monkeypatch.setattr(app_module, "create_orchestrator", factory)
    return downloader


def _manifest(tmp_path, names):
    path = tmp_path / "manifest.json"
    items = [
        {
            "id": name,
            "fileUrl": f"https://cdn.example.com/{name}.jpg",
            "updatedAt": "2024-05-01T10:00:00Z",
            "title": name,
        }
        for name in names
    ]
    path.write_text(json.dumps({"items": items}), encoding="utf-8")
    return path


class TestCommands:
    def test_version(self):
        result = runner.invoke(app_module.app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init_writes_config(self, cli_env):
        config_file, cache_dir = cli_env
        text = config_file.read_text(encoding="utf-8")
        assert f"cache_dir = {cache_dir.resolve()}" in text

    def test_init_rejects_bad_concurrency(self, tmp_path, monkeypatch):
        monkeypatch.setattr(app_module, "CONFIG_FILE", tmp_path / "config.ini")
        result = runner.invoke(app_module.app, ["init", "--concurrency", "99"])
        assert result.exit_code != 0

    def test_validate(self, cli_env):
        result = runner.invoke(app_module.app, ["validate"])
        assert result.exit_code == 0, result.output

    def test_sync_then_stats_verify_and_clear(self, cli_env, fake_network, tmp_path):
        _, cache_dir = cli_env
        manifest = _manifest(tmp_path, ["a", "b", "c"])

        result = runner.invoke(app_module.app, ["sync", str(manifest), "--quiet"])
        assert result.exit_code == 0, result.output
        assert len(fake_network.started) == 3
        assert len(list((cache_dir.resolve() / "images").iterdir())) == 3

        result = runner.invoke(app_module.app, ["stats"])
        assert result.exit_code == 0, result.output
        assert "Files:" in result.output

        result = runner.invoke(app_module.app, ["verify"])
        assert result.exit_code == 0, result.output
        assert "3 cached files verified" in result.output

        result = runner.invoke(app_module.app, ["evict", "--bytes", "1"])
        assert result.exit_code == 0, result.output
        assert "Evicted 1 files" in result.output

        result = runner.invoke(app_module.app, ["clear-cache", "--force"])
        assert result.exit_code == 0, result.output
        assert list((cache_dir.resolve() / "images").iterdir()) == []

    def test_sync_with_failures_exits_non_zero(self, cli_env, fake_network, tmp_path):
        manifest = _manifest(tmp_path, ["broken"])
        fake_network.always_fail["https://cdn.example.com/broken.jpg"] = (
            DownloadError("unreachable")
        )

        result = runner.invoke(
            app_module.app, ["sync", str(manifest), "--quiet", "--max-wait", "0.2"]
        )

        assert result.exit_code == 1

    def test_sync_rejects_malformed_manifest(self, cli_env, tmp_path):
        path = tmp_path / "manifest.json"
        path.write_text("{oops", encoding="utf-8")

        result = runner.invoke(app_module.app, ["sync", str(path)])

        assert result.exit_code == 1
        assert "Could not read manifest" in result.output

    def test_sync_event_log_is_tagged_with_cache_dir(
        self, cli_env, fake_network, tmp_path
    ):
        config_file, cache_dir = cli_env
        log_dir = tmp_path / "events"
        ConfigManager(config_file).save_new_config(
            {"cache_dir": str(cache_dir), "event_log_dir": str(log_dir)}
        )
        manifest = _manifest(tmp_path, ["a"])

        result = runner.invoke(app_module.app, ["sync", str(manifest), "--quiet"])
        assert result.exit_code == 0, result.output

        (log_file,) = log_dir.glob("cache_events_*.jsonl")
        events = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert [e["event"] for e in events] == ["download_started", "download_completed"]
        assert all(e["cache_dir"] == str(cache_dir) for e in events)
        assert all(e["app_version"] == __version__ for e in events)
