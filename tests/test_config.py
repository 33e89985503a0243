"""Tests for configuration loading."""

import logging
from pathlib import Path

import pytest

from git_flotilla.config import FlotillaConfig, load_config, resolve_config_file
from git_flotilla.errors import ErrorKind, FlotillaError
from git_flotilla.models import SyncStrategy


def write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


class TestDefaults:
    def test_no_file_no_env(self):
        config = load_config(environ={})

        assert config == FlotillaConfig()
        assert config.parallelism == 4
        assert config.scan_depth == 1
        assert config.strategy == SyncStrategy.RESET
        assert config.source is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"scan_depth": -1},
            {"parallelism": 0},
            {"fetch_timeout": 0},
            {"max_retries": -1},
            {"watch_interval": 0},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(FlotillaError) as exc_info:
            FlotillaConfig(**kwargs)
        assert exc_info.value.kind == ErrorKind.MANIFEST


class TestConfigFile:
    def test_xdg_file_is_found(self, isolated_env):
        path = write_config(
            isolated_env / ".config" / "git-flotilla" / "config.yaml",
            "parallelism: 8\nstrategy: pull\nfetch-timeout: 12.5\nexclude_pattern: archive\n",
        )

        config = load_config(environ={})

        assert config.source == path
        assert config.parallelism == 8
        assert config.strategy == SyncStrategy.PULL
        assert config.fetch_timeout == 12.5
        assert config.exclude_pattern == "archive"

    def test_env_var_points_at_file(self, tmp_path, monkeypatch):
        path = write_config(tmp_path / "custom.yaml", "scan_depth: 3\n")
        monkeypatch.setenv("GIT_FLOTILLA_CONFIG", str(path))

        assert resolve_config_file() == path
        assert load_config(environ={}).scan_depth == 3

    def test_explicit_path_wins(self, tmp_path, isolated_env):
        write_config(isolated_env / ".config" / "git-flotilla" / "config.yaml", "parallelism: 8\n")
        explicit = write_config(tmp_path / "explicit.yaml", "parallelism: 2\n")

        assert load_config(explicit, environ={}).parallelism == 2

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FlotillaError, match="config file not found"):
            load_config(tmp_path / "absent.yaml", environ={})

    def test_sync_root_is_expanded(self, tmp_path, isolated_env):
        path = write_config(tmp_path / "c.yaml", "sync_root: ~/fleet\n")

        assert load_config(path, environ={}).sync_root == isolated_env / "fleet"

    def test_unknown_key_warns(self, tmp_path, caplog):
        path = write_config(tmp_path / "c.yaml", "colour: blue\nparallelism: 6\n")

        with caplog.at_level(logging.WARNING, logger="git_flotilla.config"):
            config = load_config(path, environ={})

        assert config.parallelism == 6
        assert "unknown config key 'colour'" in caplog.text

    @pytest.mark.parametrize(
        "text",
        [
            "parallelism: lots\n",
            "parallelism: 0\n",
            "fetch_timeout: soon\n",
            "recursive_submodules: true\nscan_depth: yes\n",
            "- just\n- a list\n",
            "parallelism: [1\n",
        ],
    )
    def test_invalid_file(self, tmp_path, text):
        path = write_config(tmp_path / "c.yaml", text)

        with pytest.raises(FlotillaError) as exc_info:
            load_config(path, environ={})
        assert exc_info.value.kind == ErrorKind.MANIFEST


class TestEnvironment:
    def test_env_overrides_file(self, tmp_path):
        path = write_config(tmp_path / "c.yaml", "parallelism: 8\nscan_depth: 2\n")

        config = load_config(
            path, environ={"GIT_FLOTILLA_PARALLELISM": "16", "GIT_FLOTILLA_SCAN_DEPTH": "0"}
        )

        assert config.parallelism == 16
        assert config.scan_depth == 0

    def test_bad_env_value(self):
        with pytest.raises(FlotillaError, match="GIT_FLOTILLA_PARALLELISM"):
            load_config(environ={"GIT_FLOTILLA_PARALLELISM": "many"})


class TestBulkOptions:
    def test_flags_override_config(self):
        config = FlotillaConfig(parallelism=8, exclude_pattern="old")

        options = config.bulk_options(parallelism=2, scan_depth=None, dry_run=True)

        assert options.parallelism == 2
        assert options.scan_depth == 1
        assert options.exclude_pattern == "old"
        assert options.dry_run is True
