"""
Command Line Tests
==================

Exercises the vpn-hotspot command through click's CliRunner with the
reconciler mocked out.
"""

import sys
from unittest.mock import Mock, patch

import pytest
import yaml
from click.testing import CliRunner
from loguru import logger

from vpnhotspot import cli


@pytest.fixture(autouse=True)
def restore_logger():
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def config_file(tmp_path, test_config):
    test_config["logging"]["file"] = str(tmp_path / "logs" / "service.log")
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(test_config))
    return path


@pytest.fixture
def reconciler():
    mock = Mock()
    mock.detector.get_status.return_value = {
        "tether": "wlan0",
        "vpn": "",
        "dns": "8.8.8.8",
        "translation_interface": "clat4",
        "translation_present": False
    }
    return mock


class TestLoadConfig:

    def test_missing_sections_get_defaults(self, tmp_path):
        path = tmp_path / "minimal.yaml"
        path.write_text("general:\n  log_level: INFO\n")

        config = cli.load_config(str(path))
        assert config["detection"] == {}
        assert config["reconcile"] == {}

    def test_missing_file_exits(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            cli.load_config(str(tmp_path / "nope.yaml"))
        assert exc.value.code == 1

    def test_invalid_yaml_exits(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("general: [unterminated\n")
        with pytest.raises(SystemExit):
            cli.load_config(str(path))

    def test_bundled_config_loads(self):
        config = cli.load_config()
        assert config["reconcile"]["interval"] == 3
        assert config["detection"]["translation_interface"] == "clat4"

    def test_relative_path_uses_working_directory(self, tmp_path, monkeypatch):
        (tmp_path / "local.yaml").write_text("reconcile:\n  interval: 7\n")
        monkeypatch.chdir(tmp_path)

        assert cli.load_config("local.yaml")["reconcile"]["interval"] == 7


class TestMain:

    def test_detect_only_prints_topology(self, config_file, reconciler):
        with patch.object(cli, "create_reconciler_from_config", return_value=reconciler):
            result = CliRunner().invoke(cli.main, ["-c", str(config_file), "--detect-only"])

        assert result.exit_code == 0, result.output
        assert "wlan0" in result.output
        reconciler.run.assert_not_called()

    def test_unmet_prerequisites_exit(self, config_file, reconciler, test_config):
        test_config["executor"]["dry_run"] = False
        config_file.write_text(yaml.safe_dump(test_config))

        with patch.object(cli, "create_reconciler_from_config", return_value=reconciler), \
                patch.object(cli, "check_prerequisites", return_value=(False, ["Must run as root"])):
            result = CliRunner().invoke(cli.main, ["-c", str(config_file)])

        assert result.exit_code == 1
        assert "Must run as root" in result.output
        reconciler.run.assert_not_called()

    def test_run_installs_guard_and_cleans_up(self, config_file, reconciler):
        guard = Mock()
        with patch.object(cli, "create_reconciler_from_config", return_value=reconciler) as factory, \
                patch.object(cli, "LifecycleGuard", return_value=guard):
            result = CliRunner().invoke(cli.main, ["-c", str(config_file), "--interval", "5", "--debug"])

        assert result.exit_code == 0, result.output
        cfg = factory.call_args[0][0]
        assert cfg["reconcile"]["interval"] == 5
        assert cfg["general"]["log_level"] == "DEBUG"
        guard.install.assert_called_once()
        reconciler.run.assert_called_once()
        guard.cleanup.assert_called()

    def test_fatal_error_flushes_and_exits(self, config_file, reconciler):
        guard = Mock()
        reconciler.run.side_effect = RuntimeError("boom")
        with patch.object(cli, "create_reconciler_from_config", return_value=reconciler), \
                patch.object(cli, "LifecycleGuard", return_value=guard):
            result = CliRunner().invoke(cli.main, ["-c", str(config_file), "--skip-checks"])

        assert result.exit_code == 1
        guard.cleanup.assert_any_call(reason="fatal error")

    def test_runs_without_config_file(self, tmp_path, monkeypatch, reconciler):
        # Nothing next to the working directory: bundled defaults are used
        monkeypatch.chdir(tmp_path)
        with patch.object(cli, "create_reconciler_from_config", return_value=reconciler) as factory:
            result = CliRunner().invoke(cli.main, ["--detect-only"])

        assert result.exit_code == 0, result.output
        cfg = factory.call_args[0][0]
        assert cfg["reconcile"]["interval"] == 3
        assert (tmp_path / "data" / "logs").is_dir()

    def test_rejects_non_positive_interval(self, config_file):
        result = CliRunner().invoke(cli.main, ["-c", str(config_file), "--interval", "0"])
        assert result.exit_code == 1


class TestPrerequisites:

    def test_reports_missing_tools_and_root(self):
        with patch.object(cli.os, "geteuid", return_value=1000), \
                patch.object(cli.shutil, "which", return_value=None):
            ready, issues = cli.check_prerequisites()

        assert not ready
        assert "Must run as root" in issues
        assert "Missing required tool: iptables" in issues

    def test_missing_optional_tool_is_a_warning(self):
        messages = []
        logger.add(messages.append, level="WARNING", format="{message}")

        def which(tool):
            return None if tool == "ip6tables" else f"/usr/sbin/{tool}"

        with patch.object(cli.os, "geteuid", return_value=0), \
                patch.object(cli.shutil, "which", side_effect=which):
            assert cli.check_prerequisites() == (True, [])

        assert any("ip6tables" in m for m in messages)

    def test_all_present(self):
        with patch.object(cli.os, "geteuid", return_value=0), \
                patch.object(cli.shutil, "which", return_value="/usr/sbin/tool"):
            assert cli.check_prerequisites() == (True, [])
