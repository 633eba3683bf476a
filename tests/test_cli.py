"""Tests for vbmh.cli module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from vbmh import cli, utils
from vbmh.exceptions import BmcStartError
from vbmh.models import BmcInstance, Domain, LabState, Volume


def _state():
    volume = Volume(name="vol-1", pool="vbmh", capacity_bytes=1024)
    return LabState(
        protocol="ipmi",
        domains=[Domain(name="vmok-1", index=1, mac="52:54:00:01:00:01", volume=volume)],
        bmc_instances=[BmcInstance(protocol="ipmi", domain="vmok-1", port=5001)],
    )


@pytest.fixture
def patched_run():
    """Patch the libvirt client, reconciler and pre-flight checks used by main()."""
    with (
        patch("vbmh.cli.VirtEntityClient") as mock_client_cls,
        patch("vbmh.cli.LabReconciler") as mock_reconciler_cls,
        patch("vbmh.cli.run_preflight") as mock_preflight,
    ):
        mock_reconciler_cls.return_value.reconcile.return_value = _state()
        yield mock_client_cls, mock_reconciler_cls, mock_preflight


class TestShowConfig:
    def test_masks_sensitive_fields(self, lab_config, capsys):
        cli.show_config(lab_config)
        out = capsys.readouterr().out
        assert "bmc_password: ********" in out
        assert "bmc_username: admin" in out
        assert "subnet: 192.168.133.0/24" in out
        assert ": password" not in out


class TestPrintSummary:
    def test_lists_domains_and_ports(self, lab_config, capsys):
        cli.print_summary(lab_config, _state())
        out = capsys.readouterr().out
        assert "vmok-1" in out
        assert "mac=52:54:00:01:00:01" in out
        assert "bmc-port=5001" in out
        assert "BMC: ipmi on 192.168.133.1" in out


class TestOverrides:
    def test_only_given_lab_options(self):
        args = cli.build_parser().parse_args(["-n", "3", "--bmc-protocol", "redfish", "--no-tpm", "--verbose"])
        assert cli.overrides_from_args(args) == {"vm_count": 3, "bmc_protocol": "redfish", "tpm": False}


class TestMain:
    def test_show_config(self, clean_env, capsys):
        assert cli.main(["--show-config", "--vm-count", "5"]) == 0
        assert "vm_count: 5" in capsys.readouterr().out

    def test_unknown_protocol_exit_code(self, clean_env, patched_run, tmp_path):
        mock_client_cls, _reconciler, _preflight = patched_run
        assert cli.main(["--bmc-protocol", "amt", "--log-dir", str(tmp_path)]) == 9
        mock_client_cls.assert_not_called()

    def test_config_error_reaches_run_log(self, clean_env, patched_run, tmp_path):
        assert cli.main(["--bmc-protocol", "amt", "--log-dir", str(tmp_path)]) == 9
        (log_file,) = tmp_path.glob("create-vbmh-log-*.log")
        assert "Unsupported BMC_PROTOCOL 'amt'" in log_file.read_text()
        assert utils._log_file is None

    def test_show_config_writes_no_run_log(self, clean_env, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert cli.main(["--show-config"]) == 0
        assert list(tmp_path.glob("create-vbmh-log-*.log")) == []

    @pytest.mark.parametrize("argv", [["--vm-count", "abc"], ["--no-such-flag"], ["--boot-mode", "bios"]])
    def test_usage_error_exit_code(self, clean_env, argv, capsys):
        assert cli.main(argv) == 1
        assert "error:" in capsys.readouterr().err

    def test_help_exits_cleanly(self, clean_env, capsys):
        assert cli.main(["--help"]) == 0
        assert "--bmc-protocol" in capsys.readouterr().out

    def test_successful_run(self, clean_env, patched_run, tmp_path, capsys):
        mock_client_cls, mock_reconciler_cls, mock_preflight = patched_run
        assert cli.main(["--log-dir", str(tmp_path)]) == 0
        mock_preflight.assert_called_once()
        mock_client_cls.assert_called_once_with("qemu:///system")
        mock_reconciler_cls.return_value.reconcile.assert_called_once_with()
        assert "bmc-port=5001" in capsys.readouterr().out
        logs = list(tmp_path.glob("create-vbmh-log-*.log"))
        assert len(logs) == 1
        assert "Lab ready" in logs[0].read_text()
        assert utils._log_file is None

    def test_skip_preflight(self, clean_env, patched_run, tmp_path):
        _client, _reconciler, mock_preflight = patched_run
        assert cli.main(["--skip-preflight", "--log-dir", str(tmp_path)]) == 0
        mock_preflight.assert_not_called()

    def test_teardown(self, clean_env, patched_run, tmp_path):
        _client, mock_reconciler_cls, mock_preflight = patched_run
        assert cli.main(["--teardown", "--log-dir", str(tmp_path)]) == 0
        mock_reconciler_cls.return_value.teardown.assert_called_once_with()
        mock_reconciler_cls.return_value.reconcile.assert_not_called()
        mock_preflight.assert_not_called()

    def test_manager_error_maps_to_exit_code(self, clean_env, patched_run, tmp_path):
        _client, mock_reconciler_cls, _preflight = patched_run
        mock_reconciler_cls.return_value.reconcile.side_effect = BmcStartError("vbmcd died")
        assert cli.main(["--log-dir", str(tmp_path)]) == 13

    def test_unexpected_error(self, clean_env, patched_run, tmp_path):
        _client, mock_reconciler_cls, _preflight = patched_run
        mock_reconciler_cls.return_value.reconcile.side_effect = KeyError("boom")
        assert cli.main(["--log-dir", str(tmp_path)]) == 1
        assert utils._log_file is None
        text = next(tmp_path.glob("create-vbmh-log-*.log")).read_text()
        assert "Traceback (most recent call last)" in text
        assert "KeyError: 'boom'" in text
