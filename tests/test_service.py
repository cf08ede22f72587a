"""Tests for ServiceController."""

import io
import subprocess
from unittest.mock import Mock, patch

import pytest

from orb.common.exceptions import ServiceError, ServiceNotFoundError, ServicePermissionError
from orb.service import ServiceController, ServiceState


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestRestart:
    """Test daemon restart and error mapping."""

    def test_empty_unit_rejected(self):
        with pytest.raises(ValueError):
            ServiceController(" ")

    @patch("subprocess.run")
    def test_restart_uses_sudo(self, mock_run):
        mock_run.return_value = completed()

        ServiceController().restart()

        args, kwargs = mock_run.call_args
        assert args[0] == ["sudo", "-n", "systemctl", "restart", "cloudflared"]
        assert kwargs["timeout"] > 0

    @patch("subprocess.run")
    def test_restart_without_sudo(self, mock_run):
        mock_run.return_value = completed()

        ServiceController("my-tunnel", use_sudo=False).restart()

        assert mock_run.call_args[0][0] == ["systemctl", "restart", "my-tunnel"]

    @pytest.mark.parametrize(
        "returncode,stderr,error",
        [
            (1, "sudo: a password is required", ServicePermissionError),
            (4, "", ServicePermissionError),
            (1, "Interactive authentication required.", ServicePermissionError),
            (5, "Unit cloudflared.service not found.", ServiceNotFoundError),
            (1, "Job for cloudflared.service failed", ServiceError),
        ],
    )
    @patch("subprocess.run")
    def test_restart_failures(self, mock_run, returncode, stderr, error):
        mock_run.return_value = completed(returncode, stderr=stderr)

        with pytest.raises(error):
            ServiceController().restart()

    @patch("subprocess.run")
    def test_restart_generic_failure_is_not_permission(self, mock_run):
        mock_run.return_value = completed(1, stderr="Job for cloudflared.service failed")

        with pytest.raises(ServiceError) as exc_info:
            ServiceController().restart()

        assert not isinstance(exc_info.value, (ServicePermissionError, ServiceNotFoundError))

    @patch("subprocess.run")
    def test_restart_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError("sudo")

        with pytest.raises(ServiceNotFoundError):
            ServiceController().restart()

    @patch("subprocess.run")
    def test_restart_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="systemctl", timeout=90)

        with pytest.raises(ServiceError, match="did not finish"):
            ServiceController().restart()


class TestStatus:
    """Test daemon state mapping."""

    @pytest.mark.parametrize(
        "stdout,state",
        [
            ("active\n", ServiceState.RUNNING),
            ("reloading\n", ServiceState.RUNNING),
            ("inactive\n", ServiceState.STOPPED),
            ("failed\n", ServiceState.STOPPED),
            ("unknown\n", ServiceState.UNKNOWN),
        ],
    )
    @patch("subprocess.run")
    def test_status(self, mock_run, stdout, state):
        mock_run.return_value = completed(0 if state == ServiceState.RUNNING else 3, stdout)

        assert ServiceController().status() == state

    @patch("subprocess.run")
    def test_status_never_raises(self, mock_run):
        mock_run.side_effect = FileNotFoundError("systemctl")

        assert ServiceController().status() == ServiceState.UNKNOWN


class TestLogs:
    """Test journal streaming."""

    @pytest.fixture
    def journal(self):
        process = Mock()
        process.pid = 4242
        process.stdout = io.StringIO(
            "INF Starting tunnel\nINF host=api.example.com\nINF host=web.example.com\n"
        )
        process.poll.return_value = None
        return process

    @patch("shutil.which", return_value="/usr/bin/journalctl")
    @patch("subprocess.Popen")
    def test_logs_streams_lines(self, mock_popen, _which, journal):
        mock_popen.return_value = journal

        lines = list(ServiceController().logs(lines=10))

        assert lines == [
            "INF Starting tunnel",
            "INF host=api.example.com",
            "INF host=web.example.com",
        ]
        command = mock_popen.call_args[0][0]
        assert command[:5] == ["journalctl", "-u", "cloudflared", "-n", "10"]
        assert "-f" not in command
        journal.terminate.assert_called_once()

    @patch("shutil.which", return_value="/usr/bin/journalctl")
    @patch("subprocess.Popen")
    def test_logs_grep_and_follow(self, mock_popen, _which, journal):
        mock_popen.return_value = journal

        lines = list(ServiceController().logs(follow=True, grep="api.example.com"))

        assert lines == ["INF host=api.example.com"]
        assert mock_popen.call_args[0][0][-1] == "-f"

    @patch("shutil.which", return_value="/usr/bin/journalctl")
    @patch("subprocess.Popen")
    def test_closing_generator_terminates_journalctl(self, mock_popen, _which, journal):
        mock_popen.return_value = journal

        stream = ServiceController().logs(follow=True)
        next(stream)
        stream.close()

        journal.terminate.assert_called_once()

    @patch("shutil.which", return_value="/usr/bin/journalctl")
    @patch("subprocess.Popen")
    def test_missing_stdout_yields_nothing(self, mock_popen, _which, journal):
        journal.stdout = None
        mock_popen.return_value = journal

        assert list(ServiceController().logs()) == []
        journal.terminate.assert_called_once()

    @patch("shutil.which", return_value=None)
    def test_logs_without_journalctl(self, _which):
        with pytest.raises(ServiceNotFoundError):
            ServiceController().logs()

    def test_negative_lines(self):
        with pytest.raises(ValueError):
            ServiceController().logs(lines=-1)
