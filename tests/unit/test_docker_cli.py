"""
Unit tests for src/anonymizer/runtime/docker.py
"""

import json
import subprocess
from unittest.mock import Mock, patch

import pytest

from src.anonymizer.models import HealthStatus
from src.anonymizer.runtime.docker import DockerCLI, DockerCommandError, parse_state


def _completed(stdout="", stderr="", returncode=0):
    return Mock(stdout=stdout, stderr=stderr, returncode=returncode)


class TestDockerCommandError:
    """Test DockerCommandError class"""

    def test_missing_container_detection(self):
        error = DockerCommandError(
            ["docker", "inspect", "pg"], 1, "Error: No such object: pg"
        )

        assert error.is_missing_container is True

    def test_other_errors_are_not_missing_container(self):
        error = DockerCommandError(["docker", "rm", "pg"], 1, "permission denied")

        assert error.is_missing_container is False
        assert "exit 1" in str(error)


class TestDockerCLI:
    """Test DockerCLI class"""

    @patch('src.anonymizer.runtime.docker.subprocess.run')
    def test_create_builds_arguments(self, mock_run):
        # Arrange
        mock_run.return_value = _completed(stdout="abc123\n")
        docker = DockerCLI()

        # Act
        container_id = docker.create(
            "pg_anonymizer",
            "anon:latest",
            env={"POSTGRES_PASSWORD": "pw"},
            ports={15432: 5432},
            volumes=["/data:/dumps:ro"],
            memory="2g",
        )

        # Assert
        assert container_id == "abc123"
        cmd = mock_run.call_args[0][0]
        assert cmd[:6] == ["docker", "create", "--name", "pg_anonymizer", "--restart", "no"]
        assert ["-e", "POSTGRES_PASSWORD=pw"] == cmd[6:8]
        assert "15432:5432" in cmd
        assert "/data:/dumps:ro" in cmd
        assert cmd[cmd.index("--memory") + 1] == "2g"
        assert "--memory-swap" not in cmd
        assert "--health-cmd" in cmd
        assert cmd[-1] == "anon:latest"

    @patch('src.anonymizer.runtime.docker.subprocess.run')
    def test_nonzero_exit_raises(self, mock_run):
        mock_run.return_value = _completed(returncode=125, stderr="Conflict. name in use")

        with pytest.raises(DockerCommandError) as exc_info:
            DockerCLI().start("pg_anonymizer")

        assert exc_info.value.returncode == 125
        assert exc_info.value.stderr == "Conflict. name in use"

    @patch('src.anonymizer.runtime.docker.subprocess.run')
    def test_missing_binary_raises(self, mock_run):
        mock_run.side_effect = FileNotFoundError("docker")

        with pytest.raises(DockerCommandError) as exc_info:
            DockerCLI().start("pg_anonymizer")

        assert exc_info.value.returncode == 127

    @patch('src.anonymizer.runtime.docker.subprocess.run')
    def test_timeout_raises(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="docker", timeout=30)

        with pytest.raises(DockerCommandError) as exc_info:
            DockerCLI().stop("pg_anonymizer")

        assert exc_info.value.returncode == -1

    @patch('src.anonymizer.runtime.docker.subprocess.run')
    def test_remove_with_volumes(self, mock_run):
        mock_run.return_value = _completed()

        DockerCLI().remove("pg_anonymizer")

        assert mock_run.call_args[0][0] == [
            "docker", "rm", "--force", "--volumes", "pg_anonymizer"
        ]

    @patch('src.anonymizer.runtime.docker.subprocess.run')
    def test_inspect_state(self, mock_run):
        state = {"Status": "running", "Running": True, "ExitCode": 0,
                 "Health": {"Status": "healthy"}}
        mock_run.return_value = _completed(stdout=json.dumps(state))

        status = DockerCLI().inspect_state("pg_anonymizer")

        assert status.running is True
        assert status.health is HealthStatus.HEALTHY
        assert status.is_ready is True

    @patch('src.anonymizer.runtime.docker.subprocess.run')
    def test_image_exists(self, mock_run):
        mock_run.side_effect = [
            _completed(stdout="[{}]"),
            _completed(returncode=1, stderr="No such image"),
        ]
        docker = DockerCLI()

        assert docker.image_exists("anon:latest") is True
        assert docker.image_exists("anon:missing") is False

    @patch('src.utils.retry.time.sleep')
    @patch('src.anonymizer.runtime.docker.subprocess.run')
    def test_pull_retries_transient_failures(self, mock_run, mock_sleep):
        mock_run.side_effect = [
            _completed(returncode=1, stderr="TLS handshake timeout"),
            _completed(),
        ]

        DockerCLI().pull("anon:latest", retries=2)

        assert mock_run.call_count == 2
        assert mock_sleep.call_count == 1

    @patch('src.utils.retry.time.sleep')
    @patch('src.anonymizer.runtime.docker.subprocess.run')
    def test_pull_gives_up_after_retries(self, mock_run, mock_sleep):
        mock_run.return_value = _completed(returncode=1, stderr="manifest unknown")

        with pytest.raises(DockerCommandError):
            DockerCLI().pull("anon:missing", retries=2)

        assert mock_run.call_count == 3

    def test_exec_prefix(self):
        prefix = DockerCLI(binary="podman").exec_prefix("pg", ["PGPASSWORD"])

        assert prefix == ["podman", "exec", "-i", "-e", "PGPASSWORD", "pg"]


class TestParseState:
    """Test parse_state function"""

    def test_without_healthcheck(self):
        status = parse_state({"Status": "running", "Running": True, "ExitCode": 0})

        assert status.health is HealthStatus.NONE
        assert status.is_ready is True

    def test_exited_container(self):
        status = parse_state({
            "Status": "exited", "Running": False, "ExitCode": 1,
            "Health": {"Status": "unhealthy"},
        })

        assert status.running is False
        assert status.exit_code == 1
        assert status.is_ready is False

    def test_unknown_health_value(self):
        status = parse_state({"Running": True, "Health": {"Status": "weird"}})

        assert status.health is HealthStatus.UNKNOWN
        assert status.is_ready is False

    def test_starting(self):
        status = parse_state({"Running": True, "Health": {"Status": "starting"}})

        assert status.is_ready is False
