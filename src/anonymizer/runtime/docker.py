"""
Thin wrapper around the ``docker`` command line client.

Every call is a ``subprocess.run`` with captured output. Failures surface
as DockerCommandError carrying the exit status and stderr; callers decide
whether a failure is fatal.
"""

import json
import logging
import subprocess
from typing import Any, Mapping, Sequence

from src.utils.retry import retry_with_backoff

from ..models import ContainerStatus, HealthStatus

logger = logging.getLogger(__name__)

MISSING_CONTAINER_MARKERS = ("No such container", "No such object")

# Probe used by the engine itself to report health
PG_HEALTHCHECK = "pg_isready -U ${POSTGRES_USER:-postgres}"


class DockerCommandError(Exception):
    """Raised when a docker command exits non-zero or cannot be run."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"docker {' '.join(self.command[1:3])} failed "
            f"(exit {returncode}): {self.stderr or 'no output'}"
        )

    @property
    def is_missing_container(self) -> bool:
        return any(marker in self.stderr for marker in MISSING_CONTAINER_MARKERS)


class DockerCLI:
    """
    Docker operations needed to run one throwaway database container

    Usage:
        docker = DockerCLI()
        docker.create("pg_anonymizer", image, env={...}, ports={15432: 5432})
        docker.start("pg_anonymizer")
        status = docker.inspect_state("pg_anonymizer")
    """

    def __init__(self, binary: str = "docker", timeout: float = 600.0):
        self.binary = binary
        self.timeout = timeout

    def _run(self, *args: str, timeout: float | None = None) -> subprocess.CompletedProcess:
        cmd = [self.binary, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError as e:
            raise DockerCommandError(cmd, 127, f"{self.binary} executable not found") from e
        except subprocess.TimeoutExpired as e:
            raise DockerCommandError(cmd, -1, f"timed out after {e.timeout}s") from e

        if result.returncode != 0:
            raise DockerCommandError(cmd, result.returncode, result.stderr or "")
        return result

    def create(
        self,
        name: str,
        image: str,
        env: Mapping[str, str],
        ports: Mapping[int, int],
        volumes: Sequence[str] = (),
        memory: str | None = None,
        memory_swap: str | None = None,
        healthcheck: str = PG_HEALTHCHECK,
    ) -> str:
        """Create (not start) a container and return its id."""
        args = ["create", "--name", name, "--restart", "no"]
        for key, value in env.items():
            args += ["-e", f"{key}={value}"]
        for host_port, container_port in ports.items():
            args += ["-p", f"{host_port}:{container_port}"]
        for volume in volumes:
            args += ["-v", volume]
        if memory:
            args += ["--memory", memory]
        if memory_swap:
            args += ["--memory-swap", memory_swap]
        if healthcheck:
            args += [
                "--health-cmd", healthcheck,
                "--health-interval", "2s",
                "--health-timeout", "5s",
                "--health-retries", "10",
                "--health-start-period", "5s",
            ]
        args.append(image)
        return self._run(*args).stdout.strip()

    def start(self, name: str) -> None:
        self._run("start", name)

    def stop(self, name: str, timeout: int = 10) -> None:
        self._run("stop", "--time", str(timeout), name)

    def remove(self, name: str, volumes: bool = True) -> None:
        """Force-remove a container, with its anonymous volumes by default."""
        args = ["rm", "--force"]
        if volumes:
            args.append("--volumes")
        self._run(*args, name)

    def inspect_state(self, name: str) -> ContainerStatus:
        result = self._run("inspect", "--format", "{{json .State}}", name, timeout=30)
        return parse_state(json.loads(result.stdout))

    def logs(self, name: str, tail: int = 50) -> str:
        result = self._run("logs", "--tail", str(tail), name, timeout=30)
        return (result.stdout + result.stderr).strip()

    def image_exists(self, image: str) -> bool:
        try:
            self._run("image", "inspect", image, timeout=30)
            return True
        except DockerCommandError:
            return False

    def pull(self, image: str, retries: int = 3) -> None:
        """Pull an image, retrying transient registry failures."""
        pull = retry_with_backoff(
            max_retries=retries,
            base_delay=2.0,
            retryable_exceptions=(DockerCommandError,),
        )(self._pull)
        pull(image)

    def _pull(self, image: str) -> None:
        self._run("pull", image)

    def exec_prefix(self, name: str, env_names: Sequence[str] = ()) -> list[str]:
        """Argument prefix that runs a command inside ``name`` with stdin attached."""
        prefix = [self.binary, "exec", "-i"]
        for env_name in env_names:
            prefix += ["-e", env_name]
        prefix.append(name)
        return prefix


def parse_state(state: Mapping[str, Any]) -> ContainerStatus:
    """Build a ContainerStatus from ``docker inspect`` State JSON."""
    health = state.get("Health") or {}
    try:
        health_status = HealthStatus(health.get("Status", "none"))
    except ValueError:
        health_status = HealthStatus.UNKNOWN

    return ContainerStatus(
        running=bool(state.get("Running")),
        exit_code=int(state.get("ExitCode") or 0),
        health=health_status,
        status=state.get("Status", ""),
    )
