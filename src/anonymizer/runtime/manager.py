"""
Lifecycle of the ephemeral PostgreSQL container.

RuntimeManager provisions one container, waits for it to become healthy
and to accept connections, and tears it down. Both waits are built on
``src.utils.retry.wait_until``: fixed interval, bounded attempts.
"""

import time
from typing import Any, Callable, Mapping, Sequence

import psycopg2
from opentelemetry import trace

from src.utils.retry import WaitResult, wait_until
from src.utils.tracing import add_span_attributes, trace_operation

from ..config import RuntimeSettings
from ..errors import ConnectivityError, HealthCheckTimeoutError, ProvisioningError
from ..models import ConnectionConfig, ContainerStatus, RuntimeInstance, RuntimeState
from ..reporting import NullReporter, Reporter
from .docker import DockerCLI, DockerCommandError

FAILED_STATUSES = ("exited", "dead")


class RuntimeManager:
    """
    Creates, health-checks and removes the database container

    Args:
        settings: Image, ports, credentials and wait budgets
        docker: Docker client (default: DockerCLI built from settings)
        reporter: Progress observer
        sleep: Sleep function used between readiness probes
        connect: Connection factory used by the connectivity probe
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        docker: DockerCLI | None = None,
        reporter: Reporter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        connect: Callable[..., Any] = psycopg2.connect,
    ):
        self.settings = settings
        self.docker = docker or DockerCLI(
            binary=settings.docker_binary, timeout=settings.command_timeout
        )
        self.reporter = reporter or NullReporter()
        self.sleep = sleep
        self.connect = connect

    def provision(
        self,
        image: str | None = None,
        port_binding: Mapping[int, int] | None = None,
        env: Mapping[str, str] | None = None,
        volumes: Sequence[str] | None = None,
    ) -> RuntimeInstance:
        """
        Start a fresh container, replacing any container with the same name

        Raises:
            ProvisioningError: If the image cannot be obtained or the
                container cannot be created or started
        """
        name = self.settings.container_name
        image = image or self.settings.image
        if port_binding is None:
            port_binding = {self.settings.host_port: self.settings.container_port}
        env = self.settings.environment if env is None else env
        volumes = self.settings.volumes if volumes is None else volumes

        with trace_operation(
            "runtime_provision", kind=trace.SpanKind.CLIENT, container=name, image=image
        ):
            self._remove_existing(name)
            self._ensure_image(image)

            try:
                container_id = self.docker.create(
                    name,
                    image,
                    env=env,
                    ports=port_binding,
                    volumes=volumes,
                    memory=self.settings.memory,
                    memory_swap=self.settings.memory_swap,
                )
            except DockerCommandError as e:
                raise ProvisioningError(
                    f"Cannot create container: {e.stderr}",
                    stage="provisioning",
                    container=name,
                ) from e

            instance = RuntimeInstance(
                container_id=container_id,
                name=name,
                image=image,
                host=self.settings.host,
                port=next(iter(port_binding)),
            )
            add_span_attributes(container_id=container_id)

            try:
                self.docker.start(name)
            except DockerCommandError as e:
                self._log_container_output(instance, "Container failed to start")
                self.teardown(instance)
                raise ProvisioningError(
                    f"Cannot start container: {e.stderr}",
                    stage="provisioning",
                    container=name,
                ) from e

            instance.state = RuntimeState.RUNNING
            self.reporter.info(
                f"Started container {name} from {image}",
                container=name,
                container_id=container_id[:12],
                endpoint=instance.endpoint,
            )
            return instance

    def _remove_existing(self, name: str) -> None:
        for step in (self.docker.stop, self.docker.remove):
            try:
                step(name)
            except DockerCommandError as e:
                if not e.is_missing_container:
                    raise ProvisioningError(
                        f"Cannot remove existing container: {e.stderr}",
                        stage="provisioning",
                        container=name,
                    ) from e

    def _ensure_image(self, image: str) -> None:
        if self.docker.image_exists(image):
            return

        self.reporter.info(f"Pulling image {image}", image=image)
        try:
            self.docker.pull(image, retries=self.settings.pull_retries)
        except DockerCommandError as e:
            raise ProvisioningError(
                f"Cannot pull image: {e.stderr}", stage="provisioning", image=image
            ) from e

    def wait_until_healthy(
        self,
        instance: RuntimeInstance,
        max_attempts: int | None = None,
        interval: float | None = None,
    ) -> WaitResult:
        """
        Poll the container until it reports healthy

        A container without a healthcheck counts as healthy once running.

        Raises:
            ProvisioningError: If the container exits while being waited on
            HealthCheckTimeoutError: If the attempt budget runs out
        """
        max_attempts = max_attempts or self.settings.health_max_attempts
        interval = self.settings.health_interval if interval is None else interval

        def probe() -> bool:
            status = self.docker.inspect_state(instance.name)
            instance.health = status.health
            if not status.running and (
                status.exit_code != 0 or status.status in FAILED_STATUSES
            ):
                raise ProvisioningError(
                    f"Container stopped while starting (exit code {status.exit_code})",
                    stage="awaiting_health",
                    container=instance.name,
                    exit_code=status.exit_code,
                )
            return status.is_ready

        with trace_operation("runtime_wait_healthy", container=instance.name):
            try:
                result = wait_until(
                    probe,
                    interval=interval,
                    max_attempts=max_attempts,
                    fatal_exceptions=(ProvisioningError,),
                    description=f"container {instance.name} health",
                    sleep=self.sleep,
                    on_attempt=lambda attempt, error: self.reporter.debug(
                        f"Container not healthy yet ({attempt}/{max_attempts})",
                        container=instance.name,
                        health=instance.health.value,
                    ),
                )
            except ProvisioningError:
                self._log_container_output(instance, "Container exited while starting")
                raise

            add_span_attributes(attempts=result.attempts, succeeded=result.succeeded)

        if not result.succeeded:
            self._log_container_output(instance, "Container never became healthy")
            raise HealthCheckTimeoutError(
                f"Container not healthy after {result.attempts} attempts",
                stage="awaiting_health",
                container=instance.name,
                health=instance.health.value,
            )

        instance.state = RuntimeState.HEALTHY
        self.reporter.info(
            f"Container healthy after {result.attempts} check(s)",
            container=instance.name,
        )
        return result

    def wait_until_accepting_connections(
        self,
        instance: RuntimeInstance,
        connection: ConnectionConfig | None = None,
        max_attempts: int | None = None,
        interval: float | None = None,
    ) -> WaitResult:
        """
        Open trial connections until ``SELECT 1`` succeeds

        Raises:
            ConnectivityError: If the attempt budget runs out
        """
        connection = connection or self.settings.admin_connection()
        max_attempts = max_attempts or self.settings.connect_max_attempts
        interval = self.settings.connect_interval if interval is None else interval

        def probe() -> bool:
            conn = self.connect(**connection.connect_kwargs(), connect_timeout=5)
            try:
                with conn.cursor() as cursor:
                    cursor.execute("SELECT 1")
                    cursor.fetchone()
            finally:
                conn.close()
            return True

        with trace_operation(
            "runtime_wait_connectivity",
            kind=trace.SpanKind.CLIENT,
            db_host=connection.host,
            db_name=connection.database,
        ):
            result = wait_until(
                probe,
                interval=interval,
                max_attempts=max_attempts,
                description=f"database at {connection.host}:{connection.port}",
                sleep=self.sleep,
            )
            add_span_attributes(attempts=result.attempts, succeeded=result.succeeded)

        if not result.succeeded:
            raise ConnectivityError(
                f"Database not accepting connections after {result.attempts} attempts: "
                f"{result.last_error}",
                stage="awaiting_connectivity",
                container=instance.name,
                endpoint=f"{connection.host}:{connection.port}",
            )

        self.reporter.info(
            f"Database accepting connections after {result.attempts} attempt(s)",
            endpoint=f"{connection.host}:{connection.port}",
        )
        return result

    def check_healthy(self, instance: RuntimeInstance) -> bool:
        """Re-inspect the container once and update the instance state."""
        try:
            status: ContainerStatus = self.docker.inspect_state(instance.name)
        except DockerCommandError as e:
            self.reporter.warning(
                f"Cannot inspect container: {e.stderr}", container=instance.name
            )
            instance.state = RuntimeState.STOPPED
            return False

        instance.health = status.health
        if status.is_ready:
            instance.state = RuntimeState.HEALTHY
        elif status.running:
            instance.state = RuntimeState.RUNNING
        else:
            instance.state = RuntimeState.STOPPED
        return instance.is_healthy

    def fetch_logs(self, instance: RuntimeInstance, tail: int = 50) -> str:
        """Return the last ``tail`` log lines of the container, or '' on failure."""
        try:
            return self.docker.logs(instance.name, tail=tail)
        except DockerCommandError as e:
            self.reporter.debug(f"Cannot read container logs: {e}", container=instance.name)
            return ""

    def _log_container_output(self, instance: RuntimeInstance, msg: str) -> None:
        logs = self.fetch_logs(instance)
        self.reporter.error(msg, container=instance.name, container_logs=logs)

    def teardown(self, instance: RuntimeInstance) -> None:
        """Stop and remove the container. Never raises; safe to call twice."""
        if instance.state is RuntimeState.REMOVED:
            return

        with trace_operation("runtime_teardown", container=instance.name):
            try:
                self.docker.stop(instance.name)
                instance.state = RuntimeState.STOPPED
            except DockerCommandError as e:
                if not e.is_missing_container:
                    self.reporter.warning(
                        f"Cannot stop container: {e.stderr}", container=instance.name
                    )

            try:
                self.docker.remove(instance.name, volumes=True)
            except DockerCommandError as e:
                if not e.is_missing_container:
                    self.reporter.cleanup_failed("container", e)
                    return

            instance.state = RuntimeState.REMOVED
            self.reporter.info(f"Removed container {instance.name}", container=instance.name)
