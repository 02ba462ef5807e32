"""
Import and export of dumps through the PostgreSQL client tools.

The tools run either inside the database container (``docker exec -i``,
so the host needs no PostgreSQL client) or on the host against the
published port. Dump content always travels through stdin/stdout.
"""

import os
import re
import shutil
import subprocess
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Sequence

from src.utils.tracing import add_span_attributes, trace_function

from ..config import DumpSettings, RuntimeSettings
from ..errors import DumpImportError, ExportError
from ..models import ConnectionConfig, DumpFormat
from ..reporting import NullReporter, Reporter
from ..runtime.docker import DockerCLI
from .preprocess import detect_dump_format, split_plain_dump

# Statement errors logged individually before only counting them
MAX_LOGGED_ERRORS = 20

SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")
# Fatal even when psql exits 0 with ON_ERROR_STOP=0
FATAL_RESTORE_MARKERS = (
    "could not connect",
    "connection to server",
    "server closed the connection unexpectedly",
    "No space left on device",
)
IGNORED_ERRORS_MARKER = "errors ignored on restore"


def sanitize_output_name(requested_name: str, stage: str = "exporting") -> str:
    """
    Reduce a requested output name to ``[A-Za-z0-9_.-]`` without a ``.sql`` suffix

    Raises:
        ExportError: If nothing usable is left
    """
    name = requested_name.strip()
    if name.lower().endswith(".sql"):
        name = name[:-4]
    name = SAFE_NAME.sub("_", name).strip("._")
    if not name:
        raise ExportError("Invalid output name", stage=stage, output_name=requested_name)
    return name


def build_output_path(
    output_dir: str | Path,
    requested_name: str,
    now: datetime | None = None,
) -> Path:
    """
    ``<output_dir>/<YYYYMMDDTHHMMSSZ>_anonymized_<name>.sql``

    The directory is created when missing. Characters outside
    ``[A-Za-z0-9_.-]`` in the requested name are replaced with ``_``.
    """
    name = sanitize_output_name(requested_name)

    timestamp = (now or datetime.now(UTC)).strftime("%Y%m%dT%H%M%SZ")
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"{timestamp}_anonymized_{name}.sql"


class DumpTransferEngine:
    """
    Runs psql / pg_restore / pg_dump for one pipeline run

    Args:
        runtime: Container name and ports used in container mode
        settings: Tool mode and output directory
        docker: Docker client used to build ``docker exec`` commands
        reporter: Progress observer
    """

    def __init__(
        self,
        runtime: RuntimeSettings,
        settings: DumpSettings,
        docker: DockerCLI | None = None,
        reporter: Reporter | None = None,
    ):
        self.runtime = runtime
        self.settings = settings
        self.docker = docker or DockerCLI(binary=runtime.docker_binary)
        self.reporter = reporter or NullReporter()

    def tool_command(
        self,
        tool: str,
        connection: ConnectionConfig,
        args: Sequence[str] = (),
    ) -> tuple[list[str], dict[str, str]]:
        """Return the argv and environment that run ``tool`` against ``connection``."""
        if self.settings.tools_mode == "container":
            prefix = self.docker.exec_prefix(self.runtime.container_name, ["PGPASSWORD"])
            # Inside the container the server listens on its own port
            host, port = "localhost", self.runtime.container_port
        else:
            prefix = []
            host, port = connection.host, connection.port

        cmd = [
            *prefix,
            tool,
            "-h", host,
            "-p", str(port),
            "-U", connection.user,
            "-d", connection.database,
            *args,
        ]
        env = {**os.environ, "PGPASSWORD": connection.password}
        return cmd, env

    def _run_tool(
        self,
        cmd: list[str],
        env: dict[str, str],
        stdin: IO | None = None,
        stdout: IO | int | None = subprocess.DEVNULL,
    ) -> tuple[int, str]:
        result = subprocess.run(
            cmd, env=env, stdin=stdin, stdout=stdout, stderr=subprocess.PIPE
        )
        return result.returncode, (result.stderr or b"").decode("utf-8", errors="replace")

    def _report_statement_errors(self, phase: str, stderr: str) -> int:
        errors = [line for line in stderr.splitlines() if "ERROR:" in line]
        for line in errors[:MAX_LOGGED_ERRORS]:
            self.reporter.warning(
                "Statement failed during restore", phase=phase, detail=line.strip()
            )
        if len(errors) > MAX_LOGGED_ERRORS:
            self.reporter.warning(
                f"{len(errors) - MAX_LOGGED_ERRORS} more statement error(s) in {phase}",
                phase=phase,
            )
        return len(errors)

    def _restore_phase(
        self,
        phase: str,
        cmd: list[str],
        env: dict[str, str],
        source: Path,
        tolerate_ignored_errors: bool = False,
    ) -> int:
        try:
            with open(source, "rb") as stdin:
                returncode, stderr = self._run_tool(cmd, env, stdin=stdin)
        except OSError as e:
            raise DumpImportError(
                f"Cannot run {cmd[0]}: {e}", stage="importing", phase=phase
            ) from e

        error_count = self._report_statement_errors(phase, stderr)

        fatal = returncode != 0
        if fatal and tolerate_ignored_errors and IGNORED_ERRORS_MARKER in stderr:
            fatal = False
        marker = next((m for m in FATAL_RESTORE_MARKERS if m in stderr), None)

        if fatal or marker:
            tail = stderr.strip().splitlines()[-5:]
            reason = marker or f"exit code {returncode}"
            raise DumpImportError(
                f"Restore {phase} failed: {reason}",
                stage="importing",
                phase=phase,
                returncode=returncode,
                detail=" | ".join(tail),
            )

        self.reporter.info(
            f"Restore {phase} finished with {error_count} statement error(s)",
            phase=phase,
            statement_errors=error_count,
        )
        return error_count

    @trace_function("dump.import", component="dump")
    def import_dump(self, connection: ConnectionConfig, dump_path: str | Path) -> dict[str, int]:
        """
        Restore a dump in two phases: schema first, then data

        Individual statement errors are logged as warnings and counted.

        Returns:
            Statement error count per phase

        Raises:
            DumpImportError: On unrecoverable conditions (tool missing,
                server unreachable, disk full, fatal tool exit status)
        """
        path = Path(dump_path)
        dump_format = detect_dump_format(path)
        add_span_attributes(dump_format=dump_format.value)
        self.reporter.info(
            f"Importing {path.name} ({dump_format.value}) into {connection.database}",
            dump=str(path),
        )

        if dump_format is DumpFormat.ARCHIVE:
            base_args = ["--no-owner", "--no-acl"]
            schema_cmd, env = self.tool_command(
                "pg_restore", connection, [*base_args, "--schema-only"]
            )
            data_cmd, _ = self.tool_command(
                "pg_restore", connection, [*base_args, "--data-only", "--disable-triggers"]
            )
            return {
                "schema": self._restore_phase(
                    "schema", schema_cmd, env, path, tolerate_ignored_errors=True
                ),
                "data": self._restore_phase(
                    "data", data_cmd, env, path, tolerate_ignored_errors=True
                ),
            }

        work_dir = Path(tempfile.mkdtemp(prefix="anon-split-"))
        try:
            try:
                split = split_plain_dump(path, work_dir=work_dir)
            except OSError as e:
                raise DumpImportError(
                    f"Cannot split dump: {e}", stage="importing", dump=str(path)
                ) from e

            psql_args = ["-q", "-v", "ON_ERROR_STOP=0", "-f", "-"]
            cmd, env = self.tool_command("psql", connection, psql_args)
            return {
                "schema": self._restore_phase("schema", cmd, env, split.schema_path),
                "data": self._restore_phase("data", cmd, env, split.data_path),
            }
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    @trace_function("dump.export", component="dump")
    def export_dump(self, connection: ConnectionConfig, output_name: str) -> Path:
        """
        Write a plain dump of ``connection`` into the output directory

        Ownership, privileges and security labels are left out so the
        result restores on any PostgreSQL installation.

        Raises:
            ExportError: If pg_dump fails; the partial file is removed
        """
        output_path = build_output_path(self.settings.output_dir, output_name)
        args = ["--format=plain", "--no-owner", "--no-acl", "--no-security-labels"]
        self._dump_to_file(connection, output_path, args)
        self.reporter.info(f"Exported anonymized dump to {output_path}", output=str(output_path))
        return output_path

    @trace_function("dump.create", component="dump")
    def create_dump(self, connection: ConnectionConfig, output_path: str | Path) -> Path:
        """Plain dump of an arbitrary source database, used as pipeline input."""
        output_path = Path(output_path)
        if output_path.parent != Path("."):
            output_path.parent.mkdir(parents=True, exist_ok=True)
        self._dump_to_file(
            connection, output_path, ["--format=plain", "--no-owner", "--no-acl"]
        )
        self.reporter.info(f"Created dump {output_path}", output=str(output_path))
        return output_path

    def _dump_to_file(
        self, connection: ConnectionConfig, output_path: Path, args: list[str]
    ) -> None:
        cmd, env = self.tool_command("pg_dump", connection, args)
        try:
            with open(output_path, "wb") as out:
                returncode, stderr = self._run_tool(cmd, env, stdout=out)
        except OSError as e:
            output_path.unlink(missing_ok=True)
            raise ExportError(
                f"Cannot write dump: {e}", stage="exporting", output=str(output_path)
            ) from e

        if returncode != 0:
            output_path.unlink(missing_ok=True)
            raise ExportError(
                f"pg_dump failed with exit code {returncode}",
                stage="exporting",
                detail=" | ".join(stderr.strip().splitlines()[-5:]),
            )
