"""
Orchestration of one anonymization run.

The pipeline is a linear state machine::

    INIT -> PROVISIONING -> AWAITING_HEALTH -> AWAITING_CONNECTIVITY
         -> PREPARING_TARGET_SCHEMA -> IMPORTING -> SETTING_UP_MASKING
         -> APPLYING_RULES -> EXPORTING -> CLEANUP -> DONE

Any failure moves the run to FAILED. Resources acquired by the run (the
container, the connection pool and transient files) are released by
``PipelineRun.cleanup``, which the ``AnonymizationPipeline.scoped_run``
context manager calls on every exit path before the error propagates.
"""

import shutil
import tempfile
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import psycopg2

from src.utils.db_pool import BaseConnectionPool, ConnectionPoolError, PostgresConnectionPool
from src.utils.tracing import add_span_attributes, trace_operation

from .config import AnonymizerSettings
from .dump import DumpTransferEngine, preprocess, sanitize_output_name, validate_dump
from .errors import (
    AnonymizerError,
    ConnectivityError,
    DumpImportError,
    MaskingBindError,
    ProvisioningError,
)
from .masking import (
    MaskingRuleApplier,
    materialize_and_strip,
    prepare_target_database,
    setup_masking,
)
from .models import (
    ConnectionConfig,
    Dump,
    DumpState,
    DumpValidation,
    MaskingSummary,
    RuleSet,
    RuntimeInstance,
)
from .reporting import NullReporter, Reporter
from .runtime import RuntimeManager


class PipelineState(str, Enum):
    INIT = "init"
    PROVISIONING = "provisioning"
    AWAITING_HEALTH = "awaiting_health"
    AWAITING_CONNECTIVITY = "awaiting_connectivity"
    PREPARING_TARGET_SCHEMA = "preparing_target_schema"
    IMPORTING = "importing"
    SETTING_UP_MASKING = "setting_up_masking"
    APPLYING_RULES = "applying_rules"
    EXPORTING = "exporting"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


STAGE_ORDER: tuple[PipelineState, ...] = (
    PipelineState.INIT,
    PipelineState.PROVISIONING,
    PipelineState.AWAITING_HEALTH,
    PipelineState.AWAITING_CONNECTIVITY,
    PipelineState.PREPARING_TARGET_SCHEMA,
    PipelineState.IMPORTING,
    PipelineState.SETTING_UP_MASKING,
    PipelineState.APPLYING_RULES,
    PipelineState.EXPORTING,
    PipelineState.CLEANUP,
    PipelineState.DONE,
)

TERMINAL_STATES = (PipelineState.DONE, PipelineState.FAILED)


@dataclass
class PipelineRun:
    """
    Everything one run owns

    Created when the run starts; ``cleanup`` releases the container, the
    connection pool and the transient files exactly once.
    """

    dump: Dump
    rules: RuleSet
    output_name: str
    runtime: RuntimeManager
    reporter: Reporter
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    instance: RuntimeInstance | None = None
    pool: BaseConnectionPool | None = None
    transient_files: list[Path] = field(default_factory=list)
    state: PipelineState = PipelineState.INIT
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.INIT])
    failed_stage: PipelineState | None = None
    stage_durations: dict[str, float] = field(default_factory=dict)
    output_path: Path | None = None
    cleaned_up: bool = False

    def transition(self, target: PipelineState) -> None:
        """Move to ``target``; only the next stage or FAILED are allowed."""
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Run already finished in state {self.state.value}")

        if target is not PipelineState.FAILED:
            expected = STAGE_ORDER[STAGE_ORDER.index(self.state) + 1]
            if target is not expected:
                raise RuntimeError(
                    f"Invalid transition {self.state.value} -> {target.value}"
                )

        self.state = target
        self.history.append(target)

    def fail(self) -> None:
        if self.state in TERMINAL_STATES:
            return
        self.failed_stage = self.state
        self.transition(PipelineState.FAILED)

    def cleanup(self) -> None:
        """Release every resource of the run. Never raises; a second call is a no-op."""
        if self.cleaned_up:
            return
        self.cleaned_up = True

        if self.pool is not None:
            try:
                self.pool.close()
            except Exception as e:
                self.reporter.cleanup_failed("connection_pool", e)

        if self.instance is not None:
            try:
                self.runtime.teardown(self.instance)
            except Exception as e:
                self.reporter.cleanup_failed("container", e)

        for path in self.transient_files:
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink(missing_ok=True)
            except OSError as e:
                self.reporter.cleanup_failed("transient_file", e)

        self.reporter.debug("Run resources released", run_id=self.run_id)


@dataclass(frozen=True)
class PipelineResult:
    output_path: Path
    masking_summary: MaskingSummary
    validation: DumpValidation
    state_history: tuple[PipelineState, ...]
    stage_durations: dict[str, float]
    run_id: str


class AnonymizationPipeline:
    """
    Runs dump -> container -> masking -> sanitized dump

    Usage:
        pipeline = AnonymizationPipeline(AnonymizerSettings.from_env(), reporter)
        result = pipeline.run("prod.sql", load_rules("rules.yaml"), "prod")
        print(result.output_path)

    Args:
        settings: Pipeline settings
        reporter: Progress observer shared by all components
        runtime: Container manager (default: built from settings)
        transfer: Dump tool runner (default: built from settings)
        pool_factory: Builds the connection pool for the target database
        connect: Connection factory for maintenance-database statements
    """

    def __init__(
        self,
        settings: AnonymizerSettings,
        reporter: Reporter | None = None,
        runtime: RuntimeManager | None = None,
        transfer: DumpTransferEngine | None = None,
        pool_factory: Callable[[ConnectionConfig], BaseConnectionPool] | None = None,
        connect: Callable[..., Any] = psycopg2.connect,
    ):
        self.settings = settings
        self.reporter = reporter or NullReporter()
        self.runtime = runtime or RuntimeManager(settings.runtime, reporter=self.reporter)
        self.transfer = transfer or DumpTransferEngine(
            settings.runtime, settings.dump, docker=self.runtime.docker, reporter=self.reporter
        )
        self.pool_factory = pool_factory or _default_pool
        self.connect = connect

    @contextmanager
    def scoped_run(
        self, dump_path: str | Path, rules: RuleSet, output_name: str
    ) -> Iterator[PipelineRun]:
        """Yield a new run; on exit it is marked failed if needed and always cleaned up."""
        run = PipelineRun(
            dump=Dump(path=Path(dump_path)),
            rules=rules,
            output_name=output_name,
            runtime=self.runtime,
            reporter=self.reporter,
        )
        try:
            yield run
        except BaseException:
            run.fail()
            stage = (run.failed_stage or run.state).value
            self.reporter.error(
                f"Run failed in stage {stage}", run_id=run.run_id, failed_stage=stage
            )
            raise
        finally:
            run.cleanup()
            self.reporter.run_finished(run.state is PipelineState.DONE)

    @contextmanager
    def _stage(self, run: PipelineRun, state: PipelineState) -> Iterator[None]:
        run.transition(state)
        self.reporter.stage_entered(state.value)
        start = time.monotonic()
        success = False
        try:
            with trace_operation(f"pipeline.{state.value}", run_id=run.run_id):
                try:
                    yield
                except (ConnectionPoolError, psycopg2.OperationalError) as e:
                    raise ConnectivityError(
                        f"Database connection failed: {e}".strip(), stage=state.value
                    ) from e
            success = True
        except AnonymizerError as e:
            if e.stage is None:
                e.stage = state.value
            raise
        finally:
            duration = time.monotonic() - start
            run.stage_durations[state.value] = duration
            self.reporter.stage_finished(state.value, duration, success)

    def _preflight(self, run: PipelineRun) -> DumpValidation:
        path = run.dump.path
        if not path.is_file():
            raise DumpImportError("Dump file not found", stage="init", dump=str(path))
        if not run.rules:
            raise MaskingBindError("Rule set is empty", stage="init")
        sanitize_output_name(run.output_name, stage="init")

        validation = validate_dump(path)
        run.dump = Dump(path=path, format=validation.dump_format)
        if not validation.is_well_formed:
            if self.settings.dump.require_valid_dump:
                raise DumpImportError(
                    "Dump is not well formed", stage="init", **validation.to_dict()
                )
            self.reporter.warning(
                "Dump does not look complete, continuing", **validation.to_dict()
            )
        return validation

    def _prepare_target(self) -> None:
        runtime = self.settings.runtime
        try:
            conn = self.connect(**runtime.admin_connection().connect_kwargs())
        except psycopg2.Error as e:
            raise ConnectivityError(f"Cannot connect: {e}".strip()) from e

        try:
            conn.autocommit = True
            prepare_target_database(conn, runtime.target_database)
        except psycopg2.Error as e:
            raise ProvisioningError(
                f"Cannot create target database: {e}".strip(),
                database=runtime.target_database,
            ) from e
        finally:
            conn.close()

    def _import(self, run: PipelineRun, target: ConnectionConfig) -> None:
        source = run.dump.path

        try:
            work_dir = Path(tempfile.mkdtemp(prefix=f"anon-{run.run_id}-"))
            run.transient_files.append(work_dir)
            processed = preprocess(
                source,
                escape_quotes=self.settings.dump.escape_quotes,
                output_path=work_dir / (source.name + ".processed"),
            )
        except OSError as e:
            raise DumpImportError(f"Cannot preprocess dump: {e}", dump=str(source)) from e

        run.dump = Dump(path=processed, state=DumpState.PREPROCESSED, format=run.dump.format)
        self.transfer.import_dump(target, processed)

    def run(self, dump_path: str | Path, rules: RuleSet, output_name: str) -> PipelineResult:
        """
        Execute one full run

        Returns:
            PipelineResult with the path of the sanitized dump

        Raises:
            AnonymizerError: The first fatal error, after cleanup
        """
        target = self.settings.runtime.target_connection()

        with self.scoped_run(dump_path, rules, output_name) as run:
            with trace_operation("pipeline.run", run_id=run.run_id, output=output_name):
                self.reporter.info(
                    f"Starting run {run.run_id}",
                    run_id=run.run_id,
                    dump=str(run.dump.path),
                    tables=len(rules),
                )
                validation = self._preflight(run)

                with self._stage(run, PipelineState.PROVISIONING):
                    run.instance = self.runtime.provision()

                with self._stage(run, PipelineState.AWAITING_HEALTH):
                    self.runtime.wait_until_healthy(run.instance)

                with self._stage(run, PipelineState.AWAITING_CONNECTIVITY):
                    self.runtime.wait_until_accepting_connections(run.instance)

                with self._stage(run, PipelineState.PREPARING_TARGET_SCHEMA):
                    self._prepare_target()

                with self._stage(run, PipelineState.IMPORTING):
                    self._import(run, target)

                with self._stage(run, PipelineState.SETTING_UP_MASKING):
                    run.pool = self.pool_factory(target)
                    with run.pool.acquire() as conn:
                        setup_masking(conn, self.settings.masking, self.reporter)

                with self._stage(run, PipelineState.APPLYING_RULES):
                    if not self.runtime.check_healthy(run.instance):
                        raise ProvisioningError(
                            "Container is not healthy before rule application",
                            container=run.instance.name,
                            health=run.instance.health.value,
                        )
                    applier = MaskingRuleApplier(run.pool, self.settings.masking, self.reporter)
                    summary = applier.apply_rules(rules)

                with self._stage(run, PipelineState.EXPORTING):
                    with run.pool.acquire() as conn:
                        materialize_and_strip(conn, self.settings.masking, self.reporter)
                    run.output_path = self.transfer.export_dump(target, output_name)
                    run.dump = Dump(
                        path=run.output_path, state=DumpState.EXPORTED, format=run.dump.format
                    )

                with self._stage(run, PipelineState.CLEANUP):
                    run.cleanup()
                run.transition(PipelineState.DONE)

                add_span_attributes(
                    tables_masked=len(summary.masked), columns_masked=summary.columns_masked
                )
                self.reporter.info(
                    f"Run {run.run_id} finished: {run.output_path}",
                    run_id=run.run_id,
                    output=str(run.output_path),
                    tables_masked=len(summary.masked),
                    tables_skipped=len(summary.skipped),
                )

        return PipelineResult(
            output_path=run.output_path,
            masking_summary=summary,
            validation=validation,
            state_history=tuple(run.history),
            stage_durations=dict(run.stage_durations),
            run_id=run.run_id,
        )


def _default_pool(connection: ConnectionConfig) -> PostgresConnectionPool:
    return PostgresConnectionPool(
        host=connection.host,
        port=connection.port,
        database=connection.database,
        user=connection.user,
        password=connection.password,
        min_size=1,
        max_size=2,
        pool_name="target",
    )
