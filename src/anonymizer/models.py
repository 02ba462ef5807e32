"""
Data model for the anonymization pipeline.

Value objects (rules, connection settings, validation results) are frozen
dataclasses. RuntimeInstance is the one mutable record: its lifecycle state
and last observed health change while the run progresses.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping


class DumpFormat(str, Enum):
    """On-disk format of a dump file."""

    PLAIN = "plain"
    ARCHIVE = "archive"


class DumpState(str, Enum):
    """Lifecycle of a dump artifact within one run."""

    RAW = "raw"
    PREPROCESSED = "preprocessed"
    EXPORTED = "exported"


@dataclass(frozen=True)
class Dump:
    """A dump file and where it is in its lifecycle."""

    path: Path
    state: DumpState = DumpState.RAW
    format: DumpFormat = DumpFormat.PLAIN


@dataclass(frozen=True)
class TableRule:
    """Column name -> mask expression for one table.

    Mask expressions are opaque; they are handed verbatim to the masking
    extension.
    """

    masks: Mapping[str, str]

    def __post_init__(self) -> None:
        object.__setattr__(self, "masks", MappingProxyType(dict(self.masks)))

    def __len__(self) -> int:
        return len(self.masks)


@dataclass(frozen=True)
class RuleSet:
    """Table name -> TableRule. Table lookups are case-insensitive."""

    tables: Mapping[str, TableRule]

    def __post_init__(self) -> None:
        seen: dict[str, str] = {}
        for name in self.tables:
            folded = name.lower()
            if folded in seen:
                raise ValueError(
                    f"Tables {seen[folded]!r} and {name!r} differ only by case"
                )
            seen[folded] = name
        object.__setattr__(self, "tables", MappingProxyType(dict(self.tables)))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Mapping[str, Any]]) -> "RuleSet":
        """Build a rule set from ``{table: {"masks": {column: expression}}}``."""
        return cls({
            table: TableRule(masks=dict(definition.get("masks") or {}))
            for table, definition in data.items()
        })

    def get(self, table_name: str) -> TableRule | None:
        folded = table_name.lower()
        for name, rule in self.tables.items():
            if name.lower() == folded:
                return rule
        return None

    def items(self) -> Iterator[tuple[str, TableRule]]:
        return iter(self.tables.items())

    def __len__(self) -> int:
        return len(self.tables)

    def __bool__(self) -> bool:
        return bool(self.tables)

    @property
    def column_count(self) -> int:
        return sum(len(rule) for rule in self.tables.values())


@dataclass(frozen=True)
class ConnectionConfig:
    """Where and as whom to connect to PostgreSQL."""

    host: str
    port: int
    user: str
    password: str
    database: str

    def with_database(self, database: str) -> "ConnectionConfig":
        return replace(self, database=database)

    def connect_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``psycopg2.connect``."""
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "dbname": self.database,
        }

    def __repr__(self) -> str:
        return (
            f"ConnectionConfig(host={self.host!r}, port={self.port}, "
            f"user={self.user!r}, database={self.database!r})"
        )


class RuntimeState(str, Enum):
    """Lifecycle state of the ephemeral container."""

    CREATED = "created"
    RUNNING = "running"
    HEALTHY = "healthy"
    STOPPED = "stopped"
    REMOVED = "removed"


class HealthStatus(str, Enum):
    """Health as reported by the container runtime."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NONE = "none"  # image defines no healthcheck
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ContainerStatus:
    """One observation of a container's state."""

    running: bool
    exit_code: int
    health: HealthStatus
    status: str = ""

    @property
    def is_ready(self) -> bool:
        """Healthy, or running without any healthcheck defined."""
        if not self.running:
            return False
        return self.health in (HealthStatus.HEALTHY, HealthStatus.NONE)


@dataclass
class RuntimeInstance:
    """The ephemeral database container owned by one pipeline run."""

    container_id: str
    name: str
    image: str
    host: str
    port: int
    state: RuntimeState = RuntimeState.CREATED
    health: HealthStatus = HealthStatus.UNKNOWN

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def is_healthy(self) -> bool:
        return self.state is RuntimeState.HEALTHY


@dataclass(frozen=True)
class DumpValidation:
    """Result of the pre-flight scan of a dump."""

    has_schema: bool
    has_data: bool
    source_version: int | None
    dump_format: DumpFormat = DumpFormat.PLAIN

    @property
    def is_well_formed(self) -> bool:
        if self.dump_format is DumpFormat.ARCHIVE:
            return True
        return self.has_schema and self.has_data and self.source_version is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": self.dump_format.value,
            "has_schema": self.has_schema,
            "has_data": self.has_data,
            "source_version": self.source_version,
            "is_well_formed": self.is_well_formed,
        }


@dataclass(frozen=True)
class TableMaskResult:
    """Outcome of applying one TableRule."""

    requested_name: str
    table: str
    columns: tuple[str, ...]
    row_count: int


@dataclass
class MaskingSummary:
    """Outcome of applying a whole RuleSet."""

    masked: list[TableMaskResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def columns_masked(self) -> int:
        return sum(len(result.columns) for result in self.masked)

    def row_count(self, table: str) -> int | None:
        folded = table.lower()
        for result in self.masked:
            if result.table.lower() == folded:
                return result.row_count
        return None
