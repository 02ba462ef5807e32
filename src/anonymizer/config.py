"""
Settings for the anonymization pipeline.

Defaults reproduce a stock PostgreSQL Anonymizer container on a local
Docker daemon. Every value can be overridden from the environment
(``ANON_*`` variables, see ``AnonymizerSettings.from_env``) and from the
command line.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from src.utils.sql_safety import validate_identifier, validate_positive_int

from .models import ConnectionConfig

DEFAULT_IMAGE = "registry.gitlab.com/dalibo/postgresql_anonymizer:latest"

# Statements run after the masked role is created; ``{role}`` is replaced
# with the quoted role name. Which catalogs a masked role may read differs
# between engine versions, so this list is configuration, not contract.
DEFAULT_GRANTS: tuple[str, ...] = (
    "GRANT USAGE ON SCHEMA public, anon TO {role}",
    "GRANT SELECT ON ALL TABLES IN SCHEMA public TO {role}",
    "GRANT SELECT ON ALL SEQUENCES IN SCHEMA public TO {role}",
    "GRANT EXECUTE ON ALL FUNCTIONS IN SCHEMA anon TO {role}",
    "GRANT SELECT ON ALL TABLES IN SCHEMA anon TO {role}",
    "ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT SELECT ON TABLES TO {role}",
)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass(frozen=True)
class RuntimeSettings:
    """The ephemeral container and how long to wait for it."""

    image: str = DEFAULT_IMAGE
    container_name: str = "pg_anonymizer"
    host: str = "localhost"
    host_port: int = 15432
    container_port: int = 5432
    user: str = "postgres"
    password: str = "anon_password"
    maintenance_database: str = "postgres"
    target_database: str = "postgres_anon"
    memory: str = "2g"
    memory_swap: str = "4g"
    extra_env: dict[str, str] = field(default_factory=dict)
    volumes: tuple[str, ...] = ()
    health_max_attempts: int = 30
    health_interval: float = 2.0
    connect_max_attempts: int = 60
    connect_interval: float = 1.0
    pull_retries: int = 3
    docker_binary: str = "docker"
    command_timeout: float = 600.0

    def validate(self) -> None:
        validate_positive_int(self.host_port, "host_port")
        validate_positive_int(self.container_port, "container_port")
        validate_positive_int(self.health_max_attempts, "health_max_attempts")
        validate_positive_int(self.connect_max_attempts, "connect_max_attempts")
        validate_identifier(self.target_database)
        if self.health_interval < 0 or self.connect_interval < 0:
            raise ValueError("Wait intervals must not be negative")

    @property
    def environment(self) -> dict[str, str]:
        """Environment passed to the database container."""
        env = {
            "POSTGRES_USER": self.user,
            "POSTGRES_PASSWORD": self.password,
            "POSTGRES_DB": self.maintenance_database,
            "PGDATA": "/var/lib/postgresql/data/pgdata",
        }
        env.update(self.extra_env)
        return env

    def admin_connection(self) -> ConnectionConfig:
        """Superuser connection to the maintenance database through the published port."""
        return ConnectionConfig(
            host=self.host,
            port=self.host_port,
            user=self.user,
            password=self.password,
            database=self.maintenance_database,
        )

    def target_connection(self) -> ConnectionConfig:
        """Superuser connection to the database the dump is restored into."""
        return self.admin_connection().with_database(self.target_database)


@dataclass(frozen=True)
class MaskingSettings:
    """The masking extension and the masked role it is configured with."""

    extension: str = "anon"
    provider: str = "anon"
    schema: str = "public"
    masked_role: str = "dump_anon"
    masked_role_password: str = "anon_pass"
    initialize_extension: bool = True
    grants: tuple[str, ...] = DEFAULT_GRANTS

    def validate(self) -> None:
        validate_identifier(self.extension)
        validate_identifier(self.provider)
        validate_identifier(self.schema)
        validate_identifier(self.masked_role)


@dataclass(frozen=True)
class DumpSettings:
    """Dump preprocessing, tool execution and output placement."""

    output_dir: Path = Path("dumps")
    escape_quotes: bool = False
    require_valid_dump: bool = False
    # "container": run psql/pg_dump through docker exec; "host": local binaries
    tools_mode: str = "container"

    def validate(self) -> None:
        if self.tools_mode not in ("container", "host"):
            raise ValueError(f"Invalid tools_mode: {self.tools_mode!r}")


@dataclass(frozen=True)
class AnonymizerSettings:
    """All pipeline settings."""

    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    masking: MaskingSettings = field(default_factory=MaskingSettings)
    dump: DumpSettings = field(default_factory=DumpSettings)

    def validate(self) -> "AnonymizerSettings":
        """Validate every section; returns self for chaining."""
        self.runtime.validate()
        self.masking.validate()
        self.dump.validate()
        return self

    def with_overrides(self, **overrides: Any) -> "AnonymizerSettings":
        """
        Return a copy with ``section__field`` style overrides applied.

        ``None`` values are ignored so unset CLI options keep the defaults.

        Example:
            settings.with_overrides(runtime__host_port=25432, dump__escape_quotes=True)
        """
        sections: dict[str, dict[str, Any]] = {}
        top_level: dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if "__" in key:
                section, name = key.split("__", 1)
                sections.setdefault(section, {})[name] = value
            else:
                top_level[key] = value

        updated = {
            section: replace(getattr(self, section), **values)
            for section, values in sections.items()
        }
        return replace(self, **updated, **top_level)

    @classmethod
    def from_env(cls) -> "AnonymizerSettings":
        """
        Build settings from environment variables

        Environment variables:
            ANON_IMAGE, ANON_CONTAINER_NAME, ANON_HOST, ANON_PORT,
            ANON_DB_USER, ANON_DB_PASSWORD, ANON_TARGET_DB,
            ANON_HEALTH_ATTEMPTS, ANON_HEALTH_INTERVAL,
            ANON_CONNECT_ATTEMPTS, ANON_CONNECT_INTERVAL,
            ANON_MASKED_ROLE, ANON_MASKED_ROLE_PASSWORD, ANON_SCHEMA,
            ANON_OUTPUT_DIR, ANON_ESCAPE_QUOTES, ANON_TOOLS_MODE
        """
        defaults = RuntimeSettings()
        runtime = RuntimeSettings(
            image=os.getenv("ANON_IMAGE", defaults.image),
            container_name=os.getenv("ANON_CONTAINER_NAME", defaults.container_name),
            host=os.getenv("ANON_HOST", defaults.host),
            host_port=_env_int("ANON_PORT", defaults.host_port),
            user=os.getenv("ANON_DB_USER", defaults.user),
            password=os.getenv("ANON_DB_PASSWORD", defaults.password),
            target_database=os.getenv("ANON_TARGET_DB", defaults.target_database),
            health_max_attempts=_env_int("ANON_HEALTH_ATTEMPTS", defaults.health_max_attempts),
            health_interval=_env_float("ANON_HEALTH_INTERVAL", defaults.health_interval),
            connect_max_attempts=_env_int("ANON_CONNECT_ATTEMPTS", defaults.connect_max_attempts),
            connect_interval=_env_float("ANON_CONNECT_INTERVAL", defaults.connect_interval),
        )

        masking_defaults = MaskingSettings()
        masking = MaskingSettings(
            masked_role=os.getenv("ANON_MASKED_ROLE", masking_defaults.masked_role),
            masked_role_password=os.getenv(
                "ANON_MASKED_ROLE_PASSWORD", masking_defaults.masked_role_password
            ),
            schema=os.getenv("ANON_SCHEMA", masking_defaults.schema),
        )

        dump_defaults = DumpSettings()
        dump = DumpSettings(
            output_dir=Path(os.getenv("ANON_OUTPUT_DIR", str(dump_defaults.output_dir))),
            escape_quotes=_env_bool("ANON_ESCAPE_QUOTES", dump_defaults.escape_quotes),
            tools_mode=os.getenv("ANON_TOOLS_MODE", dump_defaults.tools_mode),
        )

        return cls(
            runtime=runtime,
            masking=masking,
            dump=dump,
        )
