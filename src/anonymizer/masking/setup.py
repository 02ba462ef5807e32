"""
Masking extension setup and teardown on the target database.

All statements are composed with ``psycopg2.sql`` so role, schema and
extension names are quoted by the driver. Connections are expected in
autocommit mode; transactions are opened explicitly.
"""

import logging
from typing import Any, NamedTuple

import psycopg2
from psycopg2 import sql

from ..config import MaskingSettings
from ..errors import ExportError, MaskingBindError
from ..reporting import NullReporter, Reporter

logger = logging.getLogger(__name__)


class MaskedColumn(NamedTuple):
    schema: str
    table: str
    column: str
    label: str


MASKED_COLUMNS_QUERY = """
    SELECT n.nspname, c.relname, a.attname, sl.label
    FROM pg_catalog.pg_seclabel sl
    JOIN pg_catalog.pg_class c
      ON sl.classoid = 'pg_catalog.pg_class'::regclass AND sl.objoid = c.oid
    JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
    JOIN pg_catalog.pg_attribute a
      ON a.attrelid = c.oid AND a.attnum = sl.objsubid
    WHERE sl.provider = %s AND sl.objsubid > 0
    ORDER BY n.nspname, c.relname, a.attnum
"""


def rollback_quietly(cursor: Any) -> None:
    """Roll back the open transaction; a failure here is only logged."""
    try:
        cursor.execute("ROLLBACK")
    except psycopg2.Error as e:
        logger.warning(f"Rollback failed: {e}")


def prepare_target_database(connection: Any, database: str) -> None:
    """Drop and re-create ``database``. Must run on another database, in autocommit."""
    name = sql.Identifier(database)
    with connection.cursor() as cursor:
        cursor.execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(name))
        cursor.execute(sql.SQL("CREATE DATABASE {}").format(name))
    logger.info(f"Re-created database {database}")


def setup_masking(
    connection: Any,
    settings: MaskingSettings,
    reporter: Reporter | None = None,
) -> None:
    """
    Install the masking extension and create the masked role

    ``CREATE EXTENSION`` runs on its own; initialization, role creation
    and grants run in one transaction.

    Raises:
        MaskingBindError: If any statement fails
    """
    reporter = reporter or NullReporter()
    extension = sql.Identifier(settings.extension)
    provider = sql.Identifier(settings.provider)
    role = sql.Identifier(settings.masked_role)

    with connection.cursor() as cursor:
        try:
            cursor.execute(
                sql.SQL("CREATE EXTENSION IF NOT EXISTS {} CASCADE").format(extension)
            )
        except psycopg2.Error as e:
            raise MaskingBindError(
                f"Cannot install extension: {e}".strip(),
                stage="setting_up_masking",
                extension=settings.extension,
            ) from e

        cursor.execute("BEGIN")
        try:
            if settings.initialize_extension:
                cursor.execute(sql.SQL("SELECT {}.init()").format(extension))
            cursor.execute(sql.SQL("DROP ROLE IF EXISTS {}").format(role))
            cursor.execute(
                sql.SQL("CREATE ROLE {} LOGIN PASSWORD {}").format(
                    role, sql.Literal(settings.masked_role_password)
                )
            )
            cursor.execute(
                sql.SQL("ALTER ROLE {} SET anon.transparent_dynamic_masking = True").format(role)
            )
            cursor.execute(
                sql.SQL("SECURITY LABEL FOR {} ON ROLE {} IS 'MASKED'").format(provider, role)
            )
            for grant in settings.grants:
                cursor.execute(sql.SQL(grant).format(role=role))
            cursor.execute("COMMIT")
        except psycopg2.Error as e:
            rollback_quietly(cursor)
            raise MaskingBindError(
                f"Cannot set up masked role: {e}".strip(),
                stage="setting_up_masking",
                role=settings.masked_role,
            ) from e

    reporter.info(
        f"Masking extension {settings.extension} ready, masked role {settings.masked_role}",
        extension=settings.extension,
        role=settings.masked_role,
    )


def list_masked_columns(cursor: Any, provider: str = "anon") -> list[MaskedColumn]:
    """Columns carrying a security label of ``provider``."""
    cursor.execute(MASKED_COLUMNS_QUERY, (provider,))
    return [MaskedColumn(*row) for row in cursor.fetchall()]


def materialize_and_strip(
    connection: Any,
    settings: MaskingSettings,
    reporter: Reporter | None = None,
) -> int:
    """
    Rewrite masked columns in place, then remove every trace of masking

    Static masking replaces the real values with their masked form so the
    exported dump no longer depends on the extension. Column labels, the
    masked role and the extension are then dropped. Everything happens in
    one transaction.

    Returns:
        Number of column labels removed

    Raises:
        ExportError: If any statement fails; nothing is changed
    """
    reporter = reporter or NullReporter()
    extension = sql.Identifier(settings.extension)
    provider = sql.Identifier(settings.provider)
    role = sql.Identifier(settings.masked_role)

    with connection.cursor() as cursor:
        cursor.execute("BEGIN")
        try:
            cursor.execute(sql.SQL("SELECT {}.anonymize_database()").format(extension))

            columns = list_masked_columns(cursor, settings.provider)
            for masked in columns:
                cursor.execute(
                    sql.SQL("SECURITY LABEL FOR {} ON COLUMN {}.{}.{} IS NULL").format(
                        provider,
                        sql.Identifier(masked.schema),
                        sql.Identifier(masked.table),
                        sql.Identifier(masked.column),
                    )
                )

            cursor.execute(
                "SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = %s",
                (settings.masked_role,),
            )
            if cursor.fetchone():
                cursor.execute(
                    sql.SQL("SECURITY LABEL FOR {} ON ROLE {} IS NULL").format(provider, role)
                )
                cursor.execute(sql.SQL("DROP OWNED BY {}").format(role))
                cursor.execute(sql.SQL("DROP ROLE {}").format(role))

            cursor.execute(sql.SQL("DROP EXTENSION IF EXISTS {} CASCADE").format(extension))
            cursor.execute("COMMIT")
        except psycopg2.Error as e:
            rollback_quietly(cursor)
            raise ExportError(
                f"Cannot materialize masks: {e}".strip(), stage="exporting"
            ) from e

    reporter.info(
        f"Materialized {len(columns)} masked column(s) and removed masking metadata",
        columns=len(columns),
    )
    return len(columns)
