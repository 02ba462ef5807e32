"""
Binding of masking rules to live columns.

Table and column names from the rule set are matched case-insensitively
against the catalog; the stored casing is then used in every statement.
The whole rule set is applied in a single transaction, so a run either
binds every column of every existing table or nothing at all.
"""

from typing import Any

import psycopg2
from psycopg2 import sql

from src.utils.db_pool import BaseConnectionPool
from src.utils.tracing import add_span_attributes, add_span_event, trace_operation

from ..config import MaskingSettings
from ..errors import MaskingBindError, SchemaValidationError
from ..models import MaskingSummary, RuleSet, TableMaskResult, TableRule
from ..reporting import NullReporter, Reporter
from .setup import rollback_quietly

TABLE_LOOKUP_QUERY = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = %s
      AND table_type = 'BASE TABLE'
      AND lower(table_name) = lower(%s)
    ORDER BY table_name = %s DESC, table_name
    LIMIT 1
"""

COLUMN_LOOKUP_QUERY = """
    SELECT column_name
    FROM information_schema.columns
    WHERE table_schema = %s AND table_name = %s
    ORDER BY ordinal_position
"""


class MaskingRuleApplier:
    """
    Applies a RuleSet as security labels on the target database

    Usage:
        applier = MaskingRuleApplier(pool, MaskingSettings())
        summary = applier.apply_rules(rules)
    """

    def __init__(
        self,
        pool: BaseConnectionPool,
        settings: MaskingSettings,
        reporter: Reporter | None = None,
    ):
        self.pool = pool
        self.settings = settings
        self.reporter = reporter or NullReporter()

    def validate_table(self, cursor: Any, table_name: str) -> str | None:
        """Return the stored name of ``table_name`` (any casing), or None."""
        cursor.execute(
            TABLE_LOOKUP_QUERY, (self.settings.schema, table_name, table_name)
        )
        row = cursor.fetchone()
        return row[0] if row else None

    def resolve_table(self, cursor: Any, table_name: str) -> str:
        """Like validate_table, but raises SchemaValidationError when absent."""
        exact = self.validate_table(cursor, table_name)
        if exact is None:
            raise SchemaValidationError(
                "Table not found in schema",
                stage="applying_rules",
                table=table_name,
                schema=self.settings.schema,
            )
        return exact

    def _resolve_columns(self, cursor: Any, table: str, rule: TableRule) -> dict[str, str]:
        cursor.execute(COLUMN_LOOKUP_QUERY, (self.settings.schema, table))
        stored = [row[0] for row in cursor.fetchall()]
        by_folded: dict[str, str] = {}
        for name in stored:
            by_folded.setdefault(name.lower(), name)

        resolved = {}
        for column in rule.masks:
            exact = column if column in stored else by_folded.get(column.lower())
            if exact is None:
                raise MaskingBindError(
                    "Column not found",
                    stage="applying_rules",
                    table=table,
                    column=column,
                )
            resolved[column] = exact
        return resolved

    def apply_table_rule(self, cursor: Any, table: str, rule: TableRule) -> tuple[str, ...]:
        """
        Bind every mask expression of ``rule`` to its column of ``table``

        ``table`` must be the stored table name (see resolve_table).

        Returns:
            The stored names of the masked columns

        Raises:
            MaskingBindError: If a column is missing or a label is rejected
        """
        columns = self._resolve_columns(cursor, table, rule)
        provider = sql.Identifier(self.settings.provider)
        schema = sql.Identifier(self.settings.schema)

        for requested, column in columns.items():
            expression = rule.masks[requested]
            statement = sql.SQL("SECURITY LABEL FOR {} ON COLUMN {}.{}.{} IS {}").format(
                provider,
                schema,
                sql.Identifier(table),
                sql.Identifier(column),
                sql.Literal(f"MASKED WITH FUNCTION {expression}"),
            )
            try:
                cursor.execute(statement)
            except psycopg2.Error as e:
                raise MaskingBindError(
                    f"Cannot bind mask: {e}".strip(),
                    stage="applying_rules",
                    table=table,
                    column=column,
                    expression=expression,
                ) from e

            self.reporter.debug(
                f"Bound {expression} to {table}.{column}",
                table_name=table,
                column=column,
            )

        return tuple(columns.values())

    def verify_masking(self, cursor: Any, table: str) -> int:
        """Row count of ``table``, recorded for auditing."""
        cursor.execute(
            sql.SQL("SELECT count(*) FROM {}.{}").format(
                sql.Identifier(self.settings.schema), sql.Identifier(table)
            )
        )
        return cursor.fetchone()[0]

    def _apply_all(self, cursor: Any, rules: RuleSet) -> MaskingSummary:
        summary = MaskingSummary()
        for requested, rule in rules.items():
            try:
                table = self.resolve_table(cursor, requested)
            except SchemaValidationError as e:
                summary.skipped.append(requested)
                self.reporter.table_skipped(requested, e.message)
                add_span_event("table_skipped", table=requested)
                continue

            columns = self.apply_table_rule(cursor, table, rule)
            row_count = self.verify_masking(cursor, table)
            summary.masked.append(
                TableMaskResult(
                    requested_name=requested,
                    table=table,
                    columns=columns,
                    row_count=row_count,
                )
            )
        return summary

    def apply_rules(self, rules: RuleSet) -> MaskingSummary:
        """
        Apply the whole rule set in one transaction

        Tables missing from the schema are skipped. Any other failure
        rolls back every binding made by this call and is re-raised.

        Raises:
            MaskingBindError: On an empty rule set or a failed binding
        """
        if not rules:
            raise MaskingBindError("Rule set is empty", stage="applying_rules")

        with trace_operation("masking.apply_rules", tables=len(rules)):
            with self.pool.acquire() as conn, conn.cursor() as cursor:
                cursor.execute("BEGIN")
                try:
                    summary = self._apply_all(cursor, rules)
                    cursor.execute("COMMIT")
                except psycopg2.Error as e:
                    rollback_quietly(cursor)
                    raise MaskingBindError(
                        f"Rule application failed: {e}".strip(), stage="applying_rules"
                    ) from e
                except Exception:
                    rollback_quietly(cursor)
                    raise

            add_span_attributes(
                tables_masked=len(summary.masked),
                tables_skipped=len(summary.skipped),
                columns_masked=summary.columns_masked,
            )

        for result in summary.masked:
            self.reporter.table_masked(result)
        return summary
