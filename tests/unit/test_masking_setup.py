"""
Unit tests for src/anonymizer/masking/setup.py
"""

import psycopg2
import pytest

from src.anonymizer.config import MaskingSettings
from src.anonymizer.errors import ExportError, MaskingBindError
from src.anonymizer.masking import (
    list_masked_columns,
    materialize_and_strip,
    prepare_target_database,
    setup_masking,
)
from src.anonymizer.masking.setup import MASKED_COLUMNS_QUERY

LABELS = [
    ("public", "users", "first_name", "MASKED WITH FUNCTION anon.fake_first_name()"),
    ("public", "users", "email", "MASKED WITH FUNCTION anon.partial_email(email)"),
]


class TestPrepareTargetDatabase:
    """Test prepare_target_database function"""

    def test_drops_and_creates(self, fake_cursor_factory, fake_connection_factory):
        cursor = fake_cursor_factory()

        prepare_target_database(fake_connection_factory(cursor), "postgres_anon")

        assert cursor.executed == [
            'DROP DATABASE IF EXISTS "postgres_anon"',
            'CREATE DATABASE "postgres_anon"',
        ]


class TestSetupMasking:
    """Test setup_masking function"""

    def test_statements(self, fake_cursor_factory, fake_connection_factory):
        # Arrange
        cursor = fake_cursor_factory()
        settings = MaskingSettings(grants=("GRANT USAGE ON SCHEMA public TO {role}",))

        # Act
        setup_masking(fake_connection_factory(cursor), settings)

        # Assert
        assert cursor.executed == [
            'CREATE EXTENSION IF NOT EXISTS "anon" CASCADE',
            "BEGIN",
            'SELECT "anon".init()',
            'DROP ROLE IF EXISTS "dump_anon"',
            "CREATE ROLE \"dump_anon\" LOGIN PASSWORD 'anon_pass'",
            'ALTER ROLE "dump_anon" SET anon.transparent_dynamic_masking = True',
            'SECURITY LABEL FOR "anon" ON ROLE "dump_anon" IS \'MASKED\'',
            'GRANT USAGE ON SCHEMA public TO "dump_anon"',
            "COMMIT",
        ]

    def test_skips_init_when_disabled(self, fake_cursor_factory, fake_connection_factory):
        cursor = fake_cursor_factory()

        setup_masking(fake_connection_factory(cursor), MaskingSettings(initialize_extension=False))

        assert not cursor.statements_like("init()")

    def test_missing_extension(self, fake_cursor_factory, fake_connection_factory):
        cursor = fake_cursor_factory(
            fail_on={"CREATE EXTENSION": psycopg2.OperationalError("could not open extension")}
        )

        with pytest.raises(MaskingBindError) as exc_info:
            setup_masking(fake_connection_factory(cursor), MaskingSettings())

        assert exc_info.value.stage == "setting_up_masking"
        assert "BEGIN" not in cursor.executed

    def test_role_failure_rolls_back(self, fake_cursor_factory, fake_connection_factory):
        cursor = fake_cursor_factory(
            fail_on={"CREATE ROLE": psycopg2.ProgrammingError("permission denied")}
        )

        with pytest.raises(MaskingBindError):
            setup_masking(fake_connection_factory(cursor), MaskingSettings())

        assert cursor.executed[-1] == "ROLLBACK"
        assert cursor.committed == ['CREATE EXTENSION IF NOT EXISTS "anon" CASCADE']


class TestListMaskedColumns:
    """Test list_masked_columns function"""

    def test_returns_named_tuples(self, fake_cursor_factory):
        cursor = fake_cursor_factory(results={"pg_seclabel": LABELS})

        columns = list_masked_columns(cursor)

        assert [c.column for c in columns] == ["first_name", "email"]
        assert cursor.params[-1] == ("anon",)
        assert cursor.executed[-1] == MASKED_COLUMNS_QUERY


class TestMaterializeAndStrip:
    """Test materialize_and_strip function"""

    def test_materializes_then_strips(self, fake_cursor_factory, fake_connection_factory):
        # Arrange
        cursor = fake_cursor_factory(results={"pg_seclabel": LABELS, "pg_roles": [(1,)]})

        # Act
        removed = materialize_and_strip(fake_connection_factory(cursor), MaskingSettings())

        # Assert
        assert removed == 2
        statements = [s for s in cursor.committed if s != MASKED_COLUMNS_QUERY]
        assert statements[0] == 'SELECT "anon".anonymize_database()'
        assert statements[1:3] == [
            'SECURITY LABEL FOR "anon" ON COLUMN "public"."users"."first_name" IS NULL',
            'SECURITY LABEL FOR "anon" ON COLUMN "public"."users"."email" IS NULL',
        ]
        assert statements[-4:] == [
            'SECURITY LABEL FOR "anon" ON ROLE "dump_anon" IS NULL',
            'DROP OWNED BY "dump_anon"',
            'DROP ROLE "dump_anon"',
            'DROP EXTENSION IF EXISTS "anon" CASCADE',
        ]

    def test_missing_role_is_not_dropped(self, fake_cursor_factory, fake_connection_factory):
        cursor = fake_cursor_factory(results={"pg_seclabel": []})

        removed = materialize_and_strip(fake_connection_factory(cursor), MaskingSettings())

        assert removed == 0
        assert not cursor.statements_like("DROP ROLE")
        assert cursor.statements_like("DROP EXTENSION")

    def test_failure_rolls_back(self, fake_cursor_factory, fake_connection_factory):
        cursor = fake_cursor_factory(
            results={"pg_seclabel": LABELS},
            fail_on={"anonymize_database": psycopg2.InternalError("out of memory")},
        )

        with pytest.raises(ExportError) as exc_info:
            materialize_and_strip(fake_connection_factory(cursor), MaskingSettings())

        assert exc_info.value.stage == "exporting"
        assert cursor.executed[-1] == "ROLLBACK"
        assert cursor.committed == []
