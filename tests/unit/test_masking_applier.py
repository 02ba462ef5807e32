"""
Unit tests for src/anonymizer/masking/applier.py

A FakeCursor answers catalog lookups; statements only count as applied
once the surrounding transaction commits.
"""

from unittest.mock import Mock

import psycopg2
import pytest

from src.anonymizer.config import MaskingSettings
from src.anonymizer.errors import MaskingBindError, SchemaValidationError
from src.anonymizer.masking import MaskingRuleApplier
from src.anonymizer.models import RuleSet


def _rules(**tables):
    return RuleSet.from_mapping({name: {"masks": masks} for name, masks in tables.items()})


@pytest.fixture
def reporter():
    return Mock()


@pytest.fixture
def build(fake_cursor_factory, fake_pool_factory, catalog, reporter):
    def _build(tables, fail_on=None, row_count=3):
        cursor = fake_cursor_factory(results=catalog(tables, row_count), fail_on=fail_on)
        applier = MaskingRuleApplier(
            fake_pool_factory(cursor), MaskingSettings(), reporter=reporter
        )
        return applier, cursor
    return _build


class TestValidateTable:
    """Test validate_table and resolve_table"""

    def test_case_insensitive_match_returns_stored_name(self, build):
        applier, cursor = build({"Users": ["id"]})

        assert applier.validate_table(cursor, "users") == "Users"

    def test_exact_match_preferred(self, build):
        applier, cursor = build({"Users": ["id"], "users": ["id"]})

        assert applier.validate_table(cursor, "users") == "users"

    def test_missing_table(self, build):
        applier, cursor = build({"users": ["id"]})

        assert applier.validate_table(cursor, "orders") is None
        with pytest.raises(SchemaValidationError) as exc_info:
            applier.resolve_table(cursor, "orders")
        assert exc_info.value.fatal is False


class TestApplyRules:
    """Test MaskingRuleApplier.apply_rules"""

    def test_binds_every_column(self, build):
        # Arrange
        applier, cursor = build({"users": ["id", "first_name", "email"]})
        rules = _rules(users={
            "first_name": "anon.fake_first_name()",
            "email": "anon.partial_email(email)",
        })

        # Act
        summary = applier.apply_rules(rules)

        # Assert
        labels = [s for s in cursor.committed if s.startswith("SECURITY LABEL")]
        assert labels == [
            'SECURITY LABEL FOR "anon" ON COLUMN "public"."users"."first_name" '
            "IS 'MASKED WITH FUNCTION anon.fake_first_name()'",
            'SECURITY LABEL FOR "anon" ON COLUMN "public"."users"."email" '
            "IS 'MASKED WITH FUNCTION anon.partial_email(email)'",
        ]
        assert summary.masked[0].columns == ("first_name", "email")
        assert summary.row_count("users") == 3
        assert summary.columns_masked == 2

    def test_runs_in_one_transaction(self, build):
        applier, cursor = build({"users": ["email"], "orders": ["note"]})

        applier.apply_rules(_rules(users={"email": "anon.fake_email()"},
                                   orders={"note": "anon.lorem_ipsum()"}))

        assert cursor.executed.count("BEGIN") == 1
        assert cursor.executed.count("COMMIT") == 1
        assert cursor.executed[0] == "BEGIN"
        assert cursor.executed[-1] == "COMMIT"

    def test_mixed_case_table_uses_stored_casing(self, build):
        applier, cursor = build({"Customers": ["Email"]})

        summary = applier.apply_rules(_rules(customers={"email": "anon.fake_email()"}))

        assert summary.masked[0].requested_name == "customers"
        assert summary.masked[0].table == "Customers"
        assert '"public"."Customers"."Email"' in cursor.committed[-2]

    def test_missing_table_is_skipped(self, build, reporter):
        applier, cursor = build({"users": ["email"]})

        summary = applier.apply_rules(_rules(
            orders={"note": "anon.lorem_ipsum()"},
            users={"email": "anon.fake_email()"},
        ))

        assert summary.skipped == ["orders"]
        assert [r.table for r in summary.masked] == ["users"]
        reporter.table_skipped.assert_called_once()
        assert reporter.table_skipped.call_args[0][0] == "orders"
        assert len(cursor.statements_like('"users"."email"')) == 1

    def test_bind_failure_rolls_back_everything(self, build, reporter):
        # Arrange
        applier, cursor = build(
            {"users": ["email"], "orders": ["note"]},
            fail_on={'"orders"."note"': psycopg2.ProgrammingError("function does not exist")},
        )
        rules = _rules(
            users={"email": "anon.fake_email()"},
            orders={"note": "anon.no_such_function()"},
        )

        # Act
        with pytest.raises(MaskingBindError) as exc_info:
            applier.apply_rules(rules)

        # Assert
        assert exc_info.value.context["table"] == "orders"
        assert exc_info.value.context["column"] == "note"
        assert exc_info.value.context["expression"] == "anon.no_such_function()"
        assert "ROLLBACK" in cursor.executed
        assert "COMMIT" not in cursor.executed
        assert not [s for s in cursor.committed if s.startswith("SECURITY LABEL")]
        reporter.table_masked.assert_not_called()

    def test_missing_column_rolls_back(self, build):
        applier, cursor = build({"users": ["email"]})

        with pytest.raises(MaskingBindError) as exc_info:
            applier.apply_rules(_rules(users={"phone": "anon.fake_phone()"}))

        assert exc_info.value.context["column"] == "phone"
        assert cursor.executed[-1] == "ROLLBACK"

    def test_empty_rule_set_rejected(self, build):
        applier, cursor = build({})

        with pytest.raises(MaskingBindError):
            applier.apply_rules(RuleSet({}))

        assert cursor.executed == []

    def test_reports_masked_tables_after_commit(self, build, reporter):
        applier, _ = build({"users": ["email"]}, row_count=7)

        applier.apply_rules(_rules(users={"email": "anon.fake_email()"}))

        result = reporter.table_masked.call_args[0][0]
        assert result.table == "users"
        assert result.row_count == 7

    def test_expression_with_quotes_is_escaped(self, build):
        applier, cursor = build({"users": ["city"]})

        applier.apply_rules(_rules(users={"city": "anon.random_in(ARRAY['Paris','Rome'])"}))

        label = cursor.statements_like("SECURITY LABEL")[0]
        assert label.endswith(
            "IS 'MASKED WITH FUNCTION anon.random_in(ARRAY[''Paris'',''Rome''])'"
        )
