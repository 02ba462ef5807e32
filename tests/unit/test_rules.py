"""
Unit tests for src/anonymizer/rules.py
"""

import json

import pytest

from src.anonymizer.errors import RuleSetError
from src.anonymizer.rules import load_rules, parse_rules


class TestParseRules:
    """Test parse_rules function"""

    def test_valid_document(self):
        rules = parse_rules({
            "users": {"masks": {"email": "anon.partial_email(email)"}},
            "Orders": {"masks": {"note": "anon.lorem_ipsum()", "total": "0"}},
        })

        assert len(rules) == 2
        assert rules.column_count == 3
        assert rules.get("orders").masks["total"] == "0"

    @pytest.mark.parametrize("document", [
        {},
        [],
        None,
        {"users": {}},
        {"users": {"masks": {}}},
        {"users": {"masks": {"email": ""}}},
        {"users": {"masks": {"email": 42}}},
        {"users": {"masks": {"email": "x"}, "extra": 1}},
    ])
    def test_invalid_documents(self, document):
        with pytest.raises(RuleSetError):
            parse_rules(document)

    def test_blank_expression_rejected(self):
        with pytest.raises(RuleSetError) as exc_info:
            parse_rules({"users": {"masks": {"email": "   "}}})

        assert exc_info.value.context["table"] == "users"

    def test_injection_in_table_name_rejected(self):
        with pytest.raises(RuleSetError):
            parse_rules({"users; DROP TABLE x": {"masks": {"email": "anon.fake_email()"}}})

    def test_tables_differing_only_by_case_rejected(self):
        with pytest.raises(RuleSetError):
            parse_rules({
                "users": {"masks": {"email": "anon.fake_email()"}},
                "Users": {"masks": {"email": "anon.fake_email()"}},
            })

    def test_error_reports_location(self):
        with pytest.raises(RuleSetError) as exc_info:
            parse_rules({"users": {"masks": {"email": 1}}}, source="rules.yaml")

        assert exc_info.value.context["source"] == "rules.yaml"
        assert exc_info.value.context["location"] == "users/masks/email"


class TestLoadRules:
    """Test load_rules function"""

    def test_yaml(self, rules_file):
        rules = load_rules(rules_file)

        assert dict(rules.get("users").masks) == {
            "first_name": "anon.fake_first_name()",
            "email": "anon.partial_email(email)",
        }

    def test_json(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"users": {"masks": {"email": "anon.fake_email()"}}}))

        rules = load_rules(path)

        assert rules.column_count == 1

    def test_missing_file(self, tmp_path):
        with pytest.raises(RuleSetError, match="not found"):
            load_rules(tmp_path / "missing.yaml")

    def test_unparsable_yaml(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("users: [unclosed\n")

        with pytest.raises(RuleSetError, match="Cannot parse"):
            load_rules(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("")

        with pytest.raises(RuleSetError):
            load_rules(path)
