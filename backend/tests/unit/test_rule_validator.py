"""
Unit tests for the rule_validator module.
"""
from rule_schema import Filter, Rule
from rule_validator import INVALID, VALID, WARNING, validate, validate_filter, validate_rule


LOGO_UUID = "5f0c1c1e-2b1a-4a43-9c1f-3a2b1c0d9e8f"


def _checks(report, severity=None):
    return [i.check for i in report.issues if severity is None or i.severity.value == severity]


class TestValidateRule:
    """Tests for validate_rule."""

    def test_valid_structured_rule(self):
        report = validate_rule(
            [{"field": "group_title", "operator": "contains", "value": "News"}],
            [{"action_type": "set_value", "target_field": "group_title", "payload": "NEWS"}],
        )
        assert report.overall == VALID
        assert report.valid
        assert report.issues == []

    def test_valid_expression(self):
        report = validate_rule(expression='group_title contains "News" SET group_title = "NEWS"')
        assert report.overall == VALID

    def test_syntax_error_has_position(self):
        report = validate_rule(expression='channel_name contains "HD')
        assert report.overall == INVALID
        issue = report.errors[0]
        assert issue.check == "syntax"
        assert issue.position == 22

    def test_unknown_field_is_warning_with_suggestions(self):
        report = validate_rule(expression='Group_Title contains "News"')
        assert report.overall == WARNING
        assert report.valid
        warning = report.warnings[0]
        assert warning.check == "fields"
        assert warning.suggestions == ["group_title"]
        assert warning.position == 0

    def test_unknown_operator(self):
        report = validate_rule([{"field": "channel_name", "operator": "like", "value": "x"}])
        assert report.overall == INVALID
        assert _checks(report, "error") == ["operators"]

    def test_invalid_regex(self):
        report = validate_rule([{"field": "channel_name", "operator": "matches", "value": "(unclosed"}])
        assert _checks(report, "error") == ["regex"]

    def test_invalid_regex_replace_pattern(self):
        report = validate_rule([], [{
            "action_type": "transform_value",
            "target_field": "channel_name",
            "payload": {"transform": "regex_replace", "pattern": "[a-", "replacement": ""},
        }])
        assert "regex" in _checks(report, "error")

    def test_regex_replace_missing_group(self):
        report = validate_rule([], [{
            "action_type": "transform_value",
            "target_field": "channel_name",
            "payload": {"transform": "regex_replace", "pattern": r"(\w+) HD", "replacement": "$2"},
        }])
        assert report.overall == INVALID
        assert _checks(report, "error") == ["regex"]
        assert "Invalid replacement" in report.first_error()

    def test_regex_replace_valid_groups(self):
        report = validate_rule([], [{
            "action_type": "transform_value",
            "target_field": "channel_name",
            "payload": {"transform": "regex_replace", "pattern": r"(\w+) (?P<q>HD)",
                        "replacement": r"$1 \2 \g<q>"},
        }])
        assert report.overall == VALID

    def test_regex_replace_stray_backslash_is_literal(self):
        report = validate_rule([], [{
            "action_type": "transform_value",
            "target_field": "channel_name",
            "payload": {"transform": "regex_replace", "pattern": "HD", "replacement": r"\d"},
        }])
        assert report.overall == VALID

    def test_value_too_long(self):
        report = validate_rule(
            [{"field": "channel_name", "operator": "contains", "value": "x" * 20}],
            max_value_length=10,
        )
        assert _checks(report, "error") == ["length"]

    def test_mixed_connectors_warn(self):
        report = validate_rule(expression='a equals "1" AND b equals "2" OR c equals "3"')
        assert any("mixed" in w.message for w in report.warnings)

    def test_parenthesized_connectors_do_not_warn(self):
        report = validate_rule(
            expression='(channel_name equals "1" AND tvg_id equals "2") OR group_title equals "3"'
        )
        assert report.overall == VALID

    def test_set_logo_requires_uuid(self):
        bad = validate_rule([], [{"action_type": "set_logo", "payload": "not-a-uuid"}])
        good = validate_rule([], [{"action_type": "set_logo", "payload": LOGO_UUID}])
        assert bad.overall == INVALID
        assert good.overall == VALID

    def test_set_label_requires_key(self):
        report = validate_rule([], [{"action_type": "set_label", "payload": {"value": "uk"}}])
        assert any("label key" in e.message for e in report.errors)

    def test_set_value_requires_target(self):
        report = validate_rule([], [{"action_type": "set_value", "payload": "x"}])
        assert any("target field" in e.message for e in report.errors)

    def test_unknown_transform(self):
        report = validate_rule([], [{"action_type": "transform_value", "target_field": "channel_name",
                                     "payload": {"transform": "reverse"}}])
        assert any("Unknown transform" in e.message for e in report.errors)

    def test_non_object_condition(self):
        report = validate_rule(["channel_name contains x"])
        assert report.overall == INVALID

    def test_unknown_logical_operator_is_syntax_error(self):
        report = validate_rule([{"field": "channel_name", "operator": "contains", "value": "HD",
                                 "logical_operator": "XOR"}])
        assert report.overall == INVALID
        assert _checks(report, "error") == ["syntax"]
        assert report.first_error().startswith("conditions[0]:")

    def test_non_object_nested_condition(self):
        report = validate_rule([
            {"field": "channel_name", "operator": "contains", "value": "HD"},
            {"conditions": [["channel_name", "contains", "x"]]},
        ])
        assert report.overall == INVALID
        assert report.first_error().startswith("conditions[1]:")

    def test_clear_value_needs_only_target(self):
        report = validate_rule([], [{"action_type": "clear_value", "target_field": "tvg_logo"}])
        assert report.overall == VALID

    def test_clear_value_requires_target(self):
        report = validate_rule([], [{"action_type": "clear_value"}])
        assert report.overall == INVALID

    def test_clear_value_expression(self):
        report = validate_rule(expression='channel_name contains "HD" DELETE tvg_logo')
        assert report.overall == VALID

    def test_empty_group_is_error(self):
        report = validate_rule([{"conditions": []}])
        assert any(e.message == "Empty condition group" for e in report.errors)

    def test_epg_catalog_used_for_epg_rules(self):
        report = validate_rule(expression='language equals "en"', source_type="epg")
        assert report.overall == VALID
        report = validate_rule(expression='language equals "en"', source_type="stream")
        assert report.overall == WARNING

    def test_to_dict(self):
        data = validate_rule(expression='channel_name contains "HD').to_dict()
        assert data["overall"] == "invalid"
        assert data["valid"] is False
        assert data["errors"] == ["Unterminated string literal"]
        assert data["issues"][0]["position"] == 22


class TestValidateFilter:
    def test_filters_reject_actions(self):
        report = validate_filter(expression='channel_name contains "BBC" SET group_title = "x"')
        assert report.overall == INVALID

    def test_valid_filter(self):
        assert validate_filter([{"field": "channel_name", "operator": "contains", "value": "BBC"}]).valid


class TestValidateValueObjects:
    def test_rule(self):
        rule = Rule.from_dict({"id": 1, "name": "x", "expression": 'channel_name contains "x"'})
        assert validate(rule).overall == VALID

    def test_filter(self):
        filter_ = Filter.from_dict({"id": 1, "name": "x",
                                    "conditions": [{"field": "channel_name", "operator": "bogus"}]})
        assert validate(filter_).overall == INVALID
