"""
Unit tests for the expression_parser module.

Covers tokenizing, parsing text rules into the common AST, error positions
and rendering structured rules back to text.
"""
import pytest

from expression_parser import (
    ExpressionParser,
    expression_to_structured,
    parse_expression,
    parse_rule,
    structured_to_expression,
    tokenize,
)
from rule_errors import ParseError, UnsupportedExpressionError
from rule_schema import ConditionGroup


class TestTokenize:
    def test_basic_tokens(self):
        tokens = tokenize('channel_name contains "HD"')
        assert [t.kind for t in tokens] == ["word", "word", "string", "end"]
        assert tokens[2].text == "HD"
        assert tokens[2].position == 22

    def test_escaped_quote(self):
        tokens = tokenize(r'channel_name equals "say \"hi\""')
        assert tokens[2].text == 'say "hi"'

    def test_single_quotes(self):
        assert tokenize("a equals 'x y'")[2].text == "x y"

    def test_assignment_operators(self):
        tokens = tokenize('a ?= "1", b += "2", c -= "3", d = "4"')
        assert [t.text for t in tokens if t.kind == "assign"] == ["?=", "+=", "-=", "="]

    def test_unterminated_string_position(self):
        with pytest.raises(ParseError) as exc:
            tokenize('channel_name contains "HD')
        assert exc.value.position == 22

    def test_unexpected_character(self):
        with pytest.raises(ParseError) as exc:
            tokenize('channel_name contains "HD" & x')
        assert exc.value.position == 27
        assert exc.value.token == "&"

    def test_inner_hyphen_is_part_of_word(self):
        tokens = tokenize('tvg-chno equals "5"')
        assert tokens[0].kind == "word"
        assert tokens[0].text == "tvg-chno"

    def test_hyphen_before_equals_is_operator(self):
        tokens = tokenize('group_title-="VIP"')
        assert [t.text for t in tokens[:2]] == ["group_title", "-="]


class TestParseConditions:
    def test_single_condition(self):
        ast = parse_expression('group_title contains "News"')
        condition = ast.conditions.entries[0]
        assert condition.field == "group_title"
        assert condition.operator == "contains"
        assert condition.value == "News"
        assert ast.actions == ()

    def test_operator_is_lowercased(self):
        ast = parse_expression('channel_name CONTAINS "x"')
        assert ast.conditions.entries[0].operator == "contains"

    def test_connectors_set_previous_entry(self):
        ast = parse_expression('a equals "1" AND b equals "2" OR c equals "3"')
        entries = ast.conditions.entries
        assert [e.logical_operator for e in entries] == ["AND", "OR", "AND"]

    def test_all_any_aliases(self):
        ast = parse_expression('a equals "1" any b equals "2"')
        assert ast.conditions.entries[0].logical_operator == "OR"

    def test_modifiers_before_field(self):
        condition = parse_expression('not case_sensitive channel_name contains "HD"').conditions.entries[0]
        assert condition.negate is True
        assert condition.case_sensitive is True

    def test_modifiers_before_operator(self):
        condition = parse_expression('channel_name not contains "HD"').conditions.entries[0]
        assert condition.field == "channel_name"
        assert condition.negate is True

    def test_parenthesized_group(self):
        ast = parse_expression('(a equals "1" OR b equals "2") AND c equals "3"')
        group = ast.conditions.entries[0]
        assert isinstance(group, ConditionGroup)
        assert group.logical_operator == "AND"
        assert group.entries[0].logical_operator == "OR"

    def test_empty_expression(self):
        ast = parse_expression("")
        assert len(ast.conditions) == 0
        assert ast.actions == ()

    def test_references_record_positions(self):
        parser = ExpressionParser('channel_name contains "x" SET group_title = "y"')
        parser.parse()
        assert ("field", "channel_name", 0) in parser.references
        assert ("target", "group_title", 30) in parser.references


class TestParseErrors:
    def test_unmatched_open_paren(self):
        with pytest.raises(ParseError) as exc:
            parse_expression('(a equals "1"')
        assert exc.value.position == 0
        assert "Unmatched opening" in exc.value.message

    def test_unmatched_close_paren(self):
        with pytest.raises(ParseError) as exc:
            parse_expression('a equals "1")')
        assert exc.value.position == 12

    def test_empty_parentheses(self):
        with pytest.raises(ParseError):
            parse_expression("()")

    def test_missing_value(self):
        with pytest.raises(ParseError) as exc:
            parse_expression("channel_name contains")
        assert "quoted value" in exc.value.message

    def test_keyword_as_field(self):
        with pytest.raises(ParseError):
            parse_expression('a equals "1" AND AND b equals "2"')

    def test_label_requires_plain_assignment(self):
        with pytest.raises(ParseError):
            parse_expression('SET label:region += "uk"')

    def test_label_cannot_be_cleared(self):
        with pytest.raises(ParseError):
            parse_expression("DELETE label:region")

    def test_delete_requires_target(self):
        with pytest.raises(ParseError):
            parse_expression('channel_name contains "HD" DELETE')


class TestParseActions:
    def test_set_value(self):
        ast = parse_expression('group_title contains "News" SET group_title = "NEWS"')
        action = ast.actions[0]
        assert action.action_type == "set_value"
        assert action.target_field == "group_title"
        assert action.payload == "NEWS"

    def test_actions_only(self):
        ast = parse_expression('SET tvg_id ?= "unknown"')
        assert len(ast.conditions) == 0
        assert ast.actions[0].action_type == "set_default_if_empty"

    def test_logo_token(self):
        ast = parse_expression('SET tvg_logo = "@logo:5f0c1c1e-2b1a-4a43-9c1f-3a2b1c0d9e8f"')
        action = ast.actions[0]
        assert action.action_type == "set_logo"
        assert action.payload == "5f0c1c1e-2b1a-4a43-9c1f-3a2b1c0d9e8f"

    def test_label(self):
        action = parse_expression('SET label:region = "uk"').actions[0]
        assert action.action_type == "set_label"
        assert action.payload == {"key": "region", "value": "uk"}

    def test_append_and_remove(self):
        actions = parse_expression('SET channel_name += " HD", group_title -= "VIP"').actions
        assert actions[0].payload == {"transform": "append", "value": " HD"}
        assert actions[1].payload == {"transform": "remove", "value": "VIP"}

    def test_set_null_clears(self):
        action = parse_expression("SET tvg_logo = null").actions[0]
        assert action.action_type == "clear_value"
        assert action.target_field == "tvg_logo"
        assert action.payload is None

    def test_quoted_null_is_a_value(self):
        action = parse_expression('SET tvg_logo = "null"').actions[0]
        assert action.action_type == "set_value"
        assert action.payload == "null"

    def test_delete_clause(self):
        ast = parse_expression('channel_name contains "HD" SET group_title = "HD" DELETE tvg_logo, tvg_id')
        assert ast.conditions.entries[0].field == "channel_name"
        assert [(a.action_type, a.target_field) for a in ast.actions] == [
            ("set_value", "group_title"),
            ("clear_value", "tvg_logo"),
            ("clear_value", "tvg_id"),
        ]

    def test_delete_only(self):
        ast = parse_expression("DELETE tvg_shift")
        assert len(ast.conditions) == 0
        assert ast.actions[0].action_type == "clear_value"


class TestStructuredConversion:
    def test_expression_to_structured(self):
        data = expression_to_structured('channel_name contains "HD" SET group_title = "HD"')
        assert data["conditions"][0]["field"] == "channel_name"
        assert data["actions"][0] == {"action_type": "set_value", "target_field": "group_title",
                                      "payload": "HD"}

    def test_structured_to_expression(self):
        text = structured_to_expression(
            [{"field": "group_title", "operator": "contains", "value": "News"}],
            [{"action_type": "set_value", "target_field": "group_title", "payload": "NEWS"}],
        )
        assert text == 'group_title contains "News" SET group_title = "NEWS"'

    def test_roundtrip_keeps_modifiers_and_connectors(self):
        conditions = [
            {"field": "channel_name", "operator": "contains", "value": "HD",
             "logical_operator": "OR", "negate": True},
            {"field": "stream_url", "operator": "starts_with", "value": "http",
             "logical_operator": "AND", "case_sensitive": True},
        ]
        text = structured_to_expression(conditions)
        assert expression_to_structured(text)["conditions"] == conditions

    def test_roundtrip_quotes(self):
        conditions = [{"field": "channel_name", "operator": "equals", "value": 'A "quoted" \\ name',
                       "logical_operator": "AND"}]
        text = structured_to_expression(conditions)
        assert expression_to_structured(text)["conditions"] == conditions

    def test_nested_group_rendered_in_parens(self):
        text = structured_to_expression([
            {"conditions": [{"field": "a", "operator": "equals", "value": "1", "logical_operator": "OR"},
                            {"field": "b", "operator": "equals", "value": "2"}]},
        ])
        assert text == '(a equals "1" OR b equals "2")'

    def test_logo_uses_default_target(self):
        text = structured_to_expression([], [{"action_type": "set_logo", "payload": "abc"}], "epg")
        assert text == 'SET channel_logo = "@logo:abc"'

    def test_unsupported_transform(self):
        with pytest.raises(UnsupportedExpressionError):
            structured_to_expression([], [{"action_type": "transform_value",
                                           "target_field": "channel_name",
                                           "payload": {"transform": "uppercase"}}])

    def test_hyphenated_field_roundtrips(self):
        conditions = [{"field": "tvg-chno", "operator": "equals", "value": "5",
                       "logical_operator": "AND"}]
        actions = [{"action_type": "set_value", "target_field": "tvg-chno", "payload": "6"}]
        text = structured_to_expression(conditions, actions)
        assert text == 'tvg-chno equals "5" SET tvg-chno = "6"'
        assert expression_to_structured(text) == {"conditions": conditions, "actions": actions}

    @pytest.mark.parametrize("name", ["channel name", "tvg(id)", "AND", "-tvg", ""])
    def test_unreadable_field_name_rejected(self, name):
        with pytest.raises(UnsupportedExpressionError):
            structured_to_expression([{"field": name, "operator": "equals", "value": "x"}])

    def test_unreadable_target_rejected(self):
        with pytest.raises(UnsupportedExpressionError):
            structured_to_expression([], [{"action_type": "set_value", "target_field": "a b",
                                           "payload": "x"}])

    def test_clear_roundtrips(self):
        actions = [{"action_type": "clear_value", "target_field": "tvg_logo", "payload": None}]
        text = structured_to_expression([], actions)
        assert text == "SET tvg_logo = null"
        assert expression_to_structured(text)["actions"] == actions

    def test_parse_rule_prefers_expression(self):
        ast = parse_rule(
            [{"field": "a", "operator": "equals", "value": "1"}],
            [],
            'b equals "2"',
        )
        assert ast.conditions.entries[0].field == "b"
