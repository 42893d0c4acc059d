"""
Unit tests for the rule_store module.

Uses the in-memory SQLite session from conftest.
"""
import pytest
import yaml

import rule_store
from rule_errors import RuleNotFoundError, RuleValidationError
from rule_schema import Proxy, Rule
from tests.fixtures.factories import create_channel_filter, create_mapping_rule, create_stream_proxy


NEWS_RULE = {
    "name": "News",
    "conditions": [{"field": "group_title", "operator": "contains", "value": "News"}],
    "actions": [{"action_type": "set_value", "target_field": "group_title", "payload": "NEWS"}],
}


class TestRuleCrud:
    """Tests for mapping rule CRUD."""

    def test_create_assigns_sort_order(self, test_session):
        first = rule_store.create_rule(test_session, NEWS_RULE)
        second = rule_store.create_rule(test_session, {**NEWS_RULE, "name": "News 2"})
        assert first.sort_order == 1
        assert second.sort_order == 2
        assert first.get_conditions() == NEWS_RULE["conditions"]

    def test_create_from_expression(self, test_session):
        rule = rule_store.create_rule(test_session, {"name": "Expr",
                                                     "expression": 'channel_name contains "HD"'})
        assert rule.expression == 'channel_name contains "HD"'

    def test_create_rejects_invalid_rule(self, test_session):
        with pytest.raises(RuleValidationError) as exc:
            rule_store.create_rule(test_session, {"name": "Bad", "expression": '(channel_name contains "x"'})
        assert exc.value.report is not None
        assert not exc.value.report.valid
        assert rule_store.list_rules(test_session) == []

    def test_create_requires_name(self, test_session):
        with pytest.raises(RuleValidationError):
            rule_store.create_rule(test_session, {**NEWS_RULE, "name": "  "})

    def test_scope_sources_requires_ids(self, test_session):
        with pytest.raises(RuleValidationError):
            rule_store.create_rule(test_session, {**NEWS_RULE, "scope": "sources"})

    def test_unknown_source_type(self, test_session):
        with pytest.raises(RuleValidationError):
            rule_store.create_rule(test_session, {**NEWS_RULE, "source_type": "radio"})

    def test_get_missing(self, test_session):
        with pytest.raises(RuleNotFoundError):
            rule_store.get_rule(test_session, 999)

    def test_partial_update(self, test_session):
        rule = rule_store.create_rule(test_session, NEWS_RULE)
        updated = rule_store.update_rule(test_session, rule.id, {"is_active": False})
        assert updated.is_active is False
        assert updated.name == "News"
        assert updated.get_actions() == NEWS_RULE["actions"]

    def test_update_validates_merged_rule(self, test_session):
        rule = rule_store.create_rule(test_session, NEWS_RULE)
        with pytest.raises(RuleValidationError):
            rule_store.update_rule(test_session, rule.id, {"expression": 'channel_name contains "x'})

    def test_delete(self, test_session):
        rule = rule_store.create_rule(test_session, NEWS_RULE)
        rule_store.delete_rule(test_session, rule.id)
        with pytest.raises(RuleNotFoundError):
            rule_store.get_rule(test_session, rule.id)

    def test_list_filters_by_source_type(self, test_session):
        create_mapping_rule(test_session, name="stream rule")
        create_mapping_rule(test_session, name="epg rule", source_type="epg")
        assert [r.name for r in rule_store.list_rules(test_session, "epg")] == ["epg rule"]


class TestReorder:
    def test_reorder_then_fetch(self, test_session):
        ids = [rule_store.create_rule(test_session, {**NEWS_RULE, "name": f"R{i}"}).id for i in range(3)]
        id1, id2, id3 = ids

        rules = rule_store.reorder_rules(test_session, [(id3, 1), (id1, 2), (id2, 3)])
        assert [r.id for r in rules] == [id3, id1, id2]
        assert [r.id for r in rule_store.list_rules(test_session)] == [id3, id1, id2]
        assert [r.sort_order for r in rule_store.list_rules(test_session)] == [1, 2, 3]

    def test_gaps_become_dense(self, test_session):
        ids = [rule_store.create_rule(test_session, {**NEWS_RULE, "name": f"R{i}"}).id for i in range(2)]
        rule_store.reorder_rules(test_session, [(ids[1], 50), (ids[0], 70)])
        assert [(r.id, r.sort_order) for r in rule_store.list_rules(test_session)] == [(ids[1], 1), (ids[0], 2)]

    def test_unnamed_rules_follow(self, test_session):
        ids = [rule_store.create_rule(test_session, {**NEWS_RULE, "name": f"R{i}"}).id for i in range(3)]
        rule_store.reorder_rules(test_session, [(ids[2], 1)])
        assert [r.id for r in rule_store.list_rules(test_session)] == [ids[2], ids[0], ids[1]]

    def test_unknown_id(self, test_session):
        with pytest.raises(RuleNotFoundError):
            rule_store.reorder_rules(test_session, [(404, 1)])

    def test_duplicate_id(self, test_session):
        rule = rule_store.create_rule(test_session, NEWS_RULE)
        with pytest.raises(RuleValidationError):
            rule_store.reorder_rules(test_session, [(rule.id, 1), (rule.id, 2)])


class TestFilters:
    def test_create_and_load(self, test_session):
        channel_filter = rule_store.create_filter(test_session, {
            "name": "No BBC",
            "is_inverse": True,
            "expression": 'channel_name contains "BBC"',
        })
        loaded = rule_store.load_filter(test_session, channel_filter.id)
        assert loaded.is_inverse is True
        assert loaded.expression == 'channel_name contains "BBC"'

    def test_filters_cannot_have_actions(self, test_session):
        with pytest.raises(RuleValidationError):
            rule_store.create_filter(test_session, {"name": "x", "expression": 'SET tvg_id = "1"'})

    def test_bad_logical_operator(self, test_session):
        with pytest.raises(RuleValidationError):
            rule_store.create_filter(test_session, {"name": "x", "logical_operator": "XOR"})

    def test_delete_detaches_from_proxies(self, test_session):
        channel_filter = create_channel_filter(test_session)
        proxy = create_stream_proxy(test_session, filter_ids=[channel_filter.id])
        rule_store.delete_filter(test_session, channel_filter.id)
        test_session.expire_all()
        assert rule_store.get_proxy(test_session, proxy.id).filters == []

    def test_reorder_filters(self, test_session):
        a = create_channel_filter(test_session, name="a")
        b = create_channel_filter(test_session, name="b")
        filters = rule_store.reorder_filters(test_session, [(b.id, 1), (a.id, 2)])
        assert [f.name for f in filters] == ["b", "a"]


class TestProxies:
    def test_create_normalizes_priorities(self, test_session):
        f1 = create_channel_filter(test_session)
        f2 = create_channel_filter(test_session)
        proxy = rule_store.create_proxy(test_session, {
            "name": "Main",
            "stream_sources": [{"source_id": "b", "priority_order": 20}, {"source_id": "a", "priority_order": 10}],
            "filters": [{"filter_id": f1.id, "priority_order": 5}, {"filter_id": f2.id, "priority_order": 1}],
        })
        data = proxy.to_dict()
        assert [(s["source_id"], s["priority_order"]) for s in data["stream_sources"]] == [("a", 1), ("b", 2)]
        assert [f["filter_id"] for f in data["filters"]] == [f2.id, f1.id]
        assert data["mapping_rules"] is None

    def test_duplicate_name(self, test_session):
        rule_store.create_proxy(test_session, {"name": "Main"})
        with pytest.raises(RuleValidationError):
            rule_store.create_proxy(test_session, {"name": "Main"})

    def test_unknown_filter(self, test_session):
        with pytest.raises(RuleNotFoundError):
            rule_store.create_proxy(test_session, {"name": "Main", "filters": [{"filter_id": 99}]})

    def test_reorder_proxy_filters(self, test_session):
        f1 = create_channel_filter(test_session)
        f2 = create_channel_filter(test_session)
        f3 = create_channel_filter(test_session)
        proxy = create_stream_proxy(test_session, filter_ids=[f1.id, f2.id, f3.id])
        links = rule_store.reorder_proxy_filters(test_session, proxy.id, [(f3.id, 1), (f1.id, 2), (f2.id, 3)])
        assert [link.filter_id for link in links] == [f3.id, f1.id, f2.id]
        assert [link.priority_order for link in links] == [1, 2, 3]

    def test_reorder_unattached_filter(self, test_session):
        proxy = create_stream_proxy(test_session)
        with pytest.raises(RuleNotFoundError):
            rule_store.reorder_proxy_filters(test_session, proxy.id, [(42, 1)])

    def test_load_proxy(self, test_session):
        proxy = create_stream_proxy(test_session, source_ids=["a", "b"], mapping_rule_ids=[3])
        loaded = rule_store.load_proxy(test_session, proxy.id)
        assert isinstance(loaded, Proxy)
        assert [s.source_id for s in loaded.sorted_stream_sources()] == ["a", "b"]
        assert loaded.mapping_rules == (3,)


class TestLoaders:
    def test_load_rules_active_in_order(self, test_session):
        create_mapping_rule(test_session, name="second", sort_order=2)
        create_mapping_rule(test_session, name="first", sort_order=1)
        create_mapping_rule(test_session, name="off", sort_order=0, is_active=False)
        rules = rule_store.load_rules(test_session)
        assert all(isinstance(r, Rule) for r in rules)
        assert [r.name for r in rules] == ["first", "second"]

    def test_load_rules_by_id(self, test_session):
        keep = create_mapping_rule(test_session)
        create_mapping_rule(test_session)
        assert [r.id for r in rule_store.load_rules(test_session, [keep.id])] == [keep.id]


class TestYaml:
    def test_export(self, test_session):
        rule_store.create_rule(test_session, NEWS_RULE)
        data = yaml.safe_load(rule_store.export_rules_yaml(test_session))
        assert data["version"] == 1
        assert data["mapping_rules"][0]["name"] == "News"
        assert data["mapping_rules"][0]["conditions"] == NEWS_RULE["conditions"]

    def test_export_import_roundtrip(self, test_session):
        rule_store.create_rule(test_session, NEWS_RULE)
        rule_store.create_rule(test_session, {"name": "Expr", "expression": 'SET tvg_shift ?= "0"'})
        text = rule_store.export_rules_yaml(test_session)

        created = rule_store.import_rules_yaml(test_session, text, replace=True)
        assert [r.name for r in created] == ["News", "Expr"]
        assert len(rule_store.list_rules(test_session)) == 2

    def test_import_is_all_or_nothing(self, test_session):
        text = yaml.dump({"mapping_rules": [
            {"name": "Good", "expression": 'SET tvg_id = "x"'},
            {"name": "Bad", "expression": 'channel_name contains "x'},
        ]})
        with pytest.raises(RuleValidationError) as exc:
            rule_store.import_rules_yaml(test_session, text)
        assert "mapping_rules[1]" in exc.value.message
        assert rule_store.list_rules(test_session) == []

    def test_import_invalid_yaml(self, test_session):
        with pytest.raises(RuleValidationError):
            rule_store.import_rules_yaml(test_session, "mapping_rules: [unclosed")

    def test_import_requires_list(self, test_session):
        with pytest.raises(RuleValidationError):
            rule_store.import_rules_yaml(test_session, "version: 1")
