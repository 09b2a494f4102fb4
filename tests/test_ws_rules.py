"""
Tests for WebSocket rule evaluation and manual-push targeting.
"""

from types import SimpleNamespace

import pytest

from interceptwave.config.models import WsRule
from interceptwave.ws.rules import (
    outbound_event,
    rule_matches_connection,
    rule_matches_message,
    select_connections
)


def conn(name, path='/echo', activity=0.0, last_in=None, last_out=None):
    return SimpleNamespace(
        id=name,
        path=path,
        last_activity_at=activity,
        last_in_event=last_in,
        last_out_event=last_out
    )


class TestRuleMatchesMessage:
    """Test per-message rule matching."""

    def test_path_direction_and_event(self):
        rule = WsRule(path='/echo', event_key='action', event_value='test', direction='out', intercept=True)

        assert rule_matches_message(rule, '/echo', 'out', [('action', 'test')])
        assert not rule_matches_message(rule, '/echo', 'in', [('action', 'test')])
        assert not rule_matches_message(rule, '/other', 'out', [('action', 'test')])
        assert not rule_matches_message(rule, '/echo', 'out', [('action', 'nope')])
        assert not rule_matches_message(rule, '/echo', 'out', [])

    def test_both_directions(self):
        rule = WsRule(path='/echo', direction='both')
        assert rule_matches_message(rule, '/echo', 'in', [])
        assert rule_matches_message(rule, '/echo', 'out', [])

    def test_event_key_without_value_requires_field(self):
        rule = WsRule(path='/**', event_key='type')

        assert rule_matches_message(rule, '/a/b', 'in', [('type', None)])
        assert not rule_matches_message(rule, '/a/b', 'in', [('kind', 'x')])

    def test_values_compared_as_strings(self):
        rule = WsRule(path='/echo', event_key='id', event_value='1')

        assert rule_matches_message(rule, '/echo', 'in', [('id', 1)])
        assert rule_matches_message(rule, '/echo', 'in', [('id', 1.0)])
        assert not rule_matches_message(rule, '/echo', 'in', [('id', 2)])

        flag = WsRule(path='/echo', event_key='ok', event_value=True)
        assert rule_matches_message(flag, '/echo', 'in', [('ok', True)])
        assert rule_matches_message(flag, '/echo', 'in', [('ok', 'true')])

    def test_disabled_rule_never_matches(self):
        rule = WsRule(path='/echo', enabled=False)
        assert not rule_matches_message(rule, '/echo', 'in', [])

    def test_wildcard_paths(self):
        rule = WsRule(path='/room/*')
        assert rule_matches_message(rule, '/room/42', 'in', [])
        assert not rule_matches_message(rule, '/room', 'in', [])


class TestRuleMatchesConnection:
    """Test matching rules against live connections."""

    def test_path_only(self):
        assert rule_matches_connection(WsRule(path='/echo'), conn('c1'))
        assert not rule_matches_connection(WsRule(path='/echo'), conn('c1', path='/other'))

    def test_event_from_last_in_or_out(self):
        rule = WsRule(path='/echo', event_key='type', event_value='ping')

        assert rule_matches_connection(rule, conn('c1', last_in=('type', 'ping')))
        assert rule_matches_connection(rule, conn('c1', last_out=('type', 'ping')))
        assert not rule_matches_connection(rule, conn('c1', last_in=('type', 'pong')))
        assert not rule_matches_connection(rule, conn('c1'))


class TestOutboundEvent:
    """Test event tracking for sent payloads."""

    def test_first_field(self):
        assert outbound_event('{"type":"pong","id":2}') == ('type', 'pong')

    def test_event_key_field(self):
        assert outbound_event('{"type":"pong","id":2}', 'id') == ('id', 2)
        assert outbound_event('{"type":"pong"}', 'id') is None

    @pytest.mark.parametrize('payload', ['hello', '[1]', ''])
    def test_non_objects(self, payload):
        assert outbound_event(payload) is None


class TestSelectConnections:
    """Test manual-push target selection."""

    @pytest.fixture
    def connections(self):
        return [
            conn('old', '/echo', activity=1),
            conn('new', '/echo', activity=10),
            conn('other', '/other', activity=5),
        ]

    def test_recent(self, connections):
        assert [c.id for c in select_connections(connections, 'recent')] == ['new']

    def test_all(self, connections):
        assert len(select_connections(connections, 'all', WsRule(path='/nothing'))) == 3

    def test_match_uses_only_pushed_rule(self, connections):
        rules = [WsRule(path='/other'), WsRule(path='/echo')]
        selected = select_connections(connections, 'match', rules[1], rules)
        assert [c.id for c in selected] == ['old', 'new']

    def test_match_custom_uses_all_rules(self, connections):
        rules = [WsRule(path='/other')]
        assert [c.id for c in select_connections(connections, 'match', None, rules)] == ['other']

    def test_no_rules_matches_everything(self, connections):
        assert len(select_connections(connections, 'match', None, [])) == 3

    def test_no_connections(self):
        assert select_connections([], 'recent') == []
