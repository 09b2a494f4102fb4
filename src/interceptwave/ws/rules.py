"""
WebSocket rule evaluation.

Pure functions deciding whether a rule applies to a message or to a live
connection, and which connections a manual push should reach.
"""

from typing import Any, Iterable, List, Optional, Sequence, Tuple

from ..common.utils import js_string, json_fields
from ..config.models import WsRule
from ..mock.matcher import match_path_pattern

DIRECTION_IN = 'in'
DIRECTION_OUT = 'out'
DIRECTION_BOTH = 'both'

TARGET_MATCH = 'match'
TARGET_ALL = 'all'
TARGET_RECENT = 'recent'

EventField = Tuple[str, Any]


def _event_matches(rule: WsRule, fields: Iterable[EventField]) -> bool:
    if not rule.event_key:
        return True

    for key, value in fields:
        if key == rule.event_key:
            if rule.event_value is None:
                return True
            return js_string(value) == js_string(rule.event_value)
    return False


def rule_matches_message(
    rule: WsRule,
    connection_path: str,
    direction: str,
    fields: Sequence[EventField]
) -> bool:
    """
    Decide whether a rule applies to one message.

    Args:
        rule: Rule to evaluate
        connection_path: Request path of the connection the message belongs to
        direction: ``in`` (client to proxy) or ``out`` (upstream to client)
        fields: Top-level JSON fields of the message, empty if not a JSON object
    """
    if not rule.enabled or not rule.path:
        return False
    if not match_path_pattern(rule.path, connection_path or '/').matched:
        return False
    if rule.direction != DIRECTION_BOTH and rule.direction != direction:
        return False
    return _event_matches(rule, fields)


def rule_matches_connection(rule: WsRule, connection: Any) -> bool:
    """
    Decide whether a rule targets a live connection.

    The connection's path must match and, when the rule names an event key,
    the last observed inbound or outbound event must carry it.
    """
    if not rule.enabled or not rule.path:
        return False
    if not match_path_pattern(rule.path, connection.path or '/').matched:
        return False

    events = [e for e in (connection.last_in_event, connection.last_out_event) if e]
    return _event_matches(rule, events)


def outbound_event(payload: str, event_key: Optional[str] = None) -> Optional[EventField]:
    """
    Event recorded after sending ``payload`` to a client.

    With an ``event_key`` only that field is recorded; otherwise the first
    top-level field. Non-object payloads record nothing.
    """
    fields = json_fields(payload)
    if not fields:
        return None
    if not event_key:
        return fields[0]
    for key, value in fields:
        if key == event_key:
            return key, value
    return None


def select_connections(
    connections: Sequence[Any],
    target: str,
    rule: Optional[WsRule] = None,
    all_rules: Optional[Sequence[WsRule]] = None
) -> List[Any]:
    """
    Choose the connections a manual push is sent to.

    - ``recent``: the connection with the latest activity
    - ``all``: every connection
    - ``match``: connections matched by the pushed rule (or, for custom
      payloads, by any rule of the group)
    - anything else: connections matched by any rule of the group

    An empty rule set matches every connection.
    """
    candidates = list(connections)
    if not candidates:
        return []

    if target == TARGET_RECENT:
        return [max(candidates, key=lambda c: c.last_activity_at)]

    if target == TARGET_ALL:
        return candidates

    if target == TARGET_MATCH and rule is not None:
        rules = [rule]
    else:
        rules = list(all_rules or [])

    if not rules:
        return candidates

    return [c for c in candidates if any(rule_matches_connection(r, c) for r in rules)]
