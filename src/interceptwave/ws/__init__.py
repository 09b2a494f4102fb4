"""
Intercept Wave WebSocket Module

WebSocket side of the proxy.

This module provides:
- Rule evaluation and manual-push target selection
- Per-group session manager (relay, interception, scheduled pushes)
"""

from .rules import (
    DIRECTION_IN,
    DIRECTION_OUT,
    DIRECTION_BOTH,
    TARGET_MATCH,
    TARGET_ALL,
    TARGET_RECENT,
    rule_matches_message,
    rule_matches_connection,
    outbound_event,
    select_connections
)
from .server import ConnectionContext, WsSessionManager, get_effective_ws_path

__all__ = [
    # Rules
    'DIRECTION_IN',
    'DIRECTION_OUT',
    'DIRECTION_BOTH',
    'TARGET_MATCH',
    'TARGET_ALL',
    'TARGET_RECENT',
    'rule_matches_message',
    'rule_matches_connection',
    'outbound_event',
    'select_connections',

    # Server
    'ConnectionContext',
    'WsSessionManager',
    'get_effective_ws_path',
]
