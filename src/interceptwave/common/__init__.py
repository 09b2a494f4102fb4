"""
Intercept Wave Common Utilities

Shared helpers used across the HTTP, WebSocket and orchestration modules.
"""

from .utils import (
    safe_json_parse,
    parse_json_tolerant,
    stringify_compact,
    stringify_pretty,
    json_fields,
    first_json_field,
    js_string
)
from .logging_utils import OutputChannelHandler, configure_logging
from .listener import GroupListener

__all__ = [
    'safe_json_parse',
    'parse_json_tolerant',
    'stringify_compact',
    'stringify_pretty',
    'json_fields',
    'first_json_field',
    'js_string',
    'OutputChannelHandler',
    'configure_logging',
    'GroupListener'
]
