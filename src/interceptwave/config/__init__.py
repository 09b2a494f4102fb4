"""
Intercept Wave Configuration

Typed proxy-group records and the sources the servers read them from.
"""

from .models import (
    PROTOCOL_HTTP,
    PROTOCOL_WS,
    MockApiConfig,
    WsTimelineItem,
    WsRule,
    TLSConfig,
    ProxyGroup,
    InterceptWaveConfig,
    ServerSettings,
    normalize_timeline,
    default_group
)
from .loader import FileConfigSource, MemoryConfigSource, compact_mock_data

__all__ = [
    'PROTOCOL_HTTP',
    'PROTOCOL_WS',
    'MockApiConfig',
    'WsTimelineItem',
    'WsRule',
    'TLSConfig',
    'ProxyGroup',
    'InterceptWaveConfig',
    'ServerSettings',
    'normalize_timeline',
    'default_group',
    'FileConfigSource',
    'MemoryConfigSource',
    'compact_mock_data',
]
