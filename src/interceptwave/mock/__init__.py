"""
Intercept Wave Mock Server Module

HTTP side of the proxy.

This module provides:
- Wildcard path matching and mock selection
- FastAPI-based per-group dispatcher (mock or forward)
"""

from .matcher import (
    PathMatchResult,
    normalize_path,
    split_segments,
    match_path_pattern,
    select_best_mock_api
)
from .server import (
    HttpDispatcher,
    InvalidTargetURL,
    CORS_HEADERS,
    build_welcome_document,
    build_target_url,
    get_match_path
)

__all__ = [
    # Matcher
    'PathMatchResult',
    'normalize_path',
    'split_segments',
    'match_path_pattern',
    'select_best_mock_api',

    # Server
    'HttpDispatcher',
    'InvalidTargetURL',
    'CORS_HEADERS',
    'build_welcome_document',
    'build_target_url',
    'get_match_path',
]
