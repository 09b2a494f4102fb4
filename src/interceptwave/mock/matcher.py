"""
Intercept Wave Path Matcher

Wildcard path matching and mock selection shared by the HTTP dispatcher and
the WebSocket session manager.

Pattern syntax (segments separated by ``/``):
- ``*``  matches exactly one path segment
- ``**`` matches one or more path segments (never zero)
- anything else matches the segment literally (case-sensitive)

When several mocks match a request the most specific one wins:
exact > fewer wildcards > method-specific (not ALL) > longer pattern.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, TypeVar

from ..config.models import MockApiConfig

_MULTI_SLASH = re.compile(r'/+')

WILDCARD_ONE = '*'
WILDCARD_MANY = '**'
METHOD_ALL = 'ALL'

T = TypeVar('T', bound=MockApiConfig)


@dataclass
class PathMatchResult:
    """Result of evaluating one pattern against one path."""

    matched: bool
    exact: bool
    wildcard_count: int
    pattern_length: int


def normalize_path(path: Optional[str]) -> str:
    """
    Canonicalize a request path or pattern.

    Adds the leading slash, drops the query string, collapses repeated
    slashes and removes the trailing slash (except for the root).

    Example:
        normalize_path('a//b/123/?x=1')  # '/a/b/123'
    """
    if not path:
        return '/'
    if not path.startswith('/'):
        path = '/' + path
    path = path.split('?', 1)[0]
    path = _MULTI_SLASH.sub('/', path)
    if len(path) > 1 and path.endswith('/'):
        path = path[:-1]
    return path


def split_segments(path: Optional[str]) -> List[str]:
    norm = normalize_path(path)
    return [] if norm == '/' else norm[1:].split('/')


def _segments_match(pattern: Sequence[str], target: Sequence[str], pi: int, ti: int) -> bool:
    while pi < len(pattern) and ti < len(target):
        segment = pattern[pi]

        if segment == WILDCARD_ONE:
            pi += 1
            ti += 1
            continue

        if segment == WILDCARD_MANY:
            # Leave at least one target segment for each remaining pattern segment.
            remaining = len(pattern) - (pi + 1)
            for span in range(1, len(target) - remaining - ti + 1):
                if _segments_match(pattern, target, pi + 1, ti + span):
                    return True
            return False

        if segment != target[ti]:
            return False
        pi += 1
        ti += 1

    if pi < len(pattern):
        # Only a trailing ** may remain, and it still needs a segment to eat.
        return pi == len(pattern) - 1 and pattern[pi] == WILDCARD_MANY and ti < len(target)

    return ti == len(target)


def match_path_pattern(pattern: str, path: str) -> PathMatchResult:
    """
    Match a wildcard pattern against a request path.

    Args:
        pattern: Pattern such as ``/api/users/*`` or ``/files/**/raw``
        path: Request path; normalized before comparison

    Returns:
        PathMatchResult with the match flag and specificity fields

    Example:
        match_path_pattern('/a/b/**', '/a/b/1/2').matched  # True
        match_path_pattern('/a/b/**', '/a/b').matched      # False
    """
    pattern_segments = split_segments(pattern)
    target_segments = split_segments(path)
    wildcard_count = sum(1 for s in pattern_segments if s in (WILDCARD_ONE, WILDCARD_MANY))

    return PathMatchResult(
        matched=_segments_match(pattern_segments, target_segments, 0, 0),
        exact=wildcard_count == 0,
        wildcard_count=wildcard_count,
        pattern_length=len(normalize_path(pattern))
    )


def select_best_mock_api(
    apis: Sequence[T],
    request_path: str,
    method: Optional[str]
) -> Optional[T]:
    """
    Pick the most specific enabled mock for a request.

    Disabled mocks, mocks for other methods and mocks whose pattern does not
    match are discarded. The survivors are ranked by exactness, wildcard
    count, method specificity and finally pattern length; ties keep
    configuration order.

    Args:
        apis: Candidate mock definitions
        request_path: Request path (query string is ignored)
        method: Request method; ``None`` is treated as GET

    Returns:
        The winning mock, or None if nothing matches
    """
    req_path = normalize_path(request_path)
    req_method = (method or 'GET').upper()

    ranked = []
    for api in apis:
        if api.enabled is False:
            continue

        api_method = (api.method or METHOD_ALL).upper()
        if api_method != METHOD_ALL and api_method != req_method:
            continue

        result = match_path_pattern(api.path, req_path)
        if not result.matched:
            continue

        method_specific = api_method != METHOD_ALL
        ranked.append((
            (not result.exact, result.wildcard_count, not method_specific, -result.pattern_length),
            api
        ))

    if not ranked:
        return None

    ranked.sort(key=lambda item: item[0])
    return ranked[0][1]
