"""
Tests for the common JSON helpers.

Covers tolerant parsing of hand-edited payloads, compact/pretty
serialization and the event-field helpers used by the WebSocket rules.
"""

import pytest

from interceptwave.common.utils import (
    first_json_field,
    js_string,
    json_fields,
    parse_json_tolerant,
    safe_json_parse,
    stringify_compact,
    stringify_pretty,
    strip_comments
)


class TestSafeJsonParse:
    """Test suite for safe_json_parse()."""

    def test_valid_json(self):
        assert safe_json_parse('{"a": 1}') == {'a': 1}

    def test_invalid_json_returns_default(self):
        assert safe_json_parse('invalid') is None
        assert safe_json_parse('invalid', default={}) == {}

    def test_empty_input_returns_default(self):
        assert safe_json_parse('', default=[]) == []
        assert safe_json_parse(None) is None


class TestParseJsonTolerant:
    """Test suite for parse_json_tolerant()."""

    def test_strict_json_first(self):
        assert parse_json_tolerant('[1, 2, 3]') == [1, 2, 3]

    def test_comments_are_removed(self):
        raw = """
        {
            // user id
            "id": 1, /* inline */ "name": "a // not a comment"
        }
        """
        assert parse_json_tolerant(raw) == {'id': 1, 'name': 'a // not a comment'}

    def test_single_quotes_and_bare_keys(self):
        assert parse_json_tolerant("{code: 0, msg: 'ok'}") == {'code': 0, 'msg': 'ok'}

    def test_trailing_commas(self):
        assert parse_json_tolerant('{"a": [1, 2,], "b": 3,}') == {'a': [1, 2], 'b': 3}

    def test_invalid_raises_value_error(self):
        with pytest.raises(ValueError):
            parse_json_tolerant('not json at all')

    def test_empty_raises_value_error(self):
        with pytest.raises(ValueError):
            parse_json_tolerant('   ')

    def test_strip_comments_keeps_strings(self):
        assert strip_comments('"http://x" // tail') == '"http://x" '


class TestStringify:
    """Test compact and pretty serialization."""

    def test_compact(self):
        assert stringify_compact({'a': 1, 'b': [1, 2]}) == '{"a":1,"b":[1,2]}'

    def test_compact_keeps_unicode(self):
        assert stringify_compact({'msg': '成功'}) == '{"msg":"成功"}'

    def test_pretty_uses_two_spaces(self):
        assert stringify_pretty({'a': 1}) == '{\n  "a": 1\n}'


class TestJsonFields:
    """Test top-level field extraction."""

    def test_object_fields_in_order(self):
        assert json_fields('{"type":"ping","id":3}') == [('type', 'ping'), ('id', 3)]
        assert first_json_field('{"type":"ping","id":3}') == ('type', 'ping')

    @pytest.mark.parametrize('text', ['', 'invalid', '[1,2]', '"str"', '42', None])
    def test_non_objects_have_no_fields(self, text):
        assert json_fields(text) == []
        assert first_json_field(text) is None


class TestJsString:
    """Test string rendering used for event value comparison."""

    @pytest.mark.parametrize('value,expected', [
        ('test', 'test'),
        (1, '1'),
        (1.0, '1'),
        (1.5, '1.5'),
        (True, 'true'),
        (False, 'false'),
        (None, 'null'),
        ({'a': 1}, '{"a":1}'),
    ])
    def test_rendering(self, value, expected):
        assert js_string(value) == expected
