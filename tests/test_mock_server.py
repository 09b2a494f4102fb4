"""
Tests for the Intercept Wave HTTP dispatcher

Tests the FastAPI-based dispatcher including:
- Welcome document and CORS preflight
- Mock responses (prefix stripping, cookies, delay)
- Forwarding through an httpx transport
- Error responses (disabled group, bad target, unreachable upstream)
- Stopping while a forwarded response is still streaming
"""

import asyncio
import json
import socket
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from interceptwave.config import InterceptWaveConfig, MemoryConfigSource, MockApiConfig, ProxyGroup, ServerSettings
from interceptwave.mock.server import (
    CORS_HEADERS,
    HttpDispatcher,
    InvalidTargetURL,
    build_target_url,
    build_welcome_document,
    get_match_path
)


@pytest.fixture
def group():
    """HTTP proxy group with a few mocks."""
    return ProxyGroup(
        id='g1',
        name='User Service',
        port=8888,
        intercept_prefix='/api',
        base_url='http://upstream.test',
        strip_prefix=True,
        global_cookie='session=abc123',
        mock_apis=[
            MockApiConfig(path='/user/info', mock_data='{"code":0,"data":{"id":1}}', use_cookie=True),
            MockApiConfig(path='/orders/*', method='ALL', status_code=201, mock_data='{"order":true}'),
            MockApiConfig(path='/plain', mock_data='not json'),
            MockApiConfig(path='/slow', mock_data='{}', delay=100),
            MockApiConfig(path='/off', mock_data='{}', enabled=False),
        ]
    )


@pytest.fixture
def source(group):
    """In-memory configuration source holding the group."""
    return MemoryConfigSource(InterceptWaveConfig(proxy_groups=[group]))


@pytest.fixture
def upstream_requests():
    """Requests seen by the fake upstream."""
    return []


@pytest.fixture
def transport(upstream_requests):
    """httpx transport standing in for the upstream server."""
    async def body():
        yield b'{"from":'
        yield b'"upstream"}'

    def handler(request: httpx.Request) -> httpx.Response:
        upstream_requests.append(request)
        return httpx.Response(
            202,
            headers=[
                ('X-Upstream', 'yes'),
                ('Set-Cookie', 'a=1'),
                ('Set-Cookie', 'b=2'),
                ('Access-Control-Allow-Origin', 'http://elsewhere.test'),
            ],
            # Streamed like a real upstream; a pre-read body cannot be relayed raw
            content=body()
        )
    return httpx.MockTransport(handler)


@pytest.fixture
def dispatcher(source, transport):
    return HttpDispatcher('g1', source.snapshot, transport=transport)


@pytest.fixture
def client(dispatcher):
    return TestClient(dispatcher.get_app())


def assert_cors(response):
    for name, value in CORS_HEADERS.items():
        assert response.headers[name] == value


class TestHelpers:
    """Test URL helpers."""

    def test_match_path_strips_prefix(self, group):
        assert get_match_path('/api/user/info', group) == '/user/info'
        assert get_match_path('/api', group) == '/'
        assert get_match_path('/other/x', group) == '/other/x'

    def test_match_path_without_stripping(self, group):
        group.strip_prefix = False
        assert get_match_path('/api/user/info', group) == '/api/user/info'

    def test_build_target_url(self):
        url = build_target_url('http://localhost:8080', '/api/a?b=1')
        assert str(url) == 'http://localhost:8080/api/a?b=1'

    @pytest.mark.parametrize('base_url', ['', 'not a url', 'ftp://host'])
    def test_build_target_url_rejects_invalid(self, base_url):
        with pytest.raises(InvalidTargetURL):
            build_target_url(base_url, '/x')

    def test_welcome_document(self, group):
        doc = build_welcome_document(group)

        assert doc['status'] == 'running'
        assert doc['group']['serverUrl'] == 'http://localhost:8888'
        assert doc['mockApis'] == {'total': 5, 'enabled': 4}
        assert doc['apis'][0] == {
            'path': '/user/info',
            'method': 'GET',
            'enabled': True,
            'example': '/api/user/info',
        }


class TestWelcomeAndPreflight:
    """Test welcome page and CORS preflight."""

    def test_welcome_is_identical_for_root_and_prefix(self, client):
        bodies = []
        for path in ('/', '/api', '/api/'):
            response = client.get(path)
            assert response.status_code == 200
            assert response.headers['content-type'] == 'application/json; charset=utf-8'
            assert_cors(response)
            bodies.append(response.content)

        assert bodies[0] == bodies[1] == bodies[2]
        assert json.loads(bodies[0])['group']['name'] == 'User Service'

    def test_welcome_is_pretty_printed(self, client):
        assert client.get('/').text.startswith('{\n  "status": "running"')

    def test_prefix_is_not_welcome_without_stripping(self, client, group, upstream_requests):
        group.strip_prefix = False

        response = client.get('/api')

        assert response.status_code == 202
        assert str(upstream_requests[0].url) == 'http://upstream.test/api'

    def test_options_preflight(self, client):
        response = client.options('/api/anything')

        assert response.status_code == 200
        assert response.content == b''
        assert_cors(response)


class TestMockResponses:
    """Test mock serving."""

    def test_mock_with_prefix_stripped(self, client):
        response = client.get('/api/user/info')

        assert response.status_code == 200
        assert response.content == b'{"code":0,"data":{"id":1}}'
        assert response.headers['content-type'] == 'application/json; charset=utf-8'
        assert response.headers['set-cookie'] == 'session=abc123'
        assert_cors(response)

    def test_no_cookie_without_global_cookie(self, client, group):
        group.global_cookie = ''
        response = client.get('/api/user/info')
        assert 'set-cookie' not in response.headers

    def test_wildcard_mock_for_any_method(self, client):
        response = client.post('/api/orders/42', json={'x': 1})

        assert response.status_code == 201
        assert response.json() == {'order': True}

    def test_non_json_payload_is_verbatim(self, client):
        assert client.get('/api/plain').content == b'not json'

    def test_query_string_is_ignored_for_matching(self, client):
        assert client.get('/api/user/info?verbose=1').status_code == 200

    def test_extra_mock_headers(self, client, group):
        group.mock_apis[0].headers = {'X-Mocked': 'true'}
        assert client.get('/api/user/info').headers['x-mocked'] == 'true'

    def test_extension_method_mock(self, client, group, upstream_requests):
        group.mock_apis.append(MockApiConfig(path='/cache/*', method='PURGE', mock_data='{"purged":true}'))

        response = client.request('PURGE', '/api/cache/home')

        assert response.status_code == 200
        assert response.json() == {'purged': True}
        assert upstream_requests == []

    def test_delay(self, client):
        started = time.monotonic()
        response = client.get('/api/slow')
        elapsed = time.monotonic() - started

        assert response.status_code == 200
        assert elapsed >= 0.1

    def test_mock_added_while_running_is_served(self, client, group):
        group.mock_apis.append(MockApiConfig(path='/new', mock_data='{"new":1}'))
        assert client.get('/api/new').json() == {'new': 1}


class TestForwarding:
    """Test upstream forwarding."""

    def test_forwards_raw_path_and_query(self, client, upstream_requests):
        response = client.get('/api/missing?x=1&y=2', headers={'X-Trace': 't1'})

        assert response.status_code == 202
        assert response.content == b'{"from":"upstream"}'

        forwarded = upstream_requests[0]
        assert forwarded.method == 'GET'
        assert str(forwarded.url) == 'http://upstream.test/api/missing?x=1&y=2'
        assert forwarded.headers['x-trace'] == 't1'
        assert forwarded.headers['host'] == 'upstream.test'

    def test_forwards_body(self, client, upstream_requests):
        client.put('/api/profile', content=b'{"name":"n"}', headers={'Content-Type': 'application/json'})

        forwarded = upstream_requests[0]
        assert forwarded.method == 'PUT'
        assert forwarded.content == b'{"name":"n"}'
        assert forwarded.headers['content-type'] == 'application/json'

    def test_copies_upstream_headers_and_adds_cors(self, client):
        response = client.get('/api/missing')

        assert response.headers['x-upstream'] == 'yes'
        assert response.headers.get_list('set-cookie') == ['a=1', 'b=2']
        assert_cors(response)

    def test_extension_method_is_forwarded(self, client, upstream_requests):
        response = client.request('PROPFIND', '/api/dav/x')

        assert response.status_code == 202
        assert upstream_requests[0].method == 'PROPFIND'
        assert str(upstream_requests[0].url) == 'http://upstream.test/api/dav/x'

    def test_disabled_mock_is_forwarded(self, client, upstream_requests):
        response = client.get('/api/off')

        assert response.status_code == 202
        assert str(upstream_requests[0].url) == 'http://upstream.test/api/off'


class TestErrors:
    """Test error responses."""

    def test_disabled_mock_against_unreachable_upstream_is_502(self, source, group):
        group.base_url = 'http://127.0.0.1:1'
        client = TestClient(HttpDispatcher('g1', source.snapshot).get_app())

        response = client.get('/api/off')

        assert response.status_code == 502
        assert response.json() == {'error': 'Bad Gateway: Unable to reach original server'}

    def test_transport_error_is_502(self, source):
        def refuse(request):
            raise httpx.ConnectError('connection refused', request=request)

        dispatcher = HttpDispatcher('g1', source.snapshot, transport=httpx.MockTransport(refuse))
        response = TestClient(dispatcher.get_app()).get('/api/missing')

        assert response.status_code == 502

    def test_invalid_base_url_is_500(self, client, group):
        group.base_url = 'not a url'

        response = client.get('/api/missing')

        assert response.status_code == 500
        assert response.json()['error'].startswith('Internal Server Error: ')

    def test_group_disabled_while_running_is_503(self, client, source):
        assert client.get('/api/user/info').status_code == 200

        source.toggle_group_enabled('g1')
        response = client.get('/api/user/info')

        assert response.status_code == 503
        assert response.json() == {'error': 'Proxy group is disabled'}

    def test_group_removed_is_503(self, client, source):
        source.config.proxy_groups.clear()
        assert client.get('/').status_code == 503


class TestStopWhileStreaming:
    """Test stopping a listening dispatcher with a forwarded response in flight."""

    def test_streamed_body_completes_after_stop(self, source):
        async def slow_body():
            yield b'first;'
            await asyncio.sleep(0.3)
            yield b'second'

        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=slow_body()))
        # Shorter than the upstream pause; must not cut the HTTP response off
        settings = ServerSettings(shutdown_timeout=0.05)
        dispatcher = HttpDispatcher('g1', source.snapshot, settings, transport=transport)

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(('127.0.0.1', 0))
            port = s.getsockname()[1]

        async def scenario():
            await dispatcher.start(port, '127.0.0.1')
            chunks = []
            async with httpx.AsyncClient(trust_env=False) as client:
                async with client.stream('GET', f'http://127.0.0.1:{port}/api/stream') as response:
                    stream = response.aiter_bytes()
                    chunks.append(await stream.__anext__())

                    await dispatcher.aclose()
                    running = dispatcher.running

                    # Port is free again while the body is still streaming
                    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                        s.bind(('127.0.0.1', port))

                    async for chunk in stream:
                        chunks.append(chunk)

            await asyncio.wait_for(dispatcher.wait_closed(), 5)
            return b''.join(chunks), running

        body, running = asyncio.run(scenario())

        assert body == b'first;second'
        assert running is False
