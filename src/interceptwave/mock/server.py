"""
Intercept Wave HTTP Dispatcher

FastAPI application serving one HTTP proxy group. Every request either gets
a locally configured mock response or is forwarded, streamed, to the
group's upstream ``baseUrl``.

Request flow:
- Welcome document at ``/`` (and at the intercept prefix when stripping)
- CORS preflight for OPTIONS
- Mock lookup on the prefix-stripped path
- Upstream forwarding for everything else
"""

from __future__ import annotations  # Enable forward references for type hints

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from .matcher import select_best_mock_api
from ..common.listener import GroupListener
from ..common.utils import stringify_pretty
from ..config.models import InterceptWaveConfig, MockApiConfig, ProxyGroup, ServerSettings

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization',
}

JSON_CONTENT_TYPE = 'application/json; charset=utf-8'

# Upstream response headers that must not be copied; the server recomputes them.
SKIPPED_RESPONSE_HEADERS = {'transfer-encoding', 'content-length'}


class InvalidTargetURL(ValueError):
    """The forwarding target built from baseUrl and the request is not a usable URL."""


class _CatchAllEndpoint:
    """
    ASGI endpoint handing every request to the dispatcher.

    Registered as a plain ASGI app so the route accepts any method,
    including verbs such as PURGE or PROPFIND.
    """

    def __init__(self, dispatcher: HttpDispatcher):
        self.dispatcher = dispatcher

    async def __call__(self, scope, receive, send) -> None:
        request = Request(scope, receive)
        response = await self.dispatcher.handle_request(request)
        await response(scope, receive, send)


def _trim_trailing_slash(prefix: str) -> str:
    return prefix[:-1] if prefix.endswith('/') else prefix


def build_welcome_document(group: ProxyGroup) -> Dict[str, Any]:
    """Describe a running group and its enabled mocks, with example URLs."""
    enabled_apis = [api for api in group.mock_apis if api.enabled]
    prefix = _trim_trailing_slash(group.intercept_prefix or '')

    apis = []
    for api in enabled_apis:
        path = api.path if api.path.startswith('/') else f'/{api.path}'
        apis.append({
            'path': api.path,
            'method': api.method,
            'enabled': True,
            'example': f'{prefix}{path}',
        })

    return {
        'status': 'running',
        'message': 'Intercept Wave Mock Server is running',
        'group': {
            'name': group.name,
            'port': group.port,
            'baseUrl': group.base_url,
            'interceptPrefix': group.intercept_prefix,
            'serverUrl': f'http://localhost:{group.port}',
        },
        'mockApis': {
            'total': len(group.mock_apis),
            'enabled': len(enabled_apis),
        },
        'apis': apis,
    }


def get_match_path(raw_url: str, group: ProxyGroup) -> str:
    """
    Path used for mock lookup: the raw URL with the intercept prefix removed.

    Only applies when ``stripPrefix`` is on and the URL starts with the
    prefix; an empty remainder maps to ``/``.
    """
    prefix = group.intercept_prefix
    if group.strip_prefix and prefix and raw_url.startswith(prefix):
        return raw_url[len(prefix):] or '/'
    return raw_url


def build_target_url(base_url: str, raw_url: str) -> httpx.URL:
    """
    Concatenate the upstream origin and the original path+query.

    Raises:
        InvalidTargetURL: If the result is not an absolute http(s) URL
    """
    target = f'{base_url}{raw_url}'
    try:
        url = httpx.URL(target)
    except httpx.InvalidURL as e:
        raise InvalidTargetURL(f'Invalid URL: {target} ({e})') from e

    if url.scheme not in ('http', 'https') or not url.host:
        raise InvalidTargetURL(f'Invalid URL: {target}')
    return url


class HttpDispatcher:
    """
    Mock-or-forward HTTP handler for one proxy group.

    The group is looked up in a fresh configuration snapshot on every
    request, so edits made while the server is listening (disabling the
    group, adding mocks) apply to the next request.

    Example:
        dispatcher = HttpDispatcher(group.id, source.snapshot)
        app = dispatcher.get_app()
    """

    def __init__(
        self,
        group_id: str,
        config_provider: Callable[[], InterceptWaveConfig],
        settings: Optional[ServerSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize dispatcher.

        Args:
            group_id: Id of the proxy group this dispatcher serves
            config_provider: Returns the current configuration snapshot
            settings: Optional ServerSettings (forwarding timeout)
            transport: Optional httpx transport for the upstream client
        """
        self.group_id = group_id
        self.config_provider = config_provider
        self.settings = settings or ServerSettings()
        self.logger = logging.getLogger("interceptwave.http")

        self._client = httpx.AsyncClient(
            timeout=self.settings.forward_timeout,
            follow_redirects=False,
            transport=transport
        )
        self._listener: Optional[GroupListener] = None
        self._closing: Optional[asyncio.Task] = None

        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application with a single catch-all route."""
        app = FastAPI(
            title="Intercept Wave Mock Server",
            docs_url=None,
            redoc_url=None,
            openapi_url=None
        )

        app.add_route("/{path:path}", _CatchAllEndpoint(self), include_in_schema=False)

        return app

    def get_app(self) -> FastAPI:
        return self.app

    def current_group(self) -> Optional[ProxyGroup]:
        return self.config_provider().find_group(self.group_id)

    @property
    def running(self) -> bool:
        return self._listener is not None and self._listener.running

    async def start(self, port: int, host: Optional[str] = None) -> None:
        """
        Bind the group's port and start serving.

        Raises:
            OSError: If the port cannot be bound
        """
        group = self.current_group()
        name = group.name if group else self.group_id

        listener = GroupListener(
            self.app,
            port=port,
            host=host or self.settings.host,
            name=name,
            shutdown_timeout=None
        )
        await listener.start()
        self._listener = listener

        prefix = group.intercept_prefix if group else ''
        self.logger.info(f"✅ [{name}] Mock server started on http://localhost:{port}")
        self.logger.info(f"   Intercept prefix: {prefix}")
        self.logger.info(f"   Forwarding to: {group.base_url if group else ''}")

    async def stop(self) -> Optional[GroupListener]:
        """
        Release the port. Responses already streaming are left to finish.

        Returns:
            The stopped listener, or None if the dispatcher was not running
        """
        if self._listener is None:
            return None

        listener, self._listener = self._listener, None
        await listener.stop(drain=True)
        self.logger.info(f"🛑 [{listener.name}] Mock server stopped")
        return listener

    async def aclose(self) -> None:
        """Stop, and close the upstream client once in-flight responses have ended."""
        listener = await self.stop()
        if listener is not None and listener.draining:
            self._closing = asyncio.create_task(self._close_after_drain(listener))
        else:
            await self._client.aclose()

    async def _close_after_drain(self, listener: GroupListener) -> None:
        try:
            await listener.wait_closed()
        finally:
            await self._client.aclose()

    async def wait_closed(self) -> None:
        """Wait until responses that were streaming at stop time have finished."""
        if self._closing is not None:
            await self._closing

    @staticmethod
    def _raw_url(request: Request) -> str:
        raw_path = request.scope.get('raw_path')
        path = raw_path.decode('latin-1').split('?', 1)[0] if raw_path else request.url.path
        query = request.scope.get('query_string', b'').decode('latin-1')
        return f'{path}?{query}' if query else path

    async def handle_request(self, request: Request) -> Response:
        """
        Handle one exchange.

        Args:
            request: Incoming request

        Returns:
            Welcome, preflight, mock, forwarded or error response
        """
        group = self.current_group()
        if group is None or not group.enabled:
            return self._error_response(503, 'Proxy group is disabled')

        raw_url = self._raw_url(request)
        method = request.method

        self.logger.info(f"📥 [{group.name}] {method} {raw_url}")

        if self._is_welcome_url(raw_url, group):
            return self._welcome_response(group)

        if method == 'OPTIONS':
            self.logger.info("   ✓ CORS preflight handled")
            return Response(status_code=200, headers=dict(CORS_HEADERS))

        match_path = get_match_path(raw_url, group)
        self.logger.info(f"   🎯 Match path: {match_path}")

        mock_api = select_best_mock_api(group.mock_apis, match_path.split('?', 1)[0], method)

        if mock_api is not None and mock_api.enabled:
            return await self._mock_response(mock_api, group)

        return await self._forward(request, raw_url, group)

    @staticmethod
    def _is_welcome_url(raw_url: str, group: ProxyGroup) -> bool:
        if raw_url in ('', '/'):
            return True

        if group.strip_prefix and group.intercept_prefix:
            prefix = _trim_trailing_slash(group.intercept_prefix)
            return raw_url in (prefix, f'{prefix}/')

        return False

    def _welcome_response(self, group: ProxyGroup) -> Response:
        body = stringify_pretty(build_welcome_document(group))
        headers = dict(CORS_HEADERS)
        headers['Content-Type'] = JSON_CONTENT_TYPE
        return Response(content=body.encode('utf-8'), status_code=200, headers=headers)

    async def _mock_response(self, mock_api: MockApiConfig, group: ProxyGroup) -> Response:
        """Serve the configured payload verbatim after the configured delay."""
        self.logger.info(f"   📝 Mock API found: {mock_api.method} {mock_api.path}")

        if mock_api.delay > 0:
            await asyncio.sleep(mock_api.delay / 1000)

        headers = dict(CORS_HEADERS)
        headers['Content-Type'] = JSON_CONTENT_TYPE
        headers.update(mock_api.headers)
        if mock_api.use_cookie and group.global_cookie:
            headers['Set-Cookie'] = group.global_cookie

        body = mock_api.mock_data.encode('utf-8')
        self.logger.info(f"   📤 Response data length: {len(body)}")

        delayed = f" (delayed {mock_api.delay}ms)" if mock_api.delay > 0 else ""
        self.logger.info(f"   ✅ Mock response sent [{mock_api.status_code}]{delayed}")

        return Response(content=body, status_code=mock_api.status_code, headers=headers)

    async def _forward(self, request: Request, raw_url: str, group: ProxyGroup) -> Response:
        """Forward the request upstream and stream the response back."""
        try:
            target_url = build_target_url(group.base_url, raw_url)
        except InvalidTargetURL as e:
            self.logger.error(f"   ❌ URL parse error: {e}")
            return self._error_response(500, f'Internal Server Error: {e}')

        self.logger.info(f"   ⏩ Forwarding to: {target_url}")

        headers: List[Tuple[bytes, bytes]] = [
            (name, value) for name, value in request.headers.raw
            if name.lower() != b'host'
        ]

        has_body = 'content-length' in request.headers or 'transfer-encoding' in request.headers

        upstream_request = self._client.build_request(
            request.method,
            target_url,
            headers=headers,
            content=request.stream() if has_body else None
        )

        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.TransportError as e:
            self.logger.error(f"   ❌ Proxy error: {e!r}")
            self.logger.error(f"   ❌ Target was: {target_url}")
            return self._error_response(502, 'Bad Gateway: Unable to reach original server')

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose)
        )
        response.raw_headers.extend(
            (name, value) for name, value in upstream.headers.raw
            if name.decode('latin-1').lower() not in SKIPPED_RESPONSE_HEADERS
        )
        for name, value in CORS_HEADERS.items():
            response.headers[name] = value

        self.logger.info(f"   ✅ Proxied response [{upstream.status_code}]")
        return response

    def _error_response(self, status_code: int, message: str) -> Response:
        return JSONResponse(
            content={'error': message},
            status_code=status_code,
            media_type=JSON_CONTENT_TYPE
        )
