"""
Intercept Wave WebSocket Session Manager

Serves one WebSocket proxy group. Every accepted client connection gets a
context holding its timers, its optional upstream tunnel and the last events
seen in each direction.

Features:
- Bidirectional relay between client and optional upstream (``wsBaseUrl``)
- Rule-based interception of messages in either direction
- Scheduled pushes (periodic and timeline rules)
- Manual pushes to the most recent, all, or rule-matched connections
"""

from __future__ import annotations  # Enable forward references for type hints

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import websockets
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from .rules import (
    DIRECTION_IN,
    DIRECTION_OUT,
    EventField,
    outbound_event,
    rule_matches_message,
    select_connections
)
from ..common.listener import GroupListener
from ..common.utils import json_fields
from ..config.models import InterceptWaveConfig, ProxyGroup, ServerSettings, WsRule

STATE_STOPPED = 'stopped'
STATE_STARTING = 'starting'
STATE_RUNNING = 'running'

# Close code sent to clients when the group is stopped ("going away").
CLOSE_GOING_AWAY = 1001
# Close code for connections refused because the group is disabled.
CLOSE_TRY_AGAIN_LATER = 1013

SEND_ERRORS = (RuntimeError, OSError, WebSocketDisconnect, ConnectionClosed)


@dataclass
class ConnectionContext:
    """Per-socket state, created on accept and discarded on close."""

    id: str
    group_id: str
    path: str
    socket: Any
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    upstream: Any = None
    upstream_task: Optional[asyncio.Task] = None
    timers: List[asyncio.Task] = field(default_factory=list)
    last_in_event: Optional[EventField] = None
    last_out_event: Optional[EventField] = None

    @property
    def is_open(self) -> bool:
        return (
            self.socket.client_state == WebSocketState.CONNECTED
            and self.socket.application_state == WebSocketState.CONNECTED
        )

    @property
    def upstream_open(self) -> bool:
        return self.upstream is not None and getattr(self.upstream, 'state', None) is State.OPEN

    def touch(self) -> None:
        self.last_activity_at = time.time()

    def cancel_timers(self) -> None:
        for timer in self.timers:
            timer.cancel()
        self.timers = []


def _new_connection_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def get_effective_ws_path(raw_path: str, group: ProxyGroup) -> str:
    """
    Connection path used for rule matching.

    The query string is dropped and, when ``stripPrefix`` is on, the
    ``wsInterceptPrefix`` is removed from the front.

    Example:
        get_effective_ws_path('/ws/echo?x=1', group)  # '/echo' with prefix '/ws'
    """
    path = raw_path.split('?', 1)[0]
    if not path.startswith('/'):
        path = '/' + path

    prefix = group.ws_intercept_prefix
    if prefix and group.strip_prefix and path.startswith(prefix):
        path = path[len(prefix):]
        if not path.startswith('/'):
            path = '/' + path
    return path


class WsSessionManager:
    """
    WebSocket listener, relay and push scheduler for one proxy group.

    The connection registry is owned by this instance; timers are only ever
    armed and cancelled from here.

    Example:
        manager = WsSessionManager(group.id, source.snapshot, name=group.name)
        await manager.start(port=group.port)
        await manager.push_custom('{"type":"ping"}', 'all')
        await manager.stop()
    """

    def __init__(
        self,
        group_id: str,
        config_provider: Callable[[], InterceptWaveConfig],
        settings: Optional[ServerSettings] = None,
        name: Optional[str] = None
    ):
        """
        Initialize session manager.

        Args:
            group_id: Id of the WS proxy group served
            config_provider: Returns the current configuration snapshot
            settings: Optional ServerSettings (bind host, shutdown timeout)
            name: Display name used in log lines (defaults to the group id)
        """
        self.group_id = group_id
        self.config_provider = config_provider
        self.settings = settings or ServerSettings()
        self.name = name or group_id
        self.logger = logging.getLogger("interceptwave.ws")

        self.state = STATE_STOPPED
        self._listener: Optional[GroupListener] = None
        self._connections: Dict[str, ConnectionContext] = {}

        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        app = FastAPI(
            title="Intercept Wave WebSocket Server",
            docs_url=None,
            redoc_url=None,
            openapi_url=None
        )

        @app.websocket("/{path:path}")
        async def accept(websocket: WebSocket, path: str):
            """Accept a client on any path."""
            await self.serve_connection(websocket)

        return app

    def get_app(self) -> FastAPI:
        return self.app

    @property
    def running(self) -> bool:
        return self.state == STATE_RUNNING and self._listener is not None and self._listener.running

    @property
    def connections(self) -> List[ConnectionContext]:
        return list(self._connections.values())

    def current_group(self) -> Optional[ProxyGroup]:
        return self.config_provider().find_group(self.group_id)

    def current_rules(self) -> List[WsRule]:
        group = self.current_group()
        return list(group.ws_push_rules) if group else []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, port: int, host: Optional[str] = None) -> None:
        """
        Bind the group's port and start accepting connections.

        Raises:
            OSError: If the port cannot be bound
        """
        group = self.current_group()
        if group is not None:
            self.name = group.name
            if group.wss_enabled:
                self.logger.warning(
                    f"⚠️ [WS:{self.name}] WSS requested but not supported; serving plain ws://"
                )

        self.state = STATE_STARTING
        listener = GroupListener(
            self.app,
            port=port,
            host=host or self.settings.host,
            name=f"WS:{self.name}",
            shutdown_timeout=self.settings.shutdown_timeout
        )
        try:
            await listener.start()
        except Exception:
            self.state = STATE_STOPPED
            raise

        self._listener = listener
        self.state = STATE_RUNNING

        prefix = (group.ws_intercept_prefix if group else None) or '/'
        self.logger.info(f"✅ [WS:{self.name}] WS server started on ws://localhost:{port}{prefix}")

    async def stop(self) -> None:
        """Close every live connection and its upstream, then release the port."""
        await self.close_all()

        if self._listener is not None:
            listener, self._listener = self._listener, None
            await listener.stop()

        self.state = STATE_STOPPED
        self.logger.info(f"🛑 [WS:{self.name}] WS server stopped")

    async def close_all(self) -> None:
        for ctx in self.connections:
            await self._close_context(ctx, close_socket=True)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @staticmethod
    def _raw_url(websocket: WebSocket) -> str:
        raw_path = websocket.scope.get('raw_path')
        path = raw_path.decode('latin-1').split('?', 1)[0] if raw_path else websocket.url.path
        query = websocket.scope.get('query_string', b'').decode('latin-1')
        return f'{path}?{query}' if query else path

    async def serve_connection(self, websocket: WebSocket) -> None:
        """Run one client connection until either side closes it."""
        group = self.current_group()
        if group is None or not group.enabled:
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
            return

        raw_url = self._raw_url(websocket)
        await websocket.accept()

        ctx = ConnectionContext(
            id=_new_connection_id(),
            group_id=self.group_id,
            path=get_effective_ws_path(raw_url, group),
            socket=websocket
        )
        self._connections[ctx.id] = ctx
        self.logger.info(f"📡 [WS:{self.name}] CONNECT id={ctx.id} path={raw_url}")

        self.schedule_rules(ctx, group.ws_push_rules)

        if group.ws_base_url:
            upstream_url = f"{group.ws_base_url}{raw_url}"
            ctx.upstream_task = asyncio.create_task(self._run_upstream(ctx, upstream_url))

        try:
            while True:
                message = await websocket.receive()
                if message['type'] == 'websocket.disconnect':
                    self.logger.info(
                        f"🔌 [WS:{self.name}] CLOSE id={ctx.id} code={message.get('code')}"
                    )
                    break

                text = message.get('text')
                if text is None:
                    text = (message.get('bytes') or b'').decode('utf-8', errors='replace')

                ctx.touch()
                await self.handle_message(ctx, DIRECTION_IN, text)
        finally:
            await self._close_context(ctx)

    async def _run_upstream(self, ctx: ConnectionContext, url: str) -> None:
        """Hold the upstream leg open and feed its messages through the rules."""
        try:
            async with websockets.connect(url) as upstream:
                ctx.upstream = upstream
                self.logger.info(f"🔗 [WS:{self.name}] Upstream connected for id={ctx.id} -> {url}")

                async for data in upstream:
                    ctx.touch()
                    text = data if isinstance(data, str) else data.decode('utf-8', errors='replace')
                    await self.handle_message(ctx, DIRECTION_OUT, text)

            self.logger.info(f"🔌 [WS:{self.name}] Upstream closed for id={ctx.id}")
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self.logger.error(f"❌ [WS:{self.name}] Upstream error for id={ctx.id}: {e}")
        finally:
            ctx.upstream = None

    async def _close_context(self, ctx: ConnectionContext, close_socket: bool = False) -> None:
        self._connections.pop(ctx.id, None)
        ctx.cancel_timers()

        if close_socket and ctx.is_open:
            try:
                await ctx.socket.close(code=CLOSE_GOING_AWAY)
            except SEND_ERRORS as e:
                self.logger.debug(f"[WS:{self.name}] close id={ctx.id} failed: {e}")

        if ctx.upstream_open:
            try:
                await ctx.upstream.close()
            except (OSError, WebSocketException) as e:
                self.logger.debug(f"[WS:{self.name}] upstream close id={ctx.id} failed: {e}")

        task = ctx.upstream_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def handle_message(self, ctx: ConnectionContext, direction: str, text: str) -> bool:
        """
        Record events, apply interception and relay one message.

        Args:
            ctx: Connection the message belongs to
            direction: ``in`` from the client, ``out`` from the upstream
            text: Message decoded as UTF-8

        Returns:
            True if a matching rule intercepted the message
        """
        fields = json_fields(text)
        if fields:
            if direction == DIRECTION_IN:
                ctx.last_in_event = fields[0]
            else:
                ctx.last_out_event = fields[0]

        rules = self.current_rules()
        matched = [r for r in rules if rule_matches_message(r, ctx.path, direction, fields)]
        intercepted = any(r.intercept for r in matched)

        self.logger.info(
            f"📥 [WS:{self.name}] {direction.upper()} id={ctx.id} bytes={len(text)} "
            f"matchedRules={len(matched)} intercepted={intercepted}"
        )

        if intercepted:
            self.logger.info(f"🛑 [WS:{self.name}] INTERCEPT id={ctx.id} direction={direction}")
            return True

        if direction == DIRECTION_IN:
            if ctx.upstream_open:
                try:
                    await ctx.upstream.send(text)
                    self.logger.info(f"📤 [WS:{self.name}] FORWARD → upstream id={ctx.id}")
                except (OSError, WebSocketException) as e:
                    self.logger.error(f"❌ [WS:{self.name}] Upstream send failed id={ctx.id}: {e}")
        elif ctx.is_open and await self._send_to_client(ctx, text):
            self.logger.info(f"📤 [WS:{self.name}] FORWARD ← upstream id={ctx.id}")

        return False

    async def _send_to_client(self, ctx: ConnectionContext, payload: str) -> bool:
        try:
            await ctx.socket.send_text(payload)
        except SEND_ERRORS as e:
            self.logger.warning(f"⚠️ [WS:{self.name}] send to id={ctx.id} failed: {e}")
            return False
        return True

    def _track_outbound(self, ctx: ConnectionContext, payload: str, event_key: Optional[str] = None) -> None:
        event = outbound_event(payload, event_key)
        if event is not None:
            ctx.last_out_event = event

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_rules(self, ctx: ConnectionContext, rules: Sequence[WsRule]) -> None:
        """Arm periodic and timeline timers for every enabled rule."""
        for rule in rules:
            if not rule.enabled:
                continue
            if rule.mode == 'periodic' and rule.message:
                self._schedule_periodic(ctx, rule)
            elif rule.mode == 'timeline':
                self._schedule_timeline(ctx, rule)

    def reschedule(self, ctx: ConnectionContext, rules: Sequence[WsRule]) -> None:
        """Cancel every timer of the connection, then arm them again from ``rules``."""
        ctx.cancel_timers()
        self.schedule_rules(ctx, rules)

    def _schedule_periodic(self, ctx: ConnectionContext, rule: WsRule) -> None:
        if rule.period_sec <= 0:
            self.logger.warning(
                f"⚠️ [WS:{self.name}] periodic rule has invalid periodSec ({rule.period_sec}); skip"
            )
            return
        ctx.timers.append(asyncio.create_task(self._run_periodic(ctx, rule)))

    def _schedule_timeline(self, ctx: ConnectionContext, rule: WsRule) -> None:
        # Items without a payload are never sent
        if not any(item.message for item in rule.timeline) and not (rule.on_open_fire and rule.message):
            return
        ctx.timers.append(asyncio.create_task(self._run_timeline(ctx, rule)))

    async def _run_periodic(self, ctx: ConnectionContext, rule: WsRule) -> None:
        if rule.on_open_fire:
            await self._auto_send(ctx, rule, rule.message, 'periodic(onOpen)')

        while True:
            await asyncio.sleep(rule.period_sec)
            await self._auto_send(ctx, rule, rule.message, 'periodic')

    async def _run_timeline(self, ctx: ConnectionContext, rule: WsRule) -> None:
        loop = asyncio.get_running_loop()
        items = sorted(rule.timeline, key=lambda item: item.at_ms)
        series_sec = items[-1].at_ms / 1000 if items else 0

        if rule.on_open_fire and rule.message:
            await self._auto_send(ctx, rule, rule.message, 'timeline(onOpen)')

        while True:
            started = loop.time()
            for item in items:
                if not item.message:
                    continue
                delay = started + item.at_ms / 1000 - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
                await self._auto_send(ctx, rule, item.message, f'timeline at={item.at_ms}ms')

            if not rule.loop or series_sec <= 0:
                return

            remaining = started + series_sec - loop.time()
            if remaining > 0:
                await asyncio.sleep(remaining)

    async def _auto_send(self, ctx: ConnectionContext, rule: WsRule, payload: str, label: str) -> None:
        if not ctx.is_open:
            return
        if await self._send_to_client(ctx, payload):
            self._track_outbound(ctx, payload, rule.event_key)
            self.logger.info(
                f"📤 [WS:{self.name}] AUTO {label} rule path={rule.path} "
                f"conn={ctx.id} bytes={len(payload)}"
            )

    # ------------------------------------------------------------------
    # Manual push
    # ------------------------------------------------------------------

    async def push_by_rule(
        self,
        rule: WsRule,
        target: str,
        all_rules: Optional[Sequence[WsRule]] = None
    ) -> bool:
        """
        Send a rule's message to the selected connections.

        Every selected connection has its timers re-armed from ``all_rules``
        before the send.

        Returns:
            True if at least one connection received the message
        """
        selected = select_connections(self.connections, target, rule, all_rules)
        delivered = False

        for ctx in selected:
            self.reschedule(ctx, all_rules or [])
            if ctx.is_open and await self._send_to_client(ctx, rule.message):
                self._track_outbound(ctx, rule.message, rule.event_key)
                delivered = True
                self.logger.info(
                    f"📤 [WS:{self.name}] MANUAL PUSH path={rule.path} "
                    f"conn={ctx.id} bytes={len(rule.message)}"
                )

        return delivered

    async def push_custom(
        self,
        payload: str,
        target: str,
        all_rules: Optional[Sequence[WsRule]] = None
    ) -> bool:
        """
        Send an arbitrary payload to the selected connections.

        Returns:
            True if at least one connection received the payload
        """
        selected = select_connections(self.connections, target, None, all_rules)
        delivered = False

        for ctx in selected:
            self.reschedule(ctx, all_rules or [])
            if ctx.is_open and await self._send_to_client(ctx, payload):
                self._track_outbound(ctx, payload)
                delivered = True
                self.logger.info(
                    f"📤 [WS:{self.name}] MANUAL CUSTOM PUSH conn={ctx.id} bytes={len(payload)}"
                )

        return delivered
