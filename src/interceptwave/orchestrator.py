"""
Intercept Wave Server Orchestrator

Host-facing facade. Starts and stops proxy groups (an HttpDispatcher for
HTTP groups, a WsSessionManager for WS groups), reports which groups are
bound and routes manual pushes to the right WS group.

The registry of running groups is owned here; it is only changed through
the start/stop methods.
"""

import asyncio
import errno
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

import httpx

from .config.models import ProxyGroup, ServerSettings, WsRule
from .mock.server import HttpDispatcher
from .ws.rules import TARGET_MATCH
from .ws.server import WsSessionManager

logger = logging.getLogger("interceptwave.orchestrator")

GroupServer = Union[HttpDispatcher, WsSessionManager]


class OrchestratorError(Exception):
    """Base class for errors reported to the host."""


class ConfigurationError(OrchestratorError):
    """The requested operation conflicts with the current configuration or registry."""


class GroupStartError(OrchestratorError):
    """No group could be started; carries one message per failed group."""

    def __init__(self, failures: Dict[str, str]):
        self.failures = dict(failures)
        details = '; '.join(self.failures.values())
        super().__init__(f'Failed to start proxy groups: {details}')


@dataclass
class StartSummary:
    """Outcome of a multi-group start; failure messages are keyed by group id."""

    started: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class GroupRuntime:
    """One running group: its listener-owning server and where it listens."""

    group_id: str
    name: str
    port: int
    protocol: str
    server: GroupServer

    @property
    def url(self) -> str:
        scheme = 'ws' if isinstance(self.server, WsSessionManager) else 'http'
        return f'{scheme}://localhost:{self.port} ({self.name})'

    @property
    def running(self) -> bool:
        return self.server.running


def _snapshot_callable(config_source: Any):
    if callable(getattr(config_source, 'snapshot', None)):
        return config_source.snapshot
    if callable(config_source):
        return config_source
    raise TypeError('config_source must be callable or provide snapshot()')


class ServerOrchestrator:
    """
    Start, stop and query proxy groups.

    Example:
        orchestrator = ServerOrchestrator(FileConfigSource('interceptwave.json'))
        print(await orchestrator.start())
        ...
        await orchestrator.stop()
    """

    def __init__(
        self,
        config_source: Any,
        settings: Optional[ServerSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize orchestrator.

        Args:
            config_source: Object with ``snapshot()`` (or a zero-argument
                callable) returning the current InterceptWaveConfig
            settings: Optional ServerSettings shared by every group
            transport: Optional httpx transport for HTTP forwarding
        """
        self.config_source = config_source
        self.snapshot = _snapshot_callable(config_source)
        self.settings = settings or ServerSettings()
        self.transport = transport

        self._groups: Dict[str, GroupRuntime] = {}
        self._starting: Set[str] = set()
        self._claimed_ports: Dict[int, str] = {}

    # ------------------------------------------------------------------
    # Starting
    # ------------------------------------------------------------------

    def _create_server(self, group: ProxyGroup) -> GroupServer:
        if group.is_websocket:
            return WsSessionManager(group.id, self.snapshot, self.settings, name=group.name)
        return HttpDispatcher(group.id, self.snapshot, self.settings, transport=self.transport)

    def _claim_port(self, group: ProxyGroup) -> None:
        owner = self._claimed_ports.get(group.port)
        if owner is not None and owner != group.id:
            owner_group = self.snapshot().find_group(owner)
            owner_name = owner_group.name if owner_group else owner
            raise ConfigurationError(
                f'Port {group.port} is already in use by group "{owner_name}"'
            )
        self._claimed_ports[group.port] = group.id

    def _release_port(self, port: int, group_id: str) -> None:
        if self._claimed_ports.get(port) == group_id:
            del self._claimed_ports[port]

    async def _start_group(self, group: ProxyGroup) -> str:
        """Bind one group and register it. Returns its display URL."""
        if group.id in self._groups or group.id in self._starting:
            raise ConfigurationError(f'Server for group "{group.name}" is already running')

        self._claim_port(group)
        self._starting.add(group.id)
        server = self._create_server(group)

        try:
            await server.start(group.port, self.settings.host)
        except Exception as e:
            self._release_port(group.port, group.id)
            if isinstance(server, HttpDispatcher):
                await server.aclose()

            logger.error(f"❌ [{group.name}] Server error: {e}")
            if isinstance(e, OSError) and e.errno == errno.EADDRINUSE:
                raise ConfigurationError(f'Port {group.port} is already in use') from e
            raise OrchestratorError(f'[{group.name}] Server error: {e}') from e
        finally:
            self._starting.discard(group.id)

        runtime = GroupRuntime(
            group_id=group.id,
            name=group.name,
            port=group.port,
            protocol=group.protocol,
            server=server
        )
        self._groups[group.id] = runtime

        enabled = len([api for api in group.mock_apis if api.enabled])
        if not group.is_websocket:
            logger.info(f"   📊 Mock APIs: {enabled}/{len(group.mock_apis)} enabled")
        return runtime.url

    async def start_all(self) -> StartSummary:
        """
        Start every enabled group that is not running yet, concurrently.

        A failing group never blocks the others; its message is recorded in
        the summary and the successful groups stay up.
        """
        config = self.snapshot()
        candidates = [g for g in config.enabled_groups if g.id not in self._groups]

        results = await asyncio.gather(
            *(self._start_group(group) for group in candidates),
            return_exceptions=True
        )

        summary = StartSummary()
        for group, result in zip(candidates, results):
            if isinstance(result, Exception):
                summary.failures[group.id] = f'{group.name}: {result}'
            elif isinstance(result, BaseException):
                raise result
            else:
                summary.started.append(result)

        return summary

    async def start(self) -> str:
        """
        Start all enabled groups.

        Returns:
            Comma-separated URLs of the groups that started

        Raises:
            ConfigurationError: If no group is enabled or all are already running
            GroupStartError: If every candidate group failed to start
        """
        config = self.snapshot()
        enabled = config.enabled_groups
        if not enabled:
            raise ConfigurationError('No enabled proxy groups found')
        if all(g.id in self._groups for g in enabled):
            raise ConfigurationError('All enabled servers are already running')

        summary = await self.start_all()
        if not summary.started:
            raise GroupStartError(summary.failures)

        for message in summary.failures.values():
            logger.warning(f"⚠️ Not started: {message}")

        urls = ', '.join(summary.started)
        logger.info(f"✅ Mock servers started: {urls}")
        return urls

    async def start_group_by_id(self, group_id: str) -> str:
        """
        Start one group.

        Returns:
            The group's URL, e.g. ``http://localhost:8888 (Default)``

        Raises:
            ConfigurationError: If the group is missing, disabled, already
                running or its port is taken
        """
        group = self.snapshot().find_group(group_id)
        if group is None:
            raise ConfigurationError(f'Group not found: {group_id}')
        if not group.enabled:
            raise ConfigurationError(f'Group is disabled: {group.name}')
        if group_id in self._groups:
            raise ConfigurationError(f'Server for group "{group.name}" is already running')

        url = await self._start_group(group)
        logger.info(f"✅ Mock server started: {url}")
        return url

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------

    async def _stop_runtime(self, runtime: GroupRuntime) -> None:
        try:
            if isinstance(runtime.server, HttpDispatcher):
                await runtime.server.aclose()
            else:
                await runtime.server.stop()
        finally:
            self._release_port(runtime.port, runtime.group_id)
            logger.info(f"🛑 Server stopped for group: {runtime.name}(:{runtime.port})")

    async def stop_group_by_id(self, group_id: str) -> None:
        """Stop one group; does nothing if it is not running."""
        runtime = self._groups.pop(group_id, None)
        if runtime is None:
            return
        await self._stop_runtime(runtime)

    async def stop_all(self) -> None:
        """Stop every running group and wait until all ports are released."""
        if not self._groups:
            return

        runtimes = list(self._groups.values())
        self._groups.clear()

        results = await asyncio.gather(
            *(self._stop_runtime(runtime) for runtime in runtimes),
            return_exceptions=True
        )
        for runtime, result in zip(runtimes, results):
            if isinstance(result, Exception):
                logger.error(f"❌ [{runtime.name}] Error while stopping: {result}")

        logger.info("🛑 All mock servers stopped")

    async def stop(self) -> None:
        await self.stop_all()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> bool:
        """True if at least one group is bound."""
        return any(runtime.running for runtime in self._groups.values())

    def get_group_status(self, group_id: str) -> bool:
        runtime = self._groups.get(group_id)
        return runtime is not None and runtime.running

    def running_groups(self) -> List[GroupRuntime]:
        return [runtime for runtime in self._groups.values() if runtime.running]

    # ------------------------------------------------------------------
    # Manual push
    # ------------------------------------------------------------------

    def _ws_target(self, group_id: str):
        runtime = self._groups.get(group_id)
        if runtime is None or not isinstance(runtime.server, WsSessionManager):
            return None, []

        group = self.snapshot().find_group(group_id)
        if group is not None and not group.ws_manual_push:
            logger.warning(f"⚠️ [WS:{runtime.name}] manual push is disabled for this group")
            return None, []

        rules = list(group.ws_push_rules) if group else []
        return runtime.server, rules

    async def manual_push_by_rule(
        self,
        group_id: str,
        rule: Union[WsRule, Dict[str, Any]],
        target: str = TARGET_MATCH
    ) -> bool:
        """
        Push a rule's message to live connections of a WS group.

        Args:
            group_id: WS group id
            rule: Rule to push (a WsRule or its configuration dictionary)
            target: ``match``, ``all`` or ``recent``

        Returns:
            True if at least one connection received the message
        """
        manager, rules = self._ws_target(group_id)
        if manager is None:
            return False
        if isinstance(rule, dict):
            rule = WsRule.from_dict(rule)
        return await manager.push_by_rule(rule, target, rules)

    async def manual_push_custom(self, group_id: str, payload: str, target: str = TARGET_MATCH) -> bool:
        """
        Push an arbitrary text payload to live connections of a WS group.

        Returns:
            True if at least one connection received the payload
        """
        manager, rules = self._ws_target(group_id)
        if manager is None:
            return False
        return await manager.push_custom(payload, target, rules)
