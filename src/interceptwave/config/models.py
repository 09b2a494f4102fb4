"""
Intercept Wave Configuration Models

Typed records for the proxy-group configuration document. Documents on disk
use camelCase keys (shared with other Intercept Wave hosts); every record
here accepts them through ``from_dict`` and writes them back with
``to_dict``. Optional fields are defaulted at construction so the servers
never have to guess.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..common.utils import stringify_compact

PROTOCOL_HTTP = "HTTP"
PROTOCOL_WS = "WS"

DIRECTIONS = ("in", "out", "both")
RULE_MODES = ("off", "periodic", "timeline")
MANUAL_TARGETS = ("match", "all", "recent")

DEFAULT_GROUP_NAME = "Default"
DEFAULT_PORT = 8888
DEFAULT_INTERCEPT_PREFIX = "/api"
DEFAULT_BASE_URL = "http://localhost:8080"
CONFIG_VERSION = "3.0"


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class MockApiConfig:
    """One static mock rule served instead of forwarding."""

    path: str
    method: str = "GET"
    enabled: bool = True
    status_code: int = 200
    mock_data: str = ""
    use_cookie: bool = False
    delay: int = 0
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MockApiConfig':
        """Create MockApiConfig from a configuration dictionary."""
        mock_data = data.get('mockData', '')
        if not isinstance(mock_data, str):
            # Hand-edited documents sometimes inline the payload as JSON.
            mock_data = stringify_compact(mock_data)

        return cls(
            path=str(data.get('path', '/')),
            method=str(data.get('method') or 'GET').upper(),
            enabled=data.get('enabled', True) is not False,
            status_code=_as_int(data.get('statusCode'), 200),
            mock_data=mock_data,
            use_cookie=bool(data.get('useCookie', False)),
            delay=max(0, _as_int(data.get('delay'), 0)),
            headers=dict(data.get('headers') or {})
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'path': self.path,
            'method': self.method,
            'enabled': self.enabled,
            'statusCode': self.status_code,
            'mockData': self.mock_data,
            'useCookie': self.use_cookie,
            'delay': self.delay,
        }
        if self.headers:
            data['headers'] = dict(self.headers)
        return data


@dataclass
class WsTimelineItem:
    """One scheduled send, relative to connection open."""

    at_ms: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {'atMs': self.at_ms, 'message': self.message}


def normalize_timeline(raw: Any, default_message: str) -> List[WsTimelineItem]:
    """
    Normalize a timeline definition to ``WsTimelineItem`` records.

    Two forms are accepted:
    - ``[{"atMs": 500, "message": "..."}]``: items without a message reuse
      the rule message
    - ``[0, 1.5, 3]``: legacy list of second offsets, every entry sends the
      rule message

    Negative or unparsable offsets are dropped. Items are returned sorted by
    offset.
    """
    items: List[WsTimelineItem] = []
    if not isinstance(raw, list):
        return items

    for entry in raw:
        if isinstance(entry, dict):
            at_ms = _as_float(entry.get('atMs'), -1)
            message = entry.get('message')
            if message is None:
                message = default_message
        elif isinstance(entry, (int, float)) and not isinstance(entry, bool):
            at_ms = float(entry) * 1000
            message = default_message
        else:
            continue

        if at_ms < 0:
            continue
        items.append(WsTimelineItem(at_ms=int(at_ms), message=str(message)))

    items.sort(key=lambda item: item.at_ms)
    return items


@dataclass
class WsRule:
    """Interception and scheduled-push behaviour for WebSocket traffic."""

    path: str = "/"
    enabled: bool = True
    event_key: Optional[str] = None
    event_value: Optional[Any] = None
    direction: str = "both"
    intercept: bool = False
    mode: str = "off"
    period_sec: float = 0
    message: str = ""
    timeline: List[WsTimelineItem] = field(default_factory=list)
    loop: bool = False
    on_open_fire: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WsRule':
        """Create WsRule from a configuration dictionary."""
        message = data.get('message')
        message = '' if message is None else str(message)

        direction = str(data.get('direction') or 'both').lower()
        if direction not in DIRECTIONS:
            direction = 'both'

        mode = str(data.get('mode') or 'off').lower()
        if mode not in RULE_MODES:
            mode = 'off'

        return cls(
            path=str(data.get('path') or '/'),
            enabled=data.get('enabled', True) is not False,
            event_key=data.get('eventKey') or None,
            event_value=data.get('eventValue'),
            direction=direction,
            intercept=bool(data.get('intercept', False)),
            mode=mode,
            period_sec=_as_float(data.get('periodSec'), 0),
            message=message,
            timeline=normalize_timeline(data.get('timeline'), message),
            loop=bool(data.get('loop', False)),
            on_open_fire=bool(data.get('onOpenFire', False))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'path': self.path,
            'eventKey': self.event_key,
            'eventValue': self.event_value,
            'direction': self.direction,
            'intercept': self.intercept,
            'mode': self.mode,
            'periodSec': self.period_sec,
            'message': self.message,
            'timeline': [item.to_dict() for item in self.timeline],
            'loop': self.loop,
            'onOpenFire': self.on_open_fire,
        }


@dataclass
class TLSConfig:
    """TLS settings carried in the document; no listener terminates TLS."""

    enabled: bool = False
    key_path: str = ""
    cert_path: str = ""
    passphrase: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TLSConfig':
        return cls(
            enabled=bool(data.get('enabled', False)),
            key_path=data.get('keyPath', '') or '',
            cert_path=data.get('certPath', '') or '',
            passphrase=data.get('passphrase')
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'keyPath': self.key_path,
            'certPath': self.cert_path,
            'passphrase': self.passphrase,
        }


@dataclass
class ProxyGroup:
    """One independently run mock/proxy endpoint bound to its own port."""

    id: str
    name: str = DEFAULT_GROUP_NAME
    port: int = DEFAULT_PORT
    protocol: str = PROTOCOL_HTTP
    enabled: bool = True
    intercept_prefix: str = DEFAULT_INTERCEPT_PREFIX
    base_url: str = DEFAULT_BASE_URL
    strip_prefix: bool = True
    global_cookie: str = ""
    mock_apis: List[MockApiConfig] = field(default_factory=list)
    ws_base_url: Optional[str] = None
    ws_intercept_prefix: Optional[str] = None
    ws_manual_push: bool = True
    ws_push_rules: List[WsRule] = field(default_factory=list)
    wss_enabled: bool = False
    wss_keystore_path: Optional[str] = None
    wss_keystore_password: Optional[str] = None
    tls: Optional[TLSConfig] = None

    @property
    def is_websocket(self) -> bool:
        return self.protocol == PROTOCOL_WS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProxyGroup':
        """Create ProxyGroup from a configuration dictionary."""
        protocol = str(data.get('protocol') or PROTOCOL_HTTP).upper()
        if protocol not in (PROTOCOL_HTTP, PROTOCOL_WS):
            protocol = PROTOCOL_HTTP

        tls = data.get('tls')

        return cls(
            id=str(data.get('id') or uuid.uuid4()),
            name=data.get('name') or DEFAULT_GROUP_NAME,
            port=_as_int(data.get('port'), DEFAULT_PORT),
            protocol=protocol,
            enabled=data.get('enabled', True) is not False,
            intercept_prefix=data.get('interceptPrefix', DEFAULT_INTERCEPT_PREFIX) or '',
            base_url=data.get('baseUrl', DEFAULT_BASE_URL) or '',
            strip_prefix=bool(data.get('stripPrefix', True)),
            global_cookie=data.get('globalCookie') or '',
            mock_apis=[MockApiConfig.from_dict(api) for api in data.get('mockApis') or []],
            ws_base_url=data.get('wsBaseUrl') or None,
            ws_intercept_prefix=data.get('wsInterceptPrefix') or None,
            ws_manual_push=data.get('wsManualPush', True) is not False,
            ws_push_rules=[WsRule.from_dict(rule) for rule in data.get('wsPushRules') or []],
            wss_enabled=bool(data.get('wssEnabled', False)),
            wss_keystore_path=data.get('wssKeystorePath'),
            wss_keystore_password=data.get('wssKeystorePassword'),
            tls=TLSConfig.from_dict(tls) if isinstance(tls, dict) else None
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'port': self.port,
            'protocol': self.protocol,
            'enabled': self.enabled,
            'interceptPrefix': self.intercept_prefix,
            'baseUrl': self.base_url,
            'stripPrefix': self.strip_prefix,
            'globalCookie': self.global_cookie,
            'mockApis': [api.to_dict() for api in self.mock_apis],
            'wsBaseUrl': self.ws_base_url,
            'wsInterceptPrefix': self.ws_intercept_prefix,
            'wsManualPush': self.ws_manual_push,
            'wsPushRules': [rule.to_dict() for rule in self.ws_push_rules],
            'wssEnabled': self.wss_enabled,
            'wssKeystorePath': self.wss_keystore_path,
            'wssKeystorePassword': self.wss_keystore_password,
        }
        if self.tls is not None:
            data['tls'] = self.tls.to_dict()
        return data


def default_group() -> ProxyGroup:
    """Group written to a fresh configuration file."""
    return ProxyGroup(id=str(uuid.uuid4()))


@dataclass
class InterceptWaveConfig:
    """The complete configuration document: a version and its proxy groups."""

    version: str = CONFIG_VERSION
    proxy_groups: List[ProxyGroup] = field(default_factory=list)

    def find_group(self, group_id: str) -> Optional[ProxyGroup]:
        for group in self.proxy_groups:
            if group.id == group_id:
                return group
        return None

    @property
    def enabled_groups(self) -> List[ProxyGroup]:
        return [g for g in self.proxy_groups if g.enabled]

    @staticmethod
    def is_legacy(data: Dict[str, Any]) -> bool:
        """A document without version or proxyGroups predates proxy groups."""
        return not data.get('version') or not isinstance(data.get('proxyGroups'), list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'InterceptWaveConfig':
        """Create the configuration, migrating legacy flat documents."""
        data = data or {}
        if cls.is_legacy(data):
            return cls.migrate_legacy(data)

        return cls(
            version=str(data.get('version')),
            proxy_groups=[ProxyGroup.from_dict(g) for g in data.get('proxyGroups', [])]
        )

    @classmethod
    def migrate_legacy(cls, data: Dict[str, Any]) -> 'InterceptWaveConfig':
        """
        Migrate a single-server legacy document to one default proxy group.

        Legacy documents carry port, interceptPrefix, baseUrl, stripPrefix,
        globalCookie and mockApis at the top level.
        """
        group = ProxyGroup(
            id=str(uuid.uuid4()),
            port=_as_int(data.get('port'), DEFAULT_PORT),
            intercept_prefix=data.get('interceptPrefix') or DEFAULT_INTERCEPT_PREFIX,
            base_url=data.get('baseUrl') or DEFAULT_BASE_URL,
            strip_prefix=bool(data.get('stripPrefix', True)),
            global_cookie=data.get('globalCookie') or '',
            mock_apis=[
                MockApiConfig.from_dict(api)
                for api in data.get('mockApis') or []
                if isinstance(api, dict)
            ]
        )
        return cls(version=CONFIG_VERSION, proxy_groups=[group])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'proxyGroups': [g.to_dict() for g in self.proxy_groups],
        }


@dataclass
class ServerSettings:
    """Process-level options shared by every group listener."""

    host: str = "127.0.0.1"
    forward_timeout: float = 30.0
    # WS listeners only; HTTP listeners let streamed responses finish after stop
    shutdown_timeout: float = 5.0
    log_level: str = "info"
