"""
Intercept Wave Configuration Sources

The servers never hold on to a configuration object across a request: they
call ``snapshot()`` on a source at the top of every operation and the latest
read wins. Two sources are provided:

- FileConfigSource: JSON or YAML document on disk, re-read per snapshot
- MemoryConfigSource: a live in-memory object, for embedding and tests
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import CONFIG_VERSION, InterceptWaveConfig, ProxyGroup, default_group
from ..common.utils import parse_json_tolerant, stringify_compact

logger = logging.getLogger("interceptwave.config")

YAML_SUFFIXES = ('.yaml', '.yml')


def compact_mock_data(config: InterceptWaveConfig) -> bool:
    """
    Rewrite every JSON-valued ``mockData`` string to its minified form.

    Payloads that are not JSON, even after tolerant repair, are left as they
    are so the user can fix them.

    Returns:
        True if at least one payload changed
    """
    changed = False
    for group in config.proxy_groups:
        for api in group.mock_apis:
            if not api.mock_data:
                continue
            try:
                compact = stringify_compact(parse_json_tolerant(api.mock_data))
            except ValueError:
                continue
            if compact != api.mock_data:
                api.mock_data = compact
                changed = True
    return changed


class MemoryConfigSource:
    """
    Configuration source backed by a live object.

    Mutations to the held configuration are observed by the next snapshot.

    Example:
        source = MemoryConfigSource(InterceptWaveConfig(proxy_groups=[group]))
        source.snapshot().find_group(group.id).enabled = False
    """

    def __init__(self, config: Optional[InterceptWaveConfig] = None):
        self.config = config or InterceptWaveConfig()

    def snapshot(self) -> InterceptWaveConfig:
        return self.config

    def toggle_group_enabled(self, group_id: str) -> Optional[bool]:
        group = self.config.find_group(group_id)
        if group is None:
            return None
        group.enabled = not group.enabled
        return group.enabled


class FileConfigSource:
    """
    Configuration source backed by a JSON or YAML file.

    On construction the file is created with a default group when missing,
    legacy flat documents are migrated and JSON mock payloads are compacted.
    Every ``snapshot()`` re-reads the file.

    Example:
        source = FileConfigSource('.intercept-wave/config.json')
        config = source.snapshot()
        for group in config.enabled_groups:
            print(group.name, group.port)
    """

    def __init__(self, path: Union[str, Path]):
        """
        Initialize the source and prepare the file.

        Args:
            path: Path to the configuration file (.json, .yaml or .yml)
        """
        self.path = Path(path)

        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.save(InterceptWaveConfig(version=CONFIG_VERSION, proxy_groups=[default_group()]))
            logger.info(f"Created default configuration at {self.path}")
        else:
            self._migrate()

    @property
    def is_yaml(self) -> bool:
        return self.path.suffix.lower() in YAML_SUFFIXES

    def _read_raw(self) -> Dict[str, Any]:
        with open(self.path, 'r', encoding='utf-8') as f:
            if self.is_yaml:
                data = yaml.safe_load(f)
            else:
                data = json.load(f)

        if not isinstance(data, dict):
            raise ValueError(
                f"Unexpected configuration format in {self.path}. "
                f"Expected an object, got {type(data).__name__}"
            )
        return data

    def _migrate(self) -> None:
        data = self._read_raw()
        legacy = InterceptWaveConfig.is_legacy(data)
        config = InterceptWaveConfig.from_dict(data)

        if compact_mock_data(config) or legacy:
            self.save(config)
            if legacy:
                logger.info(f"Migrated legacy configuration {self.path} to proxy groups")

    def snapshot(self) -> InterceptWaveConfig:
        """
        Read the current configuration.

        Raises:
            FileNotFoundError: If the file was removed
            ValueError: If the document is not valid JSON/YAML
        """
        return InterceptWaveConfig.from_dict(self._read_raw())

    def save(self, config: InterceptWaveConfig) -> None:
        """Write the configuration back, keeping the file's format."""
        config.version = CONFIG_VERSION
        data = config.to_dict()

        with open(self.path, 'w', encoding='utf-8') as f:
            if self.is_yaml:
                yaml.safe_dump(data, f, allow_unicode=True, sort_keys=False)
            else:
                json.dump(data, f, ensure_ascii=False, indent=4)

    def toggle_group_enabled(self, group_id: str) -> Optional[bool]:
        """
        Flip a group's ``enabled`` flag.

        Returns:
            The new flag value, or None if the group does not exist
        """
        config = self.snapshot()
        group = config.find_group(group_id)
        if group is None:
            return None
        group.enabled = not group.enabled
        self.save(config)
        return group.enabled

    def update_group(self, group_id: str, **changes: Any) -> Optional[ProxyGroup]:
        """
        Update attributes of one group, e.g. ``update_group(gid, port=9000)``.

        Raises:
            AttributeError: If a change names an unknown attribute
        """
        config = self.snapshot()
        group = config.find_group(group_id)
        if group is None:
            return None

        for name, value in changes.items():
            if not hasattr(group, name):
                raise AttributeError(f"ProxyGroup has no attribute '{name}'")
            setattr(group, name, value)

        self.save(config)
        return group
