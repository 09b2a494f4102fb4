"""
Intercept Wave

Mock and intercept proxy for HTTP and WebSocket traffic. Each proxy group
listens on its own port and either answers from configured mocks or
forwards to a real upstream.
"""

__version__ = "1.0.0"

from .config import FileConfigSource, InterceptWaveConfig, MemoryConfigSource, ServerSettings
from .orchestrator import (
    ConfigurationError,
    GroupStartError,
    OrchestratorError,
    ServerOrchestrator,
    StartSummary
)

__all__ = [
    '__version__',
    'FileConfigSource',
    'InterceptWaveConfig',
    'MemoryConfigSource',
    'ServerSettings',
    'ConfigurationError',
    'GroupStartError',
    'OrchestratorError',
    'ServerOrchestrator',
    'StartSummary',
]
