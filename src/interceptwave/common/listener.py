"""
Group listener.

Each running proxy group owns exactly one listening socket. The socket is
bound here, synchronously, so that a port conflict surfaces as an ``OSError``
from ``start()`` instead of a process exit inside uvicorn. The bound socket
is then handed to an embedded uvicorn server that runs as a task on the
current event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
from typing import Any, Optional

import uvicorn

logger = logging.getLogger("interceptwave.listener")


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class GroupListener:
    """
    Bind one TCP port and serve an ASGI application on it.

    Example:
        listener = GroupListener(app, port=8888, name='Default')
        await listener.start()
        ...
        await listener.stop()
    """

    def __init__(
        self,
        app: Any,
        port: int,
        host: str = "127.0.0.1",
        name: str = "",
        shutdown_timeout: Optional[float] = 5.0
    ):
        """
        Args:
            app: ASGI application to serve
            port: TCP port to bind
            host: Interface to bind
            name: Label used in log lines
            shutdown_timeout: Seconds requests in flight get after stop before
                they are cancelled; None lets them run to completion
        """
        self.app = app
        self.port = port
        self.host = host
        self.name = name or f":{port}"
        self.shutdown_timeout = shutdown_timeout
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None
        self._sock: Optional[socket.socket] = None
        self._draining: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(128)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return sock

    async def start(self) -> None:
        """
        Bind the port and wait until the server accepts connections.

        Raises:
            OSError: If the port cannot be bound
            RuntimeError: If the server stops before finishing startup
        """
        if self.running:
            raise RuntimeError(f"Listener {self.name} is already running")

        sock = self._bind()

        config = uvicorn.Config(
            self.app,
            lifespan="off",
            log_config=None,
            log_level="warning",
            access_log=False,
            timeout_graceful_shutdown=self.shutdown_timeout,
        )
        self._sock = sock
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._task.done():
                sock.close()
                self._task.result()
                raise RuntimeError(f"Listener {self.name} exited during startup")
            await asyncio.sleep(0.01)

        logger.debug(f"Listener {self.name} bound on {self.host}:{self.port}")

    async def stop(self, drain: bool = False) -> None:
        """
        Stop accepting connections.

        Args:
            drain: Return once the port is released and let requests in
                flight finish in the background (see ``wait_closed()``).
                Otherwise wait for the server task to finish.
        """
        if self._server is None or self._task is None:
            return

        server, task, sock = self._server, self._task, self._sock
        self._server = None
        self._task = None
        self._sock = None

        server.should_exit = True
        if drain:
            while sock is not None and sock.fileno() != -1 and not task.done():
                await asyncio.sleep(0.01)
            self._draining = task
        else:
            await task
        logger.debug(f"Listener {self.name} released port {self.port}")

    @property
    def draining(self) -> bool:
        return self._draining is not None and not self._draining.done()

    async def wait_closed(self) -> None:
        """Wait until requests still in flight after ``stop(drain=True)`` have finished."""
        if self._draining is not None:
            await self._draining
