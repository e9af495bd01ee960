"""Remote command execution over an upgraded HTTP connection.

``GET /api/v1/apps/{id}/exec`` with ``Upgrade: tcp`` answers ``101 Switching
Protocols`` and from then on the connection is a plain duplex byte stream
attached to the remote process' tty. The local terminal is switched to raw
mode and bytes are copied unmodified in both directions until the remote side
closes the stream.
"""

from __future__ import annotations

import asyncio
import atexit
import contextlib
import json
import logging
import os
import shutil
import socket
import sys
import termios
import tty
import typing as t
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

import httpcore

from ._types import Command, Console
from .client import CloudronClient, ensure_status, show_developer_mode_notice
from .errors import ExecError, StatusError, TransportError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_SHELL: tuple[str, ...] = ("/bin/bash",)
READ_SIZE = 64 * 1024
UPGRADE_HEADERS = {"Connection": "Upgrade", "Upgrade": "tcp"}


@dataclass(slots=True, frozen=True)
class ExecRequest:
    app_id: str
    argv: tuple[str, ...]
    rows: int
    columns: int

    @classmethod
    def create(
        cls,
        app_id: str,
        argv: Sequence[str],
        rows: int,
        columns: int,
    ) -> ExecRequest:
        return cls(app_id=app_id, argv=tuple(argv) or DEFAULT_SHELL, rows=rows, columns=columns)

    def params(self) -> dict[str, t.Any]:
        return {
            "rows": self.rows,
            "columns": self.columns,
            "cmd": json.dumps(list(self.argv)),
        }


# ---------------------------------------------------------------------------
# Local terminal
# ---------------------------------------------------------------------------


class Terminal(ABC):
    """The local side of an exec session."""

    @abstractmethod
    def isatty(self) -> bool:
        ...

    @abstractmethod
    def size(self) -> tuple[int, int]:
        """Return ``(rows, columns)``."""
        ...

    @abstractmethod
    def raw(self) -> t.ContextManager[None]:
        ...

    @abstractmethod
    async def read(self) -> bytes:
        """Return the next chunk of input, ``b""`` at end of input."""
        ...

    @abstractmethod
    def write(self, data: bytes) -> None:
        ...


class LocalTerminal(Terminal):
    def __init__(self, stdin_fd: int | None = None, stdout_fd: int | None = None) -> None:
        self._stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self._stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd

    def isatty(self) -> bool:
        return os.isatty(self._stdin_fd)

    def size(self) -> tuple[int, int]:
        size = shutil.get_terminal_size((80, 24))
        return size.lines, size.columns

    @contextlib.contextmanager
    def raw(self) -> Iterator[None]:
        fd = self._stdin_fd
        saved = termios.tcgetattr(fd)

        def restore() -> None:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)

        # restores the tty even if the interpreter exits without unwinding
        atexit.register(restore)
        tty.setraw(fd)
        try:
            yield
        finally:
            restore()
            atexit.unregister(restore)

    async def read(self) -> bytes:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[bytes] = loop.create_future()
        fd = self._stdin_fd

        def on_readable() -> None:
            loop.remove_reader(fd)
            if future.done():
                return
            try:
                future.set_result(os.read(fd, READ_SIZE))
            except OSError as exc:
                future.set_exception(exc)

        loop.add_reader(fd, on_readable)
        try:
            return await future
        finally:
            loop.remove_reader(fd)

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(self._stdout_fd, view)
            view = view[written:]


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def configure_socket(stream: t.Any) -> None:
    sock = stream.get_extra_info("socket")
    if sock is None:
        logger.info("exec stream exposes no socket, leaving options unchanged")
        return
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)


class ExecSession:
    """Runs one remote command with the local terminal attached."""

    def __init__(
        self,
        client: CloudronClient,
        console: Console,
        terminal: Terminal | None = None,
    ) -> None:
        self._client = client
        self._console = console
        self._terminal = terminal or LocalTerminal()

    def check_terminal(self) -> None:
        if not self._terminal.isatty():
            raise ExecError("stdin is not a tty")

    async def run(
        self,
        app_id: str,
        argv: Command = (),
        rows: int | None = None,
        columns: int | None = None,
    ) -> int:
        self.check_terminal()

        local_rows, local_columns = self._terminal.size()
        request = ExecRequest.create(
            app_id,
            argv,
            rows if rows is not None else local_rows,
            columns if columns is not None else local_columns,
        )

        stream = await self._upgrade(request)
        if stream is None:
            return 0

        configure_socket(stream)
        try:
            with self._terminal.raw():
                await self._pump(stream)
        finally:
            await stream.aclose()
        return 0

    async def _upgrade(self, request: ExecRequest) -> t.Any | None:
        """Return the upgraded network stream, or None if exec is disabled."""
        logger.info("exec %s on app %s", request.argv, request.app_id)
        response = await self._client.request(
            "GET",
            f"/api/v1/apps/{request.app_id}/exec",
            params=request.params(),
            headers=UPGRADE_HEADERS,
            stream=True,
        )

        if response.status_code == 412:
            await response.aclose()
            show_developer_mode_notice(self._console, self._client.config.session.api_endpoint)
            return None
        if response.status_code == 403:
            await response.aclose()
            raise StatusError("Only admins can use this feature.", status_code=403)
        await ensure_status(response, 101, "Failed to start exec session")

        # the response itself is never read after the protocol switch
        return response.extensions["network_stream"]

    async def _pump(self, stream: t.Any) -> None:
        terminal = self._terminal

        async def remote_to_local() -> None:
            while True:
                data = await stream.read(READ_SIZE)
                if not data:
                    return
                terminal.write(data)

        async def local_to_remote() -> None:
            while True:
                data = await terminal.read()
                if not data:
                    return
                await stream.write(data)

        reader = asyncio.create_task(remote_to_local())
        writer = asyncio.create_task(local_to_remote())
        try:
            done, _ = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
            if reader in done:
                reader.result()
            else:
                # local input ended; the session lasts until the remote closes
                writer.result()
                await reader
        except (httpcore.NetworkError, OSError) as exc:
            raise TransportError(f"Exec connection failed: {exc}", cause=exc) from exc
        finally:
            for task in (reader, writer):
                task.cancel()
            await asyncio.gather(reader, writer, return_exceptions=True)
