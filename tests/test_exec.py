from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import socket

import httpcore
import httpx
import pytest

from cloudron_cli import actions
from cloudron_cli.errors import ExecError, StatusError, TransportError
from cloudron_cli.exec import ExecRequest, ExecSession, Terminal


class FakeTerminal(Terminal):
    """Scripted keyboard input; blocks once the script is used up."""

    def __init__(self, chunks=(), *, tty=True, size=(24, 80)):
        self._chunks = list(chunks)
        self._tty = tty
        self._size = size
        self.output = bytearray()
        self.raw_entered = 0
        self.raw_active = False

    def isatty(self) -> bool:
        return self._tty

    def size(self) -> tuple[int, int]:
        return self._size

    @contextlib.contextmanager
    def raw(self):
        self.raw_entered += 1
        self.raw_active = True
        try:
            yield
        finally:
            self.raw_active = False

    async def read(self) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        await asyncio.Event().wait()
        return b""

    def write(self, data: bytes) -> None:
        self.output += data


class FakeSocket:
    def __init__(self):
        self.options = []

    def setsockopt(self, level, option, value):
        self.options.append((level, option, value))


class FakeNetworkStream:
    """Upgraded connection: sends ``reply`` then closes once ``expected`` bytes arrived."""

    def __init__(self, reply: bytes, expected: int, *, read_error: Exception | None = None):
        self.reply = reply
        self.expected = expected
        self.read_error = read_error
        self.written = bytearray()
        self.closed = False
        self.socket = FakeSocket()
        self._replied = False
        self._input_done = asyncio.Event()

    async def read(self, max_bytes: int, timeout: float | None = None) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        if not self._replied:
            self._replied = True
            return self.reply
        await self._input_done.wait()
        return b""

    async def write(self, buffer: bytes, timeout: float | None = None) -> None:
        self.written += buffer
        if len(self.written) >= self.expected:
            self._input_done.set()

    async def aclose(self) -> None:
        self.closed = True

    def get_extra_info(self, info: str):
        return self.socket if info == "socket" else None


def upgrade_handler(stream, seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(101, extensions={"network_stream": stream})

    return handler


def test_bytes_are_forwarded_unmodified(make_context):
    keys = [b"ls\x00\xff", b"\x00\x01exit\r"]
    reply = b"\x00prompt\xfe$ \r\n\x1b[0m"
    stream = FakeNetworkStream(reply, expected=sum(len(chunk) for chunk in keys))
    terminal = FakeTerminal(keys)
    seen = []
    ctx = make_context(upgrade_handler(stream, seen))

    code = asyncio.run(ExecSession(ctx.cloudron, ctx.console, terminal).run("app-1", ["ls"]))

    assert code == 0
    assert bytes(stream.written) == b"".join(keys)
    assert bytes(terminal.output) == reply
    assert stream.closed
    assert terminal.raw_entered == 1
    assert not terminal.raw_active
    assert (socket.IPPROTO_TCP, socket.TCP_NODELAY, 1) in stream.socket.options
    assert (socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1) in stream.socket.options


def test_upgrade_request_carries_command_and_size(make_context):
    stream = FakeNetworkStream(b"", expected=0)
    seen = []
    ctx = make_context(upgrade_handler(stream, seen))
    session = ExecSession(ctx.cloudron, ctx.console, FakeTerminal(size=(40, 120)))

    asyncio.run(session.run("app-1", ["ls", "-la"], columns=100))

    request = seen[0]
    assert request.url.path == "/api/v1/apps/app-1/exec"
    assert request.headers["upgrade"] == "tcp"
    assert request.headers["connection"] == "Upgrade"
    assert request.url.params["rows"] == "40"
    assert request.url.params["columns"] == "100"
    assert json.loads(request.url.params["cmd"]) == ["ls", "-la"]
    assert request.url.params["access_token"] == "token-1"


def test_empty_command_runs_a_shell():
    request = ExecRequest.create("app-1", [], 24, 80)
    assert json.loads(request.params()["cmd"]) == ["/bin/bash"]


def test_refuses_without_a_tty_before_any_request(make_context):
    seen = []
    ctx = make_context(upgrade_handler(FakeNetworkStream(b"", 0), seen))
    session = ExecSession(ctx.cloudron, ctx.console, FakeTerminal(tty=False))

    with pytest.raises(ExecError, match="stdin is not a tty"):
        asyncio.run(session.run("app-1"))

    assert seen == []


def test_exec_command_checks_tty_before_app_lookup(make_context):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "app-1"})

    ctx = make_context(handler, terminal=FakeTerminal(tty=False))
    args = argparse.Namespace(app="app-1", cmd=[], rows=None, columns=None)

    with pytest.raises(ExecError):
        asyncio.run(actions.exec_command(ctx, args))

    assert seen == []


def test_disabled_cli_mode_prints_notice(make_context, console):
    terminal = FakeTerminal()
    ctx = make_context(lambda request: httpx.Response(412))

    code = asyncio.run(ExecSession(ctx.cloudron, ctx.console, terminal).run("app-1"))

    assert code == 0
    assert "CLI mode is disabled" in console.err
    assert terminal.raw_entered == 0


def test_forbidden_is_reported(make_context):
    ctx = make_context(lambda request: httpx.Response(403))
    session = ExecSession(ctx.cloudron, ctx.console, FakeTerminal())

    with pytest.raises(StatusError, match="Only admins can use this feature.") as excinfo:
        asyncio.run(session.run("app-1"))
    assert excinfo.value.status_code == 403


def test_failed_upgrade_raises_status_error(make_context):
    ctx = make_context(lambda request: httpx.Response(500, text="exploded"))
    session = ExecSession(ctx.cloudron, ctx.console, FakeTerminal())

    with pytest.raises(StatusError) as excinfo:
        asyncio.run(session.run("app-1"))
    assert excinfo.value.status_code == 500
    assert excinfo.value.body == "exploded"


def test_socket_failure_restores_terminal(make_context):
    stream = FakeNetworkStream(b"", expected=0, read_error=httpcore.ReadError("reset by peer"))
    terminal = FakeTerminal()
    ctx = make_context(upgrade_handler(stream, []))

    with pytest.raises(TransportError, match="reset by peer"):
        asyncio.run(ExecSession(ctx.cloudron, ctx.console, terminal).run("app-1"))

    assert terminal.raw_entered == 1
    assert not terminal.raw_active
    assert stream.closed
