from __future__ import annotations

import asyncio
import io
import typing as t

import httpx
import pytest

from cloudron_cli import cli
from cloudron_cli._types import Console, Context
from cloudron_cli.cli import create_context
from cloudron_cli.client import Prompt
from cloudron_cli.config import Config, Session
from cloudron_cli.exec import Terminal

Handler = t.Callable[[httpx.Request], httpx.Response]


class ScriptedPrompt(Prompt):
    """Answers questions from a fixed list instead of the terminal."""

    def __init__(self, answers: t.Iterable[str] = ()) -> None:
        self.answers = list(answers)
        self.questions: list[str] = []

    async def ask(self, question: str, *, secret: bool = False) -> str:
        self.questions.append(question)
        return self.answers.pop(0)


class CapturedConsole(Console):
    def __init__(self) -> None:
        super().__init__(stream=io.StringIO(), err_stream=io.StringIO())

    @property
    def out(self) -> str:
        return self.stream.getvalue()

    @property
    def err(self) -> str:
        return self.err_stream.getvalue()


@pytest.fixture
def console() -> CapturedConsole:
    return CapturedConsole()


@pytest.fixture
def config(tmp_path, monkeypatch) -> Config:
    for name in ("CLOUDRON_APPSTORE_ORIGIN", "CLOUDRON_POLL_INTERVAL", "CLOUDRON_INSECURE"):
        monkeypatch.delenv(name, raising=False)
    return Config(
        path=tmp_path / "cloudron.json",
        session=Session(host="example.com", api_endpoint="my.example.com", token="token-1"),
    )


@pytest.fixture
def make_context(config: Config, console: CapturedConsole) -> t.Callable[..., Context]:
    def factory(
        handler: Handler,
        *,
        prompt: Prompt | None = None,
        terminal: Terminal | None = None,
    ) -> Context:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return create_context(
            config,
            console,
            http,
            prompt=prompt or ScriptedPrompt(),
            terminal=terminal,
        )

    return factory


@pytest.fixture
def run_cli(config: Config, console: CapturedConsole, monkeypatch) -> t.Callable[..., int]:
    """Run the full command line against ``handler`` with the stored session."""

    def runner(handler: Handler, *argv: str) -> int:
        config.save()
        monkeypatch.setattr(
            cli,
            "create_http_client",
            lambda _config: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        args = cli.parse_args(["--config", str(config.path), *argv])
        return asyncio.run(cli.run(args, console))

    return runner
