"""Shared type definitions to avoid circular imports."""

from __future__ import annotations

import sys
import typing as t
from collections.abc import Sequence
from dataclasses import dataclass, field

if t.TYPE_CHECKING:
    import httpx

    from .client import AppStoreClient, CloudronClient, Prompt
    from .config import Config
    from .exec import Terminal
    from .poller import ProgressPoller

Command = Sequence[str]


class Console:
    """Simple console output with quiet mode support."""

    quiet: bool

    def __init__(
        self,
        stream: t.TextIO | None = None,
        err_stream: t.TextIO | None = None,
    ) -> None:
        self.quiet = False
        self._stream = stream
        self._err_stream = err_stream

    @property
    def stream(self) -> t.TextIO:
        return self._stream if self._stream is not None else sys.stdout

    @property
    def err_stream(self) -> t.TextIO:
        return self._err_stream if self._err_stream is not None else sys.stderr

    def info(self, value: str = "") -> None:
        if not self.quiet:
            print(value, file=self.stream)

    def always(self, value: str = "") -> None:
        print(value, file=self.stream)

    def write(self, value: str) -> None:
        """Write without a trailing newline, used for inline progress."""
        if self.quiet:
            return
        self.stream.write(value)
        self.stream.flush()

    def error(self, value: str) -> None:
        print(value, file=self.err_stream)


@dataclass(slots=True, frozen=True)
class App:
    """An installed app as reported by ``GET /api/v1/apps/{id}``."""

    id: str
    location: str = ""
    fqdn: str = ""
    manifest_id: str | None = None
    manifest_version: str | None = None
    title: str | None = None
    installation_state: str | None = None
    installation_progress: str | None = None
    run_state: str | None = None
    health: str | None = None
    raw: dict[str, t.Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_json(cls, data: dict[str, t.Any]) -> App:
        manifest = data.get("manifest") or {}
        return cls(
            id=data["id"],
            location=data.get("location") or "",
            fqdn=data.get("fqdn") or "",
            manifest_id=manifest.get("id"),
            manifest_version=manifest.get("version"),
            title=manifest.get("title"),
            installation_state=data.get("installationState"),
            installation_progress=data.get("installationProgress"),
            run_state=data.get("runState"),
            health=data.get("health"),
            raw=data,
        )

    @property
    def is_installed(self) -> bool:
        return self.installation_state == "installed"

    @property
    def is_healthy(self) -> bool:
        return self.health == "healthy"


@dataclass
class Context:
    """Collaborators shared by every command of one invocation."""

    config: Config
    console: Console
    http: httpx.AsyncClient
    cloudron: CloudronClient
    appstore: AppStoreClient
    prompt: Prompt
    poller: ProgressPoller
    terminal: Terminal | None = None


def format_table(headers: Sequence[str], rows: Sequence[Sequence[t.Any]]) -> str:
    cells = [[str(value) for value in row] for row in rows]
    widths = [
        max([len(header), *(len(row[index]) for row in cells)])
        for index, header in enumerate(headers)
    ]

    def line(values: Sequence[str]) -> str:
        return "  ".join(value.ljust(width) for value, width in zip(values, widths)).rstrip()

    out = [line(headers), line(["-" * width for width in widths])]
    out.extend(line(row) for row in cells)
    return "\n".join(out)
