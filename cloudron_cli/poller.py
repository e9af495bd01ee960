"""Polling loops for asynchronous app operations.

The server reports install, update, backup and restore progress only through
the app record, so :class:`ProgressPoller` fetches it on a fixed interval and
renders each new progress label on its own line, extending it with one dot per
poll while the label stays the same.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import typing as t
from dataclasses import dataclass

from ._types import App, Console
from .client import CloudronClient, ensure_status
from .errors import InstallError

logger = logging.getLogger(__name__)

Sleep = t.Callable[[float], t.Awaitable[None]]

DEFAULT_QUIET_PHASES: tuple[str, ...] = ("Creating image",)


class PollState(enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    INSTALLED = "installed"
    AWAITING_HEALTH = "awaiting_health"
    HEALTHY = "healthy"
    ERROR = "error"


@dataclass
class InstallationProgress:
    """Transient state of one ``wait_for_installation`` loop."""

    state: PollState = PollState.PENDING
    label: str | None = None
    waiting_for_health: bool = False
    announced_pending: bool = False
    polls: int = 0

    @property
    def terminal(self) -> bool:
        return self.state in {PollState.INSTALLED, PollState.HEALTHY, PollState.ERROR}


def progress_label(value: str) -> str:
    """Turn ``"phase,detail"`` into ``"detail"``; other values are kept."""
    parts = value.split(",")
    if len(parts) == 2:
        return parts[1].strip()
    return value.strip()


class ProgressPoller:
    def __init__(
        self,
        client: CloudronClient,
        console: Console,
        *,
        interval: float = 0.25,
        sleep: Sleep = asyncio.sleep,
        quiet_phases: t.Iterable[str] = DEFAULT_QUIET_PHASES,
    ) -> None:
        self._client = client
        self._console = console
        self._interval = interval
        self._sleep = sleep
        self._quiet_phases = tuple(quiet_phases)

    async def fetch_app(self, app_id: str) -> App:
        response = await self._client.request("GET", f"/api/v1/apps/{app_id}")
        await ensure_status(response, 200, "Failed to get app status")
        return App.from_json(response.json())

    # -----------------------------------------------------------------------
    # Installation
    # -----------------------------------------------------------------------

    def _is_quiet(self, raw_progress: str) -> bool:
        return any(marker in raw_progress for marker in self._quiet_phases)

    def advance(
        self,
        progress: InstallationProgress,
        app: App,
        wait_for_health_check: bool,
    ) -> None:
        """Apply one polled app record to ``progress`` and render the change."""
        progress.polls += 1

        if app.installation_state == "error":
            progress.state = PollState.ERROR
            raise InstallError(app.installation_progress or "Unknown error")

        if app.is_installed:
            if not wait_for_health_check:
                progress.state = PollState.INSTALLED
            elif app.is_healthy:
                progress.state = PollState.HEALTHY
            else:
                if not progress.waiting_for_health:
                    progress.waiting_for_health = True
                    self._console.write("\n => Wait for health check ")
                else:
                    self._console.write(".")
                progress.state = PollState.AWAITING_HEALTH
            return

        if not app.installation_progress:
            if not progress.announced_pending:
                progress.announced_pending = True
                self._console.write("\n => Waiting to start installation ")
            return

        label = progress_label(app.installation_progress)
        if label != progress.label:
            progress.label = label
            progress.state = PollState.IN_PROGRESS
            self._console.write(f"\n => {label} ")
        elif not self._is_quiet(app.installation_progress):
            self._console.write(".")

    async def wait_for_installation(self, app_id: str, wait_for_health_check: bool = False) -> None:
        progress = InstallationProgress()
        while True:
            app = await self.fetch_app(app_id)
            self.advance(progress, app, wait_for_health_check)
            if progress.terminal:
                logger.info("app %s reached %s after %d polls", app_id, progress.state.value, progress.polls)
                return
            await self._sleep(self._interval)

    # -----------------------------------------------------------------------
    # Simpler waits
    # -----------------------------------------------------------------------

    async def wait_for_health(self, app_id: str) -> None:
        self._console.write("\n => Wait for health check ")
        while True:
            app = await self.fetch_app(app_id)
            if app.installation_state == "error":
                raise InstallError(app.installation_progress or "Unknown error")
            if app.is_healthy:
                return
            self._console.write(".")
            await self._sleep(self._interval)

    async def wait_for_run_state(self, app_id: str, run_state: str) -> None:
        while True:
            app = await self.fetch_app(app_id)
            if app.installation_state == "error":
                raise InstallError(app.installation_progress or "Unknown error")
            if app.run_state == run_state:
                return
            self._console.write(".")
            await self._sleep(self._interval)

    async def wait_for_uninstall(self, app_id: str) -> None:
        while True:
            response = await self._client.request("GET", f"/api/v1/apps/{app_id}")
            if response.status_code == 404:
                return
            await ensure_status(response, 200, "Failed to get app status")
            app = App.from_json(response.json())
            if app.installation_state == "error":
                raise InstallError(app.installation_progress or "Unknown error")
            self._console.write(".")
            await self._sleep(self._interval)
