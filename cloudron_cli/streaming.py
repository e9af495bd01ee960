"""Build and app log streaming.

Both the build service and the Cloudron push logs as ``text/event-stream``
where every event's ``data`` is one JSON object.
"""

from __future__ import annotations

import json
import logging
import typing as t
from collections.abc import AsyncIterator
from datetime import datetime

import httpx

from ._types import Console
from .client import AppStoreClient, CloudronClient, ensure_status
from .errors import BuildError, CloudronError, StatusError, TransportError

logger = logging.getLogger(__name__)

CLEAR_LINE = "\r\x1b[2K"
BINARY_BLOB = "[large binary blob skipped]"


async def iter_events(response: httpx.Response) -> AsyncIterator[t.Any]:
    """Yield the decoded ``data`` payload of every event in ``response``."""
    data: list[str] = []
    async for line in response.aiter_lines():
        if not line:
            if data:
                payload = _decode("\n".join(data))
                data = []
                if payload is not None:
                    yield payload
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name == "data":
            data.append(value[1:] if value.startswith(" ") else value)

    if data:
        payload = _decode("\n".join(data))
        if payload is not None:
            yield payload


def _decode(data: str) -> t.Any:
    try:
        return json.loads(data)
    except ValueError:
        logger.warning("skipping undecodable event: %r", data[:200])
        return None


# ---------------------------------------------------------------------------
# Build logs
# ---------------------------------------------------------------------------


class BuildLogRenderer:
    """Renders build events, overwriting repeated status lines in place."""

    def __init__(self, console: Console) -> None:
        self._console = console
        self._prev_id: str | None = None
        self._prev_was_status = False

    def render(self, payload: dict[str, t.Any]) -> None:
        write = self._console.write

        if payload.get("status"):
            status_id = payload.get("id")
            if status_id and status_id == self._prev_id:
                write(CLEAR_LINE)
            elif self._prev_was_status:
                write("\n")
            parts = (payload["status"], status_id, payload.get("progress"))
            write(" ".join(str(part) for part in parts if part))
            self._prev_id = status_id
            self._prev_was_status = True
            return

        if self._prev_was_status:
            write("\n")
            self._prev_id = None
            self._prev_was_status = False

        if payload.get("stream"):
            write(payload["stream"])
        elif payload.get("message"):
            write(f"{payload['message']}\n")
        elif isinstance(payload.get("error"), str):
            self._console.error(payload["error"])
        elif payload.get("error"):
            self._console.error(json.dumps(payload["error"]))

    def finish(self) -> None:
        if self._prev_was_status:
            self._console.write("\n")
            self._prev_was_status = False


async def print_build_log(client: AppStoreClient, console: Console, build_id: str) -> None:
    response = await client.request("GET", f"/api/v1/developers/builds/{build_id}/log")
    if response.status_code == 420:
        raise BuildError("No build logs yet. Try again later.")
    await ensure_status(response, 200, "Failed to get build log")

    for line in response.text.splitlines():
        if line:
            console.always(line)
    console.always()


async def follow_build_log(
    client: AppStoreClient,
    console: Console,
    build_id: str,
    *,
    raw: bool = False,
) -> None:
    response = await client.request(
        "GET",
        f"/api/v1/developers/builds/{build_id}/logstream",
        stream=True,
    )
    try:
        if response.status_code == 204:
            await response.aclose()
            console.info("Building already finished. Fetching full logs")
            await print_build_log(client, console, build_id)
            return

        try:
            await ensure_status(response, 200, "Failed to follow build log")
        except StatusError as exc:
            raise BuildError(str(exc)) from exc

        renderer = BuildLogRenderer(console)
        try:
            async for payload in iter_events(response):
                if raw:
                    console.always(json.dumps(payload))
                elif isinstance(payload, dict):
                    renderer.render(payload)
                else:
                    logger.warning("skipping non-object build event: %r", payload)
        except httpx.TransportError as exc:
            raise BuildError(f"Build log stream failed: {exc}") from exc
        renderer.finish()
    finally:
        await response.aclose()


# ---------------------------------------------------------------------------
# App logs
# ---------------------------------------------------------------------------


def format_log_entry(entry: dict[str, t.Any]) -> str:
    message = entry.get("message")
    if message is None:
        text = BINARY_BLOB
    elif isinstance(message, list):
        text = bytes(message).decode("utf-8", errors="replace")
    else:
        text = str(message)

    timestamp = entry.get("realtimeTimestamp")
    clock = datetime.fromtimestamp(int(timestamp) / 1_000_000).strftime("%H:%M:%S") if timestamp else "--:--:--"
    return f"{clock} [{entry.get('source', '')}] {text}"


async def print_app_logs(
    client: CloudronClient,
    console: Console,
    app_id: str,
    *,
    lines: int = 500,
) -> None:
    response = await client.request(
        "GET",
        f"/api/v1/apps/{app_id}/logs",
        params={"lines": lines},
        stream=True,
    )
    try:
        await ensure_status(response, 200, "Failed to get logs")
        try:
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                entry = _decode(line)
                if isinstance(entry, dict):
                    console.always(format_log_entry(entry))
        except httpx.TransportError as exc:
            raise TransportError(f"Log stream failed: {exc}", cause=exc) from exc
    finally:
        await response.aclose()


async def follow_app_logs(client: CloudronClient, console: Console, app_id: str) -> None:
    response = await client.request(
        "GET",
        f"/api/v1/apps/{app_id}/logstream",
        params={"lines": 10},
        stream=True,
    )
    try:
        if response.status_code == 412:
            raise CloudronError("Logs currently not available. App is not installed.")
        await ensure_status(response, 200, "Failed to follow logs")
        try:
            async for payload in iter_events(response):
                if isinstance(payload, dict):
                    console.always(format_log_entry(payload))
        except httpx.TransportError as exc:
            raise TransportError(f"Log stream failed: {exc}", cause=exc) from exc
    finally:
        await response.aclose()
