"""Persisted session and build history.

The config is loaded once at startup and handed to every component that needs
it. Every mutation goes through a method that writes the file back, so a
token obtained by re-authentication survives into the next invocation.
"""

from __future__ import annotations

import json
import os
import typing as t
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .errors import NotLoggedInError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = Path("~/.cloudron.json")
DEFAULT_APPSTORE_ORIGIN = "https://api.cloudron.io"
DEFAULT_POLL_INTERVAL = 0.25


def default_config_path() -> Path:
    return Path(os.environ.get("CLOUDRON_CONFIG", str(DEFAULT_CONFIG_PATH))).expanduser()


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in {"1", "true", "yes"}


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass
class Session:
    """Cloudron host, API endpoint and the current auth token."""

    host: str | None = None
    api_endpoint: str | None = None
    token: str | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.api_endpoint)

    @property
    def is_logged_in(self) -> bool:
        return self.is_configured and bool(self.token)

    def url(self, path: str) -> str:
        if not self.api_endpoint:
            raise NotLoggedInError()
        return f"https://{self.api_endpoint}{path}"


@dataclass
class AppStoreSession:
    origin: str = DEFAULT_APPSTORE_ORIGIN
    token: str | None = None

    def url(self, path: str) -> str:
        return f"{self.origin.rstrip('/')}{path}"


@dataclass
class BuildRecord:
    id: str
    ts: str
    docker_image: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, t.Any]) -> BuildRecord:
        return cls(
            id=data["id"],
            ts=data.get("ts", ""),
            docker_image=data.get("dockerImage"),
        )

    def to_dict(self) -> dict[str, t.Any]:
        data: dict[str, t.Any] = {"id": self.id, "ts": self.ts}
        if self.docker_image is not None:
            data["dockerImage"] = self.docker_image
        return data


@dataclass
class Config:
    path: Path
    session: Session = field(default_factory=Session)
    appstore: AppStoreSession = field(default_factory=AppStoreSession)
    builds: dict[str, list[BuildRecord]] = field(default_factory=dict)
    provider: str | None = None
    verify_tls: bool = True
    poll_interval: float = DEFAULT_POLL_INTERVAL

    # -----------------------------------------------------------------------
    # Load/Save
    # -----------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> Config:
        path = path or default_config_path()
        data: dict[str, t.Any] = {}
        if path.exists():
            with open(path, "r") as f:
                data = json.load(f)

        builds = {
            app_id: [BuildRecord.from_dict(entry) for entry in entries]
            for app_id, entries in data.get("apps", {}).items()
        }
        origin = os.environ.get(
            "CLOUDRON_APPSTORE_ORIGIN",
            data.get("appStoreOrigin") or DEFAULT_APPSTORE_ORIGIN,
        )
        return cls(
            path=path,
            session=Session(
                host=data.get("cloudron"),
                api_endpoint=data.get("apiEndpoint"),
                token=data.get("token"),
            ),
            appstore=AppStoreSession(origin=origin, token=data.get("appStoreToken")),
            builds=builds,
            provider=data.get("provider"),
            verify_tls=not _env_flag("CLOUDRON_INSECURE"),
            poll_interval=float(
                os.environ.get("CLOUDRON_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)
            ),
        )

    def to_dict(self) -> dict[str, t.Any]:
        data: dict[str, t.Any] = {
            "cloudron": self.session.host,
            "apiEndpoint": self.session.api_endpoint,
            "token": self.session.token,
            "appStoreOrigin": self.appstore.origin,
            "appStoreToken": self.appstore.token,
            "provider": self.provider,
            "apps": {
                app_id: [build.to_dict() for build in entries]
                for app_id, entries in self.builds.items()
            },
        }
        return {key: value for key, value in data.items() if value is not None}

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
            f.write("\n")
        os.chmod(self.path, 0o600)

    # -----------------------------------------------------------------------
    # Session mutations
    # -----------------------------------------------------------------------

    def set_endpoint(self, host: str, api_endpoint: str, provider: str | None = None) -> None:
        self.session.host = host
        self.session.api_endpoint = api_endpoint
        if provider is not None:
            self.provider = provider
        self.save()

    def set_token(self, token: str | None) -> None:
        self.session.token = token
        self.save()

    def set_appstore_token(self, token: str | None) -> None:
        self.appstore.token = token
        self.save()

    def clear(self) -> None:
        """Forget the session. Build history is kept."""
        self.session = Session()
        self.provider = None
        self.save()

    def ensure_logged_in(self) -> Session:
        if not self.session.is_logged_in:
            raise NotLoggedInError()
        return self.session

    # -----------------------------------------------------------------------
    # Build history
    # -----------------------------------------------------------------------

    def add_build(self, app_id: str, build_id: str) -> BuildRecord:
        record = BuildRecord(id=build_id, ts=datetime.now(timezone.utc).isoformat())
        self.builds.setdefault(app_id, []).append(record)
        self.save()
        return record

    def update_build(self, app_id: str, build_id: str, docker_image: str) -> None:
        for record in self.builds.get(app_id, []):
            if record.id == build_id:
                record.docker_image = docker_image
        self.save()

    def list_builds(self, app_id: str) -> list[BuildRecord]:
        return list(self.builds.get(app_id, []))

    def latest_build(self, app_id: str) -> BuildRecord | None:
        entries = self.builds.get(app_id)
        return entries[-1] if entries else None
