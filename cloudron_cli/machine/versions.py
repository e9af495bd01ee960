"""Cloudron release catalog."""

from __future__ import annotations

import typing as t

import httpx
from packaging.version import InvalidVersion, Version

from ..errors import CloudronError, StatusError, TransportError, UnknownVersionError

VERSIONS_URL = "https://s3.amazonaws.com/dev-cloudron-releases/versions.json"


def _sort_key(version: str) -> Version:
    try:
        return Version(version)
    except InvalidVersion:
        return Version("0")


class VersionCatalog:
    """Release metadata keyed by version, fetched at most once per instance.

    ``resolve("latest")`` is computed from the cached catalog, so it names the
    same release for the whole lifetime of the process.
    """

    def __init__(self, http: httpx.AsyncClient, url: str = VERSIONS_URL) -> None:
        self._http = http
        self._url = url
        self._versions: dict[str, dict[str, t.Any]] | None = None

    @property
    def url(self) -> str:
        return self._url

    async def load(self) -> dict[str, dict[str, t.Any]]:
        if self._versions is None:
            try:
                response = await self._http.get(self._url)
            except httpx.TransportError as exc:
                raise TransportError(f"Unable to fetch versions file: {exc}", cause=exc) from exc
            if response.status_code != 200:
                raise StatusError("Unable to fetch versions file", status_code=response.status_code)
            versions = response.json()
            if not isinstance(versions, dict):
                raise CloudronError("Unable to parse versions file")
            self._versions = versions
        return self._versions

    async def resolve(self, version: str) -> str:
        versions = await self.load()
        if version == "latest" and versions:
            version = max(versions, key=_sort_key)
        if version not in versions:
            raise UnknownVersionError(version)
        return version

    async def details(self, version: str) -> dict[str, t.Any]:
        resolved = await self.resolve(version)
        return (await self.load())[resolved]
