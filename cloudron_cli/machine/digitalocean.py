"""DigitalOcean provider implementation."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import typing as t
from collections.abc import Sequence
from typing_extensions import override

import httpx

from ..errors import CloudronError, DomainError, StatusError, TransportError
from .base import BaseProvider, ProviderType, Server, ServerSpec

logger = logging.getLogger(__name__)

API_URL = "https://api.digitalocean.com"
DEFAULT_IMAGE = "ubuntu-16-04-x64"


def _server_from_droplet(droplet: dict[str, t.Any], action_href: str | None = None) -> Server:
    networks = (droplet.get("networks") or {}).get("v4") or []
    return Server(
        id=str(droplet["id"]),
        name=droplet.get("name", ""),
        status=droplet.get("status", ""),
        public_ip=networks[0]["ip_address"] if networks else None,
        action_href=action_href,
    )


class DigitalOceanProvider(BaseProvider):
    """Droplets on DigitalOcean, authenticated with a personal access token."""

    def __init__(
        self,
        token: str | None = None,
        *,
        http: httpx.AsyncClient | None = None,
        poll_interval: float = 2.0,
    ) -> None:
        token = token or os.environ.get("DIGITALOCEAN_TOKEN")
        if not token:
            raise CloudronError("DIGITALOCEAN_TOKEN is not set")
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(base_url=API_URL, timeout=httpx.Timeout(30.0, connect=10.0))
        self._headers = {"Authorization": f"Bearer {token}"}
        self._poll_interval = poll_interval

    @property
    @override
    def provider_type(self) -> ProviderType:
        return ProviderType.DIGITALOCEAN

    async def _request(self, method: str, url: str, expected: int, **kwargs: t.Any) -> dict[str, t.Any]:
        try:
            response = await self._http.request(method, url, headers=self._headers, **kwargs)
        except httpx.TransportError as exc:
            raise TransportError(f"DigitalOcean request failed: {exc}", cause=exc) from exc
        if response.status_code != expected:
            raise StatusError(f"DigitalOcean {method} {url} failed", status_code=response.status_code, body=response.text)
        return response.json()

    async def get_ssh_key_id(self, name: str) -> int:
        data = await self._request("GET", f"{API_URL}/v2/account/keys", 200)
        for key in data.get("ssh_keys") or []:
            if key.get("name") == name:
                return key["id"]
        raise CloudronError(f"No ssh key found with the name {name}")

    @override
    async def create_server(self, spec: ServerSpec) -> Server:
        ssh_key_id = await self.get_ssh_key_id(spec.ssh_key)
        logger.info("using ssh key %s (%s)", spec.ssh_key, ssh_key_id)

        body = {
            "name": spec.name,
            "region": spec.region,
            "size": spec.size,
            "image": spec.image,
            "ssh_keys": [ssh_key_id],
            "user_data": json.dumps(spec.user_data),
            "backups": False,
        }
        data = await self._request("POST", f"{API_URL}/v2/droplets", 202, json=body)
        actions = (data.get("links") or {}).get("actions") or []
        return _server_from_droplet(data["droplet"], actions[0]["href"] if actions else None)

    @override
    async def wait_for_server(self, server: Server) -> Server:
        if server.action_href:
            while True:
                data = await self._request("GET", server.action_href, 200)
                status = data["action"]["status"]
                if status == "completed":
                    break
                if status == "errored":
                    raise DomainError(f"Droplet {server.id} failed to start")
                await asyncio.sleep(self._poll_interval)
        return await self.get_server(server.id)

    @override
    async def get_server(self, server_id: str) -> Server:
        data = await self._request("GET", f"{API_URL}/v2/droplets/{server_id}", 200)
        return _server_from_droplet(data["droplet"])

    @override
    async def list_servers(self) -> Sequence[Server]:
        data = await self._request("GET", f"{API_URL}/v2/droplets", 200, params={"per_page": 200})
        return [_server_from_droplet(droplet) for droplet in data.get("droplets") or []]

    @override
    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
