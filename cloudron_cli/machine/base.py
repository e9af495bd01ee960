"""Abstract base classes for cloud providers hosting a Cloudron."""

from __future__ import annotations

import typing as t
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum


class ProviderType(Enum):
    """Supported cloud providers."""

    DIGITALOCEAN = "digitalocean"


@dataclass(slots=True, frozen=True)
class ServerSpec:
    """What to create: the droplet/instance shape and its first-boot data."""

    name: str
    region: str
    size: str
    ssh_key: str
    image: str
    user_data: dict[str, t.Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Server:
    id: str
    name: str
    status: str
    public_ip: str | None = None
    action_href: str | None = None


class BaseProvider(ABC):
    """Create/wait/list primitives; everything else happens on the server."""

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Return the provider type."""
        ...

    @abstractmethod
    async def create_server(self, spec: ServerSpec) -> Server:
        """Request a new server. Returns before the server is running."""
        ...

    @abstractmethod
    async def wait_for_server(self, server: Server) -> Server:
        """Wait until ``server`` is running and return it with its public IP."""
        ...

    @abstractmethod
    async def get_server(self, server_id: str) -> Server:
        ...

    @abstractmethod
    async def list_servers(self) -> Sequence[Server]:
        ...

    async def aclose(self) -> None:
        """Release provider resources."""
