"""``cloudron machine`` commands."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import typing as t

import httpx

from .._types import Console, Context, format_table
from ..client import ensure_status
from ..errors import CloudronError
from . import get_provider
from .base import BaseProvider, ServerSpec
from .digitalocean import DEFAULT_IMAGE
from .versions import VERSIONS_URL, VersionCatalog

logger = logging.getLogger(__name__)

STATUS_PATH = "/api/v1/cloudron/status"
REQUIRED_CREATE_OPTIONS = ("release", "fqdn", "size", "region", "ssh_key")
REQUIRED_RESTORE_OPTIONS = ("backup", "fqdn", "size", "region", "ssh_key", "backup_key")


def user_data(
    details: dict[str, t.Any],
    *,
    fqdn: str,
    version: str,
    versions_url: str,
    provider: str,
    appstore_origin: str,
    restore: dict[str, t.Any] | None = None,
) -> dict[str, t.Any]:
    """First-boot data consumed by the Cloudron installer on the new server.

    ``restore`` carries the backup ``url`` and encryption ``key`` when the new
    server should come up from a backup instead of empty.
    """
    return {
        "sourceTarballUrl": details.get("sourceTarballUrl"),
        "data": {
            "fqdn": fqdn,
            "isCustomDomain": True,
            "version": version,
            "boxVersionsUrl": versions_url,
            "provider": provider,
            "appstore": {"token": "", "apiServerOrigin": appstore_origin},
            "tlsConfig": {"provider": os.environ.get("CLOUDRON_TLS_PROVIDER", "letsencrypt-prod")},
            "appBundle": [],
            "restore": restore or {"url": None, "key": None},
        },
    }


async def wait_for_cloudron(
    http: httpx.AsyncClient,
    console: Console,
    fqdn: str,
    *,
    interval: float = 5.0,
) -> None:
    """Poll the new Cloudron's status route until it answers."""
    url = f"https://my.{fqdn}{STATUS_PATH}"
    console.write("Waiting for Cloudron to come up...")
    while True:
        try:
            response = await http.get(url, timeout=10.0)
        except httpx.TransportError as exc:
            # DNS and TLS are not ready during the first minutes
            logger.info("status check failed: %s", exc)
        else:
            if response.status_code == 200:
                console.write("\n")
                return
        console.write(".")
        await asyncio.sleep(interval)


def _provider(ctx: Context, args: argparse.Namespace) -> BaseProvider:
    name = args.provider or ctx.config.provider or "digitalocean"
    try:
        return get_provider(name, token=args.token)
    except ValueError as exc:
        raise CloudronError(str(exc)) from exc


def _require(args: argparse.Namespace, options: t.Iterable[str]) -> None:
    for option in options:
        if not getattr(args, option):
            raise CloudronError(f"--{option.replace('_', '-')} is required")


async def _provision(
    ctx: Context,
    args: argparse.Namespace,
    release: str,
    *,
    restore: dict[str, t.Any] | None = None,
) -> None:
    """Create a server running ``release`` and wait until its Cloudron answers."""
    catalog = VersionCatalog(ctx.http, args.versions_url or VERSIONS_URL)
    version = await catalog.resolve(release)
    details = await catalog.details(version)
    ctx.console.info(f"Using release {version}")

    provider = _provider(ctx, args)
    try:
        spec = ServerSpec(
            name=args.fqdn,
            region=args.region,
            size=args.size,
            ssh_key=args.ssh_key,
            image=args.image or DEFAULT_IMAGE,
            user_data=user_data(
                details,
                fqdn=args.fqdn,
                version=version,
                versions_url=catalog.url,
                provider=provider.provider_type.value,
                appstore_origin=ctx.config.appstore.origin,
                restore=restore,
            ),
        )
        ctx.console.write("Creating server...")
        server = await provider.create_server(spec)
        ctx.console.info(server.id)

        ctx.console.write("Waiting for server to come up...")
        server = await provider.wait_for_server(server)
        ctx.console.info(server.public_ip or "")
        ctx.config.provider = provider.provider_type.value
        ctx.config.save()
    finally:
        await provider.aclose()

    try:
        async with asyncio.timeout(args.timeout):
            await wait_for_cloudron(ctx.http, ctx.console, args.fqdn)
    except TimeoutError:
        raise CloudronError(f"Cloudron at my.{args.fqdn} did not come up within {args.timeout}s") from None


async def create(ctx: Context, args: argparse.Namespace) -> int:
    _require(args, REQUIRED_CREATE_OPTIONS)
    await _provision(ctx, args, args.release)

    ctx.console.info()
    ctx.console.info(f"Done. You can now setup your Cloudron at https://my.{args.fqdn}")
    ctx.console.info()
    return 0


async def get_backup_listing(ctx: Context) -> list[dict[str, t.Any]]:
    """Backups of the logged-in Cloudron, oldest first."""
    ctx.config.ensure_logged_in()
    response = await ctx.cloudron.request("GET", "/api/v1/backups")
    await ensure_status(response, 200, "Failed to list backups")
    return response.json()["backups"]


async def restore(ctx: Context, args: argparse.Namespace) -> int:
    _require(args, REQUIRED_RESTORE_OPTIONS)

    backups = await get_backup_listing(ctx)
    if not backups:
        raise CloudronError("No backups found. Create one first to restore to.")
    backup = next((entry for entry in backups if entry.get("id") == args.backup), None)
    if backup is None:
        raise CloudronError(f"Unable to find backup {args.backup}.")

    url = args.backup_url or backup.get("url")
    if not url:
        raise CloudronError(f"Backup {args.backup} has no download url, use --backup-url")

    ctx.console.info(f"Restoring {args.fqdn} to backup {backup['id']} with version {backup['version']}")
    await _provision(ctx, args, backup["version"], restore={"url": url, "key": args.backup_key})

    ctx.console.info()
    ctx.console.info(f"Done. You can now use your Cloudron at https://my.{args.fqdn}")
    ctx.console.info()
    return 0


async def list_backups(ctx: Context, args: argparse.Namespace) -> int:
    backups = await get_backup_listing(ctx)
    ctx.console.always()
    if not backups:
        ctx.console.always("No backups have been made.")
        return 0
    rows = [[backup["id"], backup.get("creationTime", ""), backup.get("version", "")] for backup in backups]
    ctx.console.always(format_table(["Id", "Creation Time", "Version"], rows))
    return 0


async def list_machines(ctx: Context, args: argparse.Namespace) -> int:
    provider = _provider(ctx, args)
    try:
        servers = await provider.list_servers()
    finally:
        await provider.aclose()

    if not servers:
        ctx.console.always("No servers found.")
        return 0
    rows = [[server.id, server.name, server.public_ip or "", server.status] for server in servers]
    ctx.console.always(format_table(["Id", "Name", "IP", "Status"], rows))
    return 0
