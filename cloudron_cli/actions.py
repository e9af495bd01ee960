"""App lifecycle commands against the logged-in Cloudron."""

from __future__ import annotations

import argparse
import asyncio
import base64
import json
import typing as t
import webbrowser
from pathlib import Path

import httpx

from ._types import App, Context, format_table
from .appstore import load_manifest, select_image
from .client import CloudronAuthenticator, detect_api_endpoint, ensure_status
from .errors import CloudronError, InstallError, TransportError
from .exec import ExecSession
from .streaming import follow_app_logs, print_app_logs

NO_APP_FOUND = (
    "Cannot find a matching app. Apps installed from the store are not picked automatically."
)
CMD_NOT_EXECUTABLE = "Container command could not be invoked."

# ---------------------------------------------------------------------------
# App lookup
# ---------------------------------------------------------------------------


async def list_apps_json(ctx: Context) -> list[dict[str, t.Any]]:
    response = await ctx.cloudron.request("GET", "/api/v1/apps")
    await ensure_status(response, 200, "Failed to list apps")
    return response.json()["apps"]


async def select_available_app(ctx: Context, manifest_id: str) -> App | None:
    """Pick among the locally installed apps built from ``manifest_id``."""
    apps = [
        App.from_json(data)
        for data in await list_apps_json(ctx)
        if not data.get("appStoreId") and (data.get("manifest") or {}).get("id") == manifest_id
    ]
    if not apps:
        return None
    if len(apps) == 1:
        return apps[0]

    ctx.console.always()
    ctx.console.always(f"Available apps of type {manifest_id}:")
    for index, app in enumerate(apps):
        ctx.console.always(f"[{index}]\t{app.location}")
    index = await ctx.prompt.choose("app", len(apps), ctx.console)
    return apps[index]


async def get_app(ctx: Context, app_id: str | None) -> App | None:
    ctx.config.ensure_logged_in()

    if not app_id:
        _, manifest = load_manifest()
        return await select_available_app(ctx, manifest["id"])

    response = await ctx.cloudron.request("GET", f"/api/v1/apps/{app_id}")
    if response.status_code == 503:
        raise CloudronError("The Cloudron is currently updating, please retry in a bit.")
    if response.status_code == 404:
        raise CloudronError(f"App {app_id} not found.")
    await ensure_status(response, 200, "Failed to get app")
    return App.from_json(response.json())


async def require_app(ctx: Context, app_id: str | None) -> App:
    app = await get_app(ctx, app_id)
    if app is None:
        raise CloudronError(NO_APP_FOUND)
    return app


async def post_action(ctx: Context, app: App, action: str, message: str, body: t.Any = None) -> None:
    response = await ctx.cloudron.request(
        "POST",
        f"/api/v1/apps/{app.id}/{action}",
        json=body if body is not None else {},
    )
    await ensure_status(response, 202, message)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


async def login(ctx: Context, args: argparse.Namespace) -> int:
    host = args.cloudron or await ctx.prompt.ask("Cloudron Hostname: ")
    host, api_endpoint = await detect_api_endpoint(ctx.http, host)
    ctx.config.set_endpoint(host, api_endpoint)

    authenticator = CloudronAuthenticator(
        ctx.config,
        ctx.console,
        ctx.prompt,
        username=args.username,
        password=args.password,
    )
    await authenticator.authenticate(ctx.http)
    return 0


async def logout(ctx: Context, args: argparse.Namespace) -> int:
    ctx.config.clear()
    ctx.console.info("Logged out.")
    return 0


# ---------------------------------------------------------------------------
# Read-only commands
# ---------------------------------------------------------------------------


def _manifest_label(data: dict[str, t.Any]) -> str:
    manifest_id = (data.get("manifest") or {}).get("id", "")
    return manifest_id if data.get("appStoreId") else f"{manifest_id} (local)"


async def list_apps(ctx: Context, args: argparse.Namespace) -> int:
    ctx.config.ensure_logged_in()
    apps = await list_apps_json(ctx)
    if not apps:
        ctx.console.always("No apps installed.")
        return 0

    rows = [
        [
            data["id"],
            (data.get("manifest") or {}).get("title", ""),
            data.get("location", ""),
            (data.get("manifest") or {}).get("version", ""),
            _manifest_label(data),
            data.get("installationState", ""),
            data.get("runState", ""),
        ]
        for data in apps
    ]
    headers = ["Id", "Title", "Location", "Version", "Manifest Id", "Install state", "Run state"]
    ctx.console.always()
    ctx.console.always(format_table(headers, rows))
    return 0


async def info(ctx: Context, args: argparse.Namespace) -> int:
    app = await require_app(ctx, args.app)
    ctx.console.always(f"Id: {app.id}")
    ctx.console.always(f"Location: {app.location}")
    ctx.console.always(f"Version: {app.manifest_version}")
    ctx.console.always(f"Manifest Id: {_manifest_label(app.raw)}")
    ctx.console.always(f"Install state: {app.installation_state}")
    ctx.console.always(f"Run state: {app.run_state}")
    ctx.console.always(f"Health: {app.health}")
    return 0


async def inspect(ctx: Context, args: argparse.Namespace) -> int:
    ctx.config.ensure_logged_in()
    apps = await list_apps_json(ctx)
    payload = {
        "cloudron": ctx.config.session.host,
        "apiEndpoint": ctx.config.session.api_endpoint,
        "appStoreOrigin": ctx.config.appstore.origin,
        "apps": apps,
    }
    ctx.console.always(json.dumps(payload, indent=4 if args.pretty else None))
    return 0


async def open_app(ctx: Context, args: argparse.Namespace) -> int:
    app = await require_app(ctx, args.app)
    domain = app.fqdn
    if not domain:
        host = ctx.config.session.host or ""
        separator = "-" if (ctx.config.session.api_endpoint or "").startswith("my-") else "."
        domain = f"{app.location}{separator}{host}" if app.location else host
    await asyncio.to_thread(webbrowser.open, f"https://{domain}")
    return 0


async def logs(ctx: Context, args: argparse.Namespace) -> int:
    app = await require_app(ctx, args.app)
    if args.tail:
        await follow_app_logs(ctx.cloudron, ctx.console, app.id)
    else:
        await print_app_logs(ctx.cloudron, ctx.console, app.id, lines=args.lines)
    return 0


# ---------------------------------------------------------------------------
# Install
# ---------------------------------------------------------------------------


async def _port_bindings(
    ctx: Context,
    app: App | None,
    manifest: dict[str, t.Any],
    configure: bool,
) -> dict[str, int]:
    tcp_ports: dict[str, t.Any] = manifest.get("tcpPorts") or {}
    current: dict[str, int] = (app.raw.get("portBindings") or {}) if app else {}

    if not configure and not (app and sorted(current) != sorted(tcp_ports)):
        if app:
            return current
        return {env: spec.get("defaultValue") for env, spec in tcp_ports.items()}

    bindings: dict[str, int] = {}
    for env, spec in tcp_ports.items():
        default = current.get(env) or spec.get("defaultValue", "")
        answer = await ctx.prompt.ask(
            f'{spec.get("description", env)} (default {env}={default}. "x" to disable): '
        )
        if answer == "":
            bindings[env] = default
        elif answer.isdigit():
            bindings[env] = int(answer)
        else:
            ctx.console.info(f"Cleared {env}")
    return bindings


def _icon(manifest: dict[str, t.Any], base_dir: Path | None) -> str | None:
    icon = manifest.get("icon")
    if not icon or base_dir is None:
        return None
    path = base_dir / icon.removeprefix("file://")
    if not path.is_file():
        return None
    return base64.b64encode(path.read_bytes()).decode()


async def installer(
    ctx: Context,
    app: App | None,
    manifest: dict[str, t.Any],
    *,
    appstore_id: str | None = None,
    location: str | None = None,
    configure: bool = False,
    wait: bool = False,
    force: bool = False,
    base_dir: Path | None = None,
) -> int:
    if location is None:
        location = app.location if app else await ctx.prompt.ask("Location: ")

    oauth_proxy = bool(app.raw.get("oauthProxy")) if app else False
    if configure:
        oauth_proxy = await ctx.prompt.confirm("Use OAuth Proxy?")

    bindings = await _port_bindings(ctx, app, manifest, configure)
    for env, port in bindings.items():
        ctx.console.info(f"{env}: {port}")

    data: dict[str, t.Any] = {
        "appId": app.id if app else None,
        "appStoreId": appstore_id or "",
        "manifest": manifest,
        "location": location,
        "portBindings": bindings,
        "accessRestriction": app.raw.get("accessRestriction") if app else None,
        "oauthProxy": oauth_proxy,
        "force": force,
    }

    if app is None:
        path, action = "/api/v1/apps/install", "installed"
    elif configure or location != app.location:
        path, action = f"/api/v1/apps/{app.id}/configure", "configured"
    else:
        path, action = f"/api/v1/apps/{app.id}/update", "updated"
        if not app.raw.get("appStoreId"):
            data["force"] = True
    if action != "configured" and not appstore_id:
        icon = _icon(manifest, base_dir)
        if icon:
            data["icon"] = icon

    response = await ctx.cloudron.request("POST", path, json=data)
    match response.status_code:
        case 202:
            pass
        case 404:
            raise CloudronError("Failed to install app. No such app in the appstore.")
        case 409:
            raise CloudronError(f"Failed to install app. The location {location} is already used.")
        case 403:
            raise CloudronError("Failed to install app. Admin privileges are required.")
        case _:
            await ensure_status(response, 202, "Failed to install app")

    app_id = app.id if app else response.json()["id"]
    ctx.console.info(f"App is being {action} with id: {app_id}")

    try:
        await ctx.poller.wait_for_installation(app_id, wait)
    except InstallError as exc:
        if CMD_NOT_EXECUTABLE in str(exc):
            ctx.console.error(f"\n\nApp installation error: {exc}")
            raise InstallError("Is your CMD from the Dockerfile executable?") from exc
        raise

    ctx.console.info(f"\n\nApp is {action}.")
    return 0


async def install_from_store(ctx: Context, app: App | None, args: argparse.Namespace) -> int:
    store_id, _, version = args.appstore_id.partition("@")
    if not version:
        ctx.console.info("No version specified, using latest published version.")

    if app is not None:
        ctx.console.info(
            f"You are installing a published version from the appstore over an existing app at {app.location}."
        )
        if not await ctx.prompt.confirm("Install anyway?"):
            return 0

    url = ctx.config.appstore.url(f"/api/v1/apps/{store_id}")
    if version:
        url = f"{url}/versions/{version}"
    try:
        response = await ctx.http.get(url)
    except httpx.TransportError as exc:
        raise TransportError(f"Failed to reach the app store: {exc}", cause=exc) from exc
    await ensure_status(response, 200, "Failed to get app info from store")

    return await installer(
        ctx,
        app,
        response.json()["manifest"],
        appstore_id=store_id,
        location=args.location,
        wait=args.wait,
    )


async def install(ctx: Context, args: argparse.Namespace) -> int:
    ctx.config.ensure_logged_in()

    app = None if args.new else await get_app(ctx, args.app)
    if args.appstore_id:
        return await install_from_store(ctx, app, args)

    if app is not None:
        ctx.console.info(f"Reusing app {app.id} installed at {app.location}")

    manifest_path, manifest = load_manifest()
    if manifest.get("developmentMode") and not (app and (app.raw.get("manifest") or {}).get("developmentMode")):
        ctx.console.info("Installing in development mode gives your app unlimited CPU and Memory.")
        ctx.console.info("This might affect your other apps on this Cloudron.")
        if not await ctx.prompt.confirm("Install anyway?"):
            return 0

    if manifest.get("dockerImage"):
        ctx.console.info(f"Using app image from CloudronManifest {manifest['dockerImage']}")
    manifest["dockerImage"] = await select_image(
        ctx.config,
        ctx.console,
        ctx.prompt,
        manifest,
        latest=not args.select,
    )

    return await installer(
        ctx,
        app,
        manifest,
        location=args.location,
        configure=args.configure,
        wait=args.wait,
        force=args.force,
        base_dir=manifest_path.parent,
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def uninstall(ctx: Context, args: argparse.Namespace) -> int:
    app = await require_app(ctx, args.app)
    ctx.console.info(f"Will uninstall app at location {app.location}")

    await post_action(ctx, app, "uninstall", "Failed to uninstall app")
    ctx.console.write("\n => Waiting for app to be uninstalled ")
    await ctx.poller.wait_for_uninstall(app.id)

    ctx.console.info(f"\n\nApp {app.id} successfully uninstalled.")
    return 0


async def restart(ctx: Context, args: argparse.Namespace) -> int:
    app = await require_app(ctx, args.app)

    await post_action(ctx, app, "stop", "Failed to stop app")
    ctx.console.write("\n => Waiting for app to be stopped ")
    await ctx.poller.wait_for_run_state(app.id, "stopped")

    await post_action(ctx, app, "start", "Failed to start app")
    ctx.console.write("\n => Waiting for app to be started ")
    await ctx.poller.wait_for_run_state(app.id, "running")

    await ctx.poller.wait_for_health(app.id)
    ctx.console.info("\n\nApp restarted")
    return 0


async def list_backups(ctx: Context, app: App) -> int:
    response = await ctx.cloudron.request("GET", f"/api/v1/apps/{app.id}/backups")
    await ensure_status(response, 200, "Failed to list backups")
    rows = [
        [backup["id"], backup.get("creationTime", ""), backup.get("version", "")]
        for backup in response.json().get("backups", [])
    ]
    ctx.console.always()
    ctx.console.always(format_table(["Id", "Creation Time", "Version"], rows))
    return 0


async def backup(ctx: Context, args: argparse.Namespace) -> int:
    app = await require_app(ctx, args.app)
    if args.list:
        return await list_backups(ctx, app)

    await post_action(ctx, app, "backup", "Failed to backup app")
    # backups move the app through installationState like an update does
    await ctx.poller.wait_for_installation(app.id, True)
    ctx.console.info("\n\nApp is backed up")
    return 0


async def restore(ctx: Context, args: argparse.Namespace) -> int:
    app = await require_app(ctx, args.app)
    body = {"backupId": args.backup} if args.backup else {}
    await post_action(ctx, app, "restore", "Failed to restore app", body)
    await ctx.poller.wait_for_installation(app.id, True)
    ctx.console.info("\n\nApp is restored")
    return 0


async def exec_command(ctx: Context, args: argparse.Namespace) -> int:
    session = ExecSession(ctx.cloudron, ctx.console, ctx.terminal)
    session.check_terminal()
    app = await require_app(ctx, args.app)
    return await session.run(app.id, args.cmd, rows=args.rows, columns=args.columns)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


async def oauth_credentials(ctx: Context, args: argparse.Namespace) -> int:
    """Create OAuth client credentials for developing an app locally."""
    ctx.config.ensure_logged_in()
    redirect_uri = args.redirect_uri or await ctx.prompt.ask("RedirectURI: ")

    response = await ctx.cloudron.request(
        "POST",
        "/api/v1/oauth/clients",
        json={"appId": "localdevelopment", "redirectURI": redirect_uri, "scope": args.scope},
    )
    await ensure_status(response, 201, "Failed to create oauth app credentials")
    client = response.json()

    console = ctx.console
    if args.shell:
        console.always(f'CLOUDRON_CLIENT_ID="{client["id"]}"')
        console.always(f'CLOUDRON_CLIENT_SECRET="{client["clientSecret"]}"')
        console.always(f'CLOUDRON_REDIRECT_URI="{client["redirectURI"]}"')
        return 0

    api_origin = f"https://{ctx.config.session.api_endpoint}"
    console.always()
    console.always("New oauth app credentials")
    console.always(f"ClientId:     {client['id']}")
    console.always(f"ClientSecret: {client['clientSecret']}")
    console.always(f"RedirectURI:  {client['redirectURI']}")
    console.always()
    console.always(f"apiOrigin: {api_origin}")
    console.always(f"authorizationURL: {api_origin}/api/v1/oauth/dialog/authorize")
    console.always(f"tokenURL:         {api_origin}/api/v1/oauth/token")
    return 0
