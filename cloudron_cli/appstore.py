"""App store build service: source packing, build submission and build history."""

from __future__ import annotations

import argparse
import asyncio
import fnmatch
import io
import json
import logging
import re
import tarfile
import typing as t
from datetime import datetime, timezone
from pathlib import Path

from packaging.version import InvalidVersion, Version

from ._types import Console, Context, format_table
from .client import AppStoreClient, Prompt, ensure_status
from .config import BuildRecord, Config
from .errors import BuildError, CloudronError, ManifestNotFoundError, StatusError
from .streaming import follow_build_log, print_build_log

logger = logging.getLogger(__name__)

MANIFEST_NAME = "CloudronManifest.json"
BASE_IMAGE_RE = re.compile(r"^\s*FROM\s+cloudron/base:(\S+)", re.IGNORECASE)

# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


def locate_manifest(start: Path | None = None) -> Path | None:
    """Search ``start`` and its parents for a CloudronManifest.json."""
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / MANIFEST_NAME
        if candidate.is_file():
            return candidate
    return None


def load_manifest(path: Path | None = None) -> tuple[Path, dict[str, t.Any]]:
    path = path or locate_manifest()
    if path is None:
        raise ManifestNotFoundError()
    try:
        with open(path, "r") as f:
            manifest = json.load(f)
    except (OSError, ValueError) as exc:
        raise CloudronError(f"Unable to read manifest {path}: {exc}") from exc
    if not isinstance(manifest, dict) or not manifest.get("id"):
        raise CloudronError(f"Unable to read manifest {path}: missing id")
    return path, manifest


def verify_dockerfile(path: Path) -> None:
    try:
        contents = path.read_text()
    except OSError as exc:
        raise BuildError(f"Unable to read {path}: {exc}") from exc

    for line in contents.splitlines():
        match = BASE_IMAGE_RE.match(line)
        if not match:
            continue
        try:
            Version(match.group(1))
        except InvalidVersion:
            raise BuildError("Invalid base image version") from None
        return
    raise BuildError("Base image must be cloudron/base:0.5.0")


# ---------------------------------------------------------------------------
# Source archive
# ---------------------------------------------------------------------------


def read_dockerignore(source_dir: Path) -> list[str]:
    path = source_dir / ".dockerignore"
    if not path.exists():
        return []
    return [
        line.strip()
        for line in path.read_text().splitlines()
        if line.strip() and not line.startswith("#")
    ]


def is_ignored(relative: str, patterns: t.Sequence[str]) -> bool:
    return any(fnmatch.fnmatchcase(relative, pattern.rstrip("/")) for pattern in patterns)


def pack_source(source_dir: Path) -> bytes:
    """Return a gzipped tarball of ``source_dir`` honouring ``.dockerignore``."""
    patterns = read_dockerignore(source_dir)

    def exclude(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        relative = info.name.removeprefix("./")
        if relative != "." and is_ignored(relative, patterns):
            logger.info("skipping %s", relative)
            return None
        return info

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        archive.add(str(source_dir), arcname=".", filter=exclude)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Builds
# ---------------------------------------------------------------------------


def pretty_date(ts: str) -> str:
    try:
        then = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        return ts
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    seconds = (datetime.now(timezone.utc) - then).total_seconds()
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{int(seconds // 60)} minutes ago"
    if seconds < 86400:
        return f"{int(seconds // 3600)} hours ago"
    return f"{int(seconds // 86400)} days ago"


async def select_build(
    config: Config,
    console: Console,
    prompt: Prompt,
    app_id: str,
    latest: bool,
) -> BuildRecord:
    builds = config.list_builds(app_id)
    if not builds:
        raise BuildError("No build found, use cloudron build to create one")
    if latest or len(builds) == 1:
        return builds[-1]

    console.always()
    console.always("Available builds:")
    for index, build in enumerate(builds):
        console.always(f"[{index}]\t{build.id} - {pretty_date(build.ts)}")
    index = await prompt.choose("build", len(builds), console)
    console.always()
    return builds[index]


async def select_image(
    config: Config,
    console: Console,
    prompt: Prompt,
    manifest: dict[str, t.Any],
    latest: bool,
) -> str:
    if manifest.get("dockerImage"):
        return manifest["dockerImage"]
    build = await select_build(config, console, prompt, manifest["id"], latest)
    if not build.docker_image:
        raise BuildError(f"Build {build.id} has no image, it may have failed")
    return build.docker_image


async def get_build_info(
    client: AppStoreClient,
    build_id: str,
    *,
    interval: float = 1.0,
) -> dict[str, t.Any]:
    """Poll the build until the build service settles on success or error."""
    while True:
        response = await client.request("GET", f"/api/v1/developers/builds/{build_id}")
        await ensure_status(response, 200, "Failed to get build")
        build = response.json()
        if build.get("status") in {"success", "error"}:
            return build
        await asyncio.sleep(interval)


async def submit_build(
    client: AppStoreClient,
    app_id: str,
    archive: bytes,
    *,
    cache: bool = True,
) -> str:
    response = await client.request(
        "POST",
        "/api/v1/developers/builds",
        params={"noCache": "false" if cache else "true"},
        data={"appId": app_id},
        files={"sourceArchive": (f"{app_id}.tar.gz", archive, "application/gzip")},
    )
    if response.status_code == 413:
        raise BuildError("Failed to build app. The app source is too large.")
    try:
        await ensure_status(response, 201, "Failed to build app")
    except StatusError as exc:
        raise BuildError(str(exc)) from exc
    return response.json()["id"]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def build(ctx: Context, args: argparse.Namespace) -> int:
    config, client, console = ctx.config, ctx.appstore, ctx.console
    manifest_path, manifest = load_manifest()
    source_dir = manifest_path.parent
    verify_dockerfile(source_dir / "Dockerfile")

    app_id = manifest["id"]
    console.info(f"Building {app_id}@{manifest.get('version', '?')}")
    console.info()

    archive = await asyncio.to_thread(pack_source, source_dir)
    build_id = await submit_build(client, app_id, archive, cache=not args.no_cache)
    config.add_build(app_id, build_id)

    console.info(f"Build scheduled with id {build_id}")
    console.info("Waiting for build to begin, this may take a bit...")
    await follow_build_log(client, console, build_id, raw=args.raw)

    info = await get_build_info(client, build_id, interval=config.poll_interval)
    if info["status"] == "error":
        raise BuildError("App could not be built due to errors above")
    config.update_build(app_id, build_id, info["dockerImage"])
    console.info("Success")
    return 0


async def build_logs(ctx: Context, args: argparse.Namespace) -> int:
    client, console = ctx.appstore, ctx.console
    _, manifest = load_manifest()
    record = await select_build(ctx.config, console, ctx.prompt, manifest["id"], latest=True)
    console.info(f"Getting logs of {record.id}")
    if args.tail:
        await follow_build_log(client, console, record.id)
    else:
        await print_build_log(client, console, record.id)
    return 0


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------

FILE_PREFIX = "file://"


def _local_path(value: str, base_dir: Path) -> Path:
    path = Path(value.removeprefix(FILE_PREFIX))
    return path if path.is_absolute() else base_dir / path


def parse_changelog(path: Path, version: str) -> str:
    """Return the entries listed under ``[version]`` in a changelog file."""
    try:
        lines = path.read_text().splitlines()
    except OSError as exc:
        raise CloudronError(f"Could not read changelog {path}: {exc}") from exc

    header = f"[{version}]"
    if header not in lines:
        return ""
    entries = []
    for line in lines[lines.index(header) + 1:]:
        if not line:
            continue
        if line.startswith("["):
            break
        entries.append(line)
    return "\n".join(entries)


def resolve_manifest_files(manifest: dict[str, t.Any], base_dir: Path) -> tuple[dict[str, t.Any], Path | None]:
    """Inline ``file://`` description and changelog; locate the icon.

    Relative paths are taken from the directory holding the manifest.
    """
    manifest = dict(manifest)

    icon = None
    if manifest.get("icon"):
        icon = _local_path(manifest["icon"], base_dir)
        if not icon.exists():
            raise CloudronError(f"icon not found at {icon}")

    description = manifest.get("description") or ""
    if description.startswith(FILE_PREFIX):
        path = _local_path(description, base_dir)
        try:
            manifest["description"] = path.read_text()
        except OSError as exc:
            raise CloudronError(f"Could not read description {path}: {exc}") from exc

    changelog = manifest.get("changelog") or ""
    if changelog.startswith(FILE_PREFIX):
        manifest["changelog"] = parse_changelog(_local_path(changelog, base_dir), manifest.get("version", ""))
        if not manifest["changelog"]:
            raise CloudronError("Bad changelog format or missing changelog for this version")

    return manifest, icon


async def add_app(client: AppStoreClient, console: Console, app_id: str) -> None:
    """Register ``app_id`` with the app store; an existing app is fine."""
    response = await client.request("POST", "/api/v1/developers/apps", json={"id": app_id})
    await ensure_status(response, (201, 409), "Failed to create app")
    if response.status_code == 201:
        console.info(f"New application added to the appstore with id {app_id}.")


async def upload_version(
    client: AppStoreClient,
    manifest: dict[str, t.Any],
    build_id: str,
    icon: Path | None,
    *,
    update: bool = False,
) -> None:
    files: dict[str, t.Any] = {"manifest": ("manifest", json.dumps(manifest).encode(), "application/json")}
    if icon is not None:
        files["icon"] = (icon.name, icon.read_bytes())

    path = f"/api/v1/developers/apps/{manifest['id']}/versions"
    if update:
        response = await client.request("PUT", f"{path}/{manifest['version']}", data={"buildId": build_id}, files=files)
    else:
        response = await client.request("POST", path, data={"buildId": build_id}, files=files)
    await ensure_status(response, 204, "Failed to publish version")


async def submit_for_review(client: AppStoreClient, console: Console, manifest: dict[str, t.Any]) -> None:
    response = await client.request(
        "POST",
        f"/api/v1/developers/apps/{manifest['id']}/versions/{manifest['version']}/submit",
        json={},
    )
    await ensure_status(response, 200, "Failed to submit app for review")
    console.info("App submitted for review.")
    console.info("You will receive an email when approved.")


async def publish(ctx: Context, args: argparse.Namespace) -> int:
    config, client, console = ctx.config, ctx.appstore, ctx.console
    manifest_path, manifest = load_manifest()
    if not manifest.get("version"):
        raise CloudronError(f"Unable to read manifest {manifest_path}: missing version")
    manifest, icon = resolve_manifest_files(manifest, manifest_path.parent)
    app_id, version = manifest["id"], manifest["version"]

    await add_app(client, console, app_id)

    build = config.latest_build(app_id)
    if build is None or not build.docker_image:
        raise BuildError("No build found, please run `cloudron build` first and test the new build on your Cloudron.")

    console.info(f"Publishing {app_id}@{version} for testing with build {build.id}.")
    await upload_version(client, manifest, build.id, icon, update=args.force)

    console.info()
    console.info("The App Store view's testing tab in your cloudron will show the app.")
    console.info()
    console.info("App can be tested on other cloudrons using the cli tool:")
    console.always(f"\t\tcloudron install --appstore-id {app_id}@{version}")
    if config.session.is_configured:
        console.info()
        console.info("Direct link to the app on your Cloudron:")
        console.info(f"\t\t{config.session.url(f'/#/appstore/{app_id}?version={version}')}")
        console.info()

    if args.submit:
        await submit_for_review(client, console, manifest)
    return 0


def _app_store_id(app_id: str | None) -> str:
    if app_id:
        return app_id
    _, manifest = load_manifest()
    return manifest["id"]


async def list_published_apps(ctx: Context) -> None:
    response = await ctx.appstore.request("GET", "/api/v1/developers/apps", params={"per_page": 100})
    await ensure_status(response, 200, "Failed to get list of published apps")
    apps = response.json()["apps"]
    if not apps:
        ctx.console.always("No apps published.")
        return

    rows = [
        [
            app["id"],
            (app.get("manifest") or {}).get("title", ""),
            (app.get("manifest") or {}).get("version", ""),
            app.get("publishState", ""),
            app.get("creationDate", ""),
        ]
        for app in apps
    ]
    ctx.console.always()
    ctx.console.always(format_table(["Id", "Title", "Latest Version", "Publish State", "Creation Date"], rows))


async def versions(ctx: Context, args: argparse.Namespace) -> int:
    console = ctx.console
    if args.apps:
        await list_published_apps(ctx)
        return 0

    app_id = _app_store_id(args.app)
    response = await ctx.appstore.request("GET", f"/api/v1/developers/apps/{app_id}/versions")
    await ensure_status(response, 200, "Failed to list versions")
    entries = response.json()["versions"]
    if not entries:
        console.always("No versions found.")
        return 0
    if args.raw:
        console.always(json.dumps(entries, indent=2))
        return 0

    entries = list(reversed(entries))
    latest = entries[0].get("manifest") or {}
    console.always(f"id: {entries[0].get('id', app_id)}")
    for key in ("title", "tagline", "description", "website", "contactEmail"):
        console.always(f"{key}: {latest.get(key, '')}")

    rows = [
        [(entry.get("manifest") or {}).get("version", ""), entry.get("creationDate", ""), entry.get("publishState", "")]
        for entry in entries
    ]
    console.always()
    console.always(format_table(["Version", "Creation Date", "Publish state"], rows))
    return 0


async def unpublish(ctx: Context, args: argparse.Namespace) -> int:
    client, console = ctx.appstore, ctx.console

    if args.app:
        console.info(f"Unpublishing {args.app}")
        if not args.force:
            console.always(f"This will delete app {args.app} from the appstore!")
            if not await ctx.prompt.confirm("Really do this?"):
                return 0
        response = await client.request("DELETE", f"/api/v1/developers/apps/{args.app}")
        await ensure_status(response, 204, "Failed to unpublish app")
        console.info("App unpublished.")
        return 0

    _, manifest = load_manifest()
    app_id, version = manifest["id"], manifest.get("version", "")
    console.info(f"Unpublishing {app_id}@{version}")
    if not args.force:
        console.always(f"This will delete the version {version} of app {app_id} from the appstore!")
        if not await ctx.prompt.confirm("Really do this?"):
            return 0
    response = await client.request("DELETE", f"/api/v1/developers/apps/{app_id}/versions/{version}")
    await ensure_status(response, 204, "Failed to unpublish version")
    console.info("version unpublished.")
    return 0
