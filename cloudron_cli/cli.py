"""``cloudron`` command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import typing as t
from collections.abc import Sequence
from pathlib import Path

import dotenv
import httpx

from . import actions, appstore
from ._types import Console, Context
from .client import (
    AppStoreAuthenticator,
    AppStoreClient,
    CloudronAuthenticator,
    CloudronClient,
    Prompt,
    create_http_client,
)
from .config import Config
from .errors import CloudronError
from .exec import Terminal
from .machine import actions as machine_actions
from .poller import ProgressPoller

Handler = t.Callable[[Context, argparse.Namespace], t.Awaitable[int]]


def _app_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--app",
        help="App id (default: the app built from the CloudronManifest.json in this directory)",
    )


def _provider_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--provider", help="Cloud provider (default: digitalocean)")
    parser.add_argument("--token", help="Provider API token (default: $DIGITALOCEAN_TOKEN)")


def _server_options(parser: argparse.ArgumentParser) -> None:
    _provider_options(parser)
    parser.add_argument("--fqdn", help="Domain of the new Cloudron")
    parser.add_argument("--size", help="Server size, e.g. 1gb")
    parser.add_argument("--region", help="Provider region, e.g. sfo2")
    parser.add_argument("--ssh-key", help="Name of the SSH key registered with the provider")
    parser.add_argument("--image", help="Base OS image")
    parser.add_argument("--versions-url", help="Release catalog URL")
    parser.add_argument(
        "--timeout",
        type=float,
        default=1800,
        help="Seconds to wait for the Cloudron to answer (default: %(default)s)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cloudron", description="Cloudron command line tool")
    parser.add_argument(
        "--config",
        type=Path,
        help="Config file (default: $CLOUDRON_CONFIG or ~/.cloudron.json)",
    )
    parser.add_argument("--verbose", action="store_true", help="Log HTTP requests and polling.")
    parser.add_argument("--quiet", action="store_true", help="Only print command results.")
    commands = parser.add_subparsers(dest="command", required=True, metavar="<command>")

    login = commands.add_parser("login", help="Login to a Cloudron")
    login.add_argument("cloudron", nargs="?", help="Cloudron hostname")
    login.add_argument("-u", "--username", help="Username")
    login.add_argument("-p", "--password", help="Password")
    login.set_defaults(func=actions.login)

    logout = commands.add_parser("logout", help="Forget the stored session")
    logout.set_defaults(func=actions.logout)

    list_ = commands.add_parser("list", help="List installed apps")
    list_.set_defaults(func=actions.list_apps)

    info = commands.add_parser("info", help="Show app details")
    _app_option(info)
    info.set_defaults(func=actions.info)

    inspect = commands.add_parser("inspect", help="Dump the Cloudron and its apps as JSON")
    inspect.add_argument("--pretty", action="store_true", help="Indent the JSON output")
    inspect.set_defaults(func=actions.inspect)

    open_ = commands.add_parser("open", help="Open the app in the browser")
    _app_option(open_)
    open_.set_defaults(func=actions.open_app)

    install = commands.add_parser("install", help="Install or update the app")
    _app_option(install)
    install.add_argument("--new", action="store_true", help="Install a new instance instead of updating")
    install.add_argument("--location", help="Subdomain to install the app at")
    install.add_argument("--wait", action="store_true", help="Wait for the health check to succeed")
    install.add_argument("--select", action="store_true", help="Choose the build to install")
    install.add_argument("--configure", action="store_true", help="Prompt for all settings")
    install.add_argument("--force", action="store_true", help="Install over an errored app")
    install.add_argument("--appstore-id", help="Install <id>[@<version>] from the app store")
    install.set_defaults(func=actions.install)

    uninstall = commands.add_parser("uninstall", help="Uninstall the app")
    _app_option(uninstall)
    uninstall.set_defaults(func=actions.uninstall)

    restart = commands.add_parser("restart", help="Stop and start the app")
    _app_option(restart)
    restart.set_defaults(func=actions.restart)

    backup = commands.add_parser("backup", help="Back up the app")
    _app_option(backup)
    backup.add_argument("--list", action="store_true", help="List the app's backups instead")
    backup.set_defaults(func=actions.backup)

    restore = commands.add_parser("restore", help="Restore the app from a backup")
    _app_option(restore)
    restore.add_argument("--backup", help="Backup id (default: the latest backup)")
    restore.set_defaults(func=actions.restore)

    logs = commands.add_parser("logs", help="Show app logs")
    _app_option(logs)
    logs.add_argument("-f", "--tail", action="store_true", help="Follow the logs")
    logs.add_argument(
        "-l",
        "--lines",
        type=int,
        default=500,
        help="Number of lines to show (default: %(default)s)",
    )
    logs.set_defaults(func=actions.logs)

    exec_ = commands.add_parser("exec", help="Run a command in the app, a shell by default")
    _app_option(exec_)
    exec_.add_argument("--rows", type=int, help="Terminal rows (default: the local terminal's)")
    exec_.add_argument("--columns", type=int, help="Terminal columns (default: the local terminal's)")
    exec_.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to run, after --")
    exec_.set_defaults(func=actions.exec_command)

    oauth = commands.add_parser("oauth", help="Create OAuth app credentials for local development")
    oauth.add_argument("--redirect-uri", help="Redirect URI (prompted for when missing)")
    oauth.add_argument("--scope", default="profile,roleUser", help="Comma separated scopes (default: %(default)s)")
    oauth.add_argument("--shell", action="store_true", help="Print the credentials as shell variables")
    oauth.set_defaults(func=actions.oauth_credentials)

    build = commands.add_parser("build", help="Build the app image on the build service")
    build.add_argument("--no-cache", action="store_true", help="Do not use the docker build cache")
    build.add_argument("--raw", action="store_true", help="Print raw build events")
    build.set_defaults(func=appstore.build)

    buildlogs = commands.add_parser("buildlogs", help="Show the logs of the latest build")
    buildlogs.add_argument("-f", "--tail", action="store_true", help="Follow the logs")
    buildlogs.set_defaults(func=appstore.build_logs)

    publish = commands.add_parser("publish", help="Publish the latest build to the app store for testing")
    publish.add_argument("-f", "--force", action="store_true", help="Update the existing version")
    publish.add_argument("-s", "--submit", action="store_true", help="Submit the version for review")
    publish.set_defaults(func=appstore.publish)

    versions = commands.add_parser("versions", help="List published versions")
    _app_option(versions)
    versions.add_argument("--apps", action="store_true", help="List all published apps")
    versions.add_argument("--raw", action="store_true", help="Dump versions as JSON")
    versions.set_defaults(func=appstore.versions)

    unpublish = commands.add_parser("unpublish", help="Remove the app or this version from the app store")
    unpublish.add_argument("-a", "--app", help="Unpublish the whole app with this id")
    unpublish.add_argument("-f", "--force", action="store_true", help="Do not ask for confirmation")
    unpublish.set_defaults(func=appstore.unpublish)

    machine = commands.add_parser("machine", help="Provision Cloudron servers")
    machine_commands = machine.add_subparsers(dest="machine_command", required=True, metavar="<command>")

    create = machine_commands.add_parser("create", help="Create a new Cloudron server")
    create.add_argument("--release", default="latest", help="Cloudron release (default: %(default)s)")
    _server_options(create)
    create.set_defaults(func=machine_actions.create)

    restore_machine = machine_commands.add_parser("restore", help="Create a Cloudron server from a backup")
    restore_machine.add_argument("--backup", help="Backup id, see `cloudron machine backups`")
    restore_machine.add_argument("--backup-key", help="Encryption key of the backup")
    restore_machine.add_argument("--backup-url", help="Download URL of the backup (default: from the listing)")
    _server_options(restore_machine)
    restore_machine.set_defaults(func=machine_actions.restore)

    backups = machine_commands.add_parser("backups", help="List backups of the logged-in Cloudron")
    backups.set_defaults(func=machine_actions.list_backups)

    list_machines = machine_commands.add_parser("list", help="List servers of the provider")
    _provider_options(list_machines)
    list_machines.set_defaults(func=machine_actions.list_machines)

    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    args = build_parser().parse_args(argv)
    cmd = getattr(args, "cmd", None)
    if cmd and cmd[0] == "--":
        args.cmd = cmd[1:]
    return args


def create_context(
    config: Config,
    console: Console,
    http: httpx.AsyncClient,
    *,
    prompt: Prompt | None = None,
    terminal: Terminal | None = None,
) -> Context:
    prompt = prompt or Prompt()
    cloudron = CloudronClient(config, http, CloudronAuthenticator(config, console, prompt))
    store = AppStoreClient(config, http, AppStoreAuthenticator(config, console, prompt))
    return Context(
        config=config,
        console=console,
        http=http,
        cloudron=cloudron,
        appstore=store,
        prompt=prompt,
        poller=ProgressPoller(cloudron, console, interval=config.poll_interval),
        terminal=terminal,
    )


async def run(args: argparse.Namespace, console: Console | None = None) -> int:
    console = console or Console()
    console.quiet = args.quiet
    handler: Handler = args.func
    try:
        config = Config.load(args.config)
        async with create_http_client(config) as http:
            return await handler(create_context(config, console, http), args)
    except CloudronError as exc:
        console.error(f"error: {exc}")
        return 1


def main(argv: Sequence[str] | None = None) -> None:
    dotenv.load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(message)s",
    )
    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        print()
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
