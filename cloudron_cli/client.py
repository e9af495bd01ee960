"""HTTP access to the Cloudron and the app store.

Every API call goes through :class:`AuthenticatedClient.send`, which takes a
request *factory* rather than a request: when the server rejects the token the
client re-authenticates interactively and calls the factory once more, so the
retried request gets a fresh body and the new token.
"""

from __future__ import annotations

import asyncio
import getpass
import logging
import typing as t
from abc import ABC, abstractmethod
from collections.abc import Iterable

import httpx

from ._types import Console
from .config import Config
from .errors import AuthenticationError, CloudronNotFoundError, StatusError, TransportError

logger = logging.getLogger(__name__)

RequestFactory = t.Callable[[], httpx.Request]

LOGIN_PATH = "/api/v1/developer/login"
STATUS_PATH = "/api/v1/cloudron/status"

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
STREAM_TIMEOUT = httpx.Timeout(None, connect=10.0)


def create_http_client(config: Config) -> httpx.AsyncClient:
    return httpx.AsyncClient(verify=config.verify_tls, timeout=DEFAULT_TIMEOUT)


def show_developer_mode_notice(console: Console, api_endpoint: str | None) -> None:
    console.error(f"CLI mode is disabled. Enable it at https://{api_endpoint}/#/settings.")


def _error_body(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(payload, dict) and isinstance(payload.get("message"), str):
        return payload["message"]
    return response.text.strip()


async def ensure_status(
    response: httpx.Response,
    accepted: int | Iterable[int],
    message: str,
) -> httpx.Response:
    """Return ``response`` if its status is accepted, else raise StatusError."""
    codes = {accepted} if isinstance(accepted, int) else set(accepted)
    if response.status_code in codes:
        return response
    await response.aread()
    body = _error_body(response)
    await response.aclose()
    raise StatusError(message, status_code=response.status_code, body=body)


# ---------------------------------------------------------------------------
# Interactive prompts
# ---------------------------------------------------------------------------


class Prompt:
    """Blocking terminal questions, run off the event loop."""

    async def ask(self, question: str, *, secret: bool = False) -> str:
        func = getpass.getpass if secret else input
        answer = await asyncio.to_thread(func, question)
        return answer.strip()

    async def confirm(self, question: str) -> bool:
        answer = await self.ask(f"{question} [y/N]: ")
        return answer.upper() == "Y"

    async def choose(self, label: str, count: int, console: Console) -> int:
        """Ask for an index in ``[0, count)`` until a valid one is given."""
        while True:
            answer = await self.ask(f"Choose {label} [0-{count - 1}]: ")
            try:
                index = int(answer)
            except ValueError:
                index = -1
            if 0 <= index < count:
                return index
            console.always("Invalid selection")


# ---------------------------------------------------------------------------
# Authenticators
# ---------------------------------------------------------------------------


class Authenticator(ABC):
    """Obtains a new token and persists it in the config."""

    @abstractmethod
    async def authenticate(self, http: httpx.AsyncClient) -> None:
        ...


class CloudronAuthenticator(Authenticator):
    def __init__(
        self,
        config: Config,
        console: Console,
        prompt: Prompt | None = None,
        *,
        username: str | None = None,
        password: str | None = None,
    ) -> None:
        self._config = config
        self._console = console
        self._prompt = prompt or Prompt()
        self._username = username
        self._password = password

    async def authenticate(self, http: httpx.AsyncClient) -> None:
        username, password = self._username, self._password
        # explicit credentials are only tried once
        self._username = self._password = None

        while True:
            if not username and not password:
                self._console.info()
                self._console.info(f"Enter credentials for {self._config.session.host}:")
            username = username or await self._prompt.ask("Username: ")
            password = password or await self._prompt.ask("Password: ", secret=True)

            self._config.set_token(None)
            try:
                response = await http.post(
                    self._config.session.url(LOGIN_PATH),
                    json={"username": username, "password": password},
                )
            except httpx.TransportError as exc:
                raise TransportError(f"Login request failed: {exc}", cause=exc) from exc

            if response.status_code == 200:
                self._config.set_token(response.json()["token"])
                self._console.info("Login successful.")
                return

            if response.status_code == 412:
                show_developer_mode_notice(self._console, self._config.session.api_endpoint)
            else:
                self._console.error("Login failed.")
            username = password = None


class AppStoreAuthenticator(Authenticator):
    def __init__(
        self,
        config: Config,
        console: Console,
        prompt: Prompt | None = None,
        *,
        email: str | None = None,
    ) -> None:
        self._config = config
        self._console = console
        self._prompt = prompt or Prompt()
        self._email = email

    async def authenticate(self, http: httpx.AsyncClient) -> None:
        email = self._email
        while True:
            self._console.info()
            self._console.info("Appstore login:")
            email = email or await self._prompt.ask("Email: ")
            password = await self._prompt.ask("Password: ", secret=True)

            self._config.set_appstore_token(None)
            try:
                response = await http.get(
                    self._config.appstore.url("/api/v1/login"),
                    auth=(email, password),
                )
            except httpx.TransportError as exc:
                raise TransportError(f"Appstore login failed: {exc}", cause=exc) from exc

            if response.status_code == 200:
                self._config.set_appstore_token(response.json()["accessToken"])
                self._console.info("Login successful.")
                return

            self._console.error("Login failed.")
            email = None


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class AuthenticatedClient:
    """Sends requests and transparently re-authenticates once on 401."""

    def __init__(
        self,
        config: Config,
        http: httpx.AsyncClient,
        authenticator: Authenticator,
    ) -> None:
        self._config = config
        self._http = http
        self._authenticator = authenticator

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    @property
    def config(self) -> Config:
        return self._config

    async def _send_once(self, build_request: RequestFactory, stream: bool) -> httpx.Response:
        request = build_request()
        logger.info("%s %s", request.method, request.url.copy_remove_param("access_token"))
        try:
            return await self._http.send(request, stream=stream)
        except httpx.TransportError as exc:
            raise TransportError(f"Request to {request.url.host} failed: {exc}", cause=exc) from exc

    async def send(
        self,
        build_request: RequestFactory,
        *,
        stream: bool = False,
    ) -> httpx.Response:
        response = await self._send_once(build_request, stream)
        if response.status_code != 401:
            return response

        await response.aclose()
        logger.info("token rejected, re-authenticating")
        await self._authenticator.authenticate(self._http)

        response = await self._send_once(build_request, stream)
        if response.status_code == 401:
            await response.aclose()
            raise AuthenticationError("Authentication failed", status_code=401)
        return response

    def _build(
        self,
        method: str,
        url: str,
        params: dict[str, t.Any],
        **kwargs: t.Any,
    ) -> httpx.Request:
        return self._http.build_request(method, url, params=params, **kwargs)


class CloudronClient(AuthenticatedClient):
    """Client for ``https://<api endpoint>/api/v1/...`` with ``access_token``."""

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, t.Any] | None = None,
        json: t.Any = None,
        headers: dict[str, str] | None = None,
        stream: bool = False,
    ) -> httpx.Response:
        def factory() -> httpx.Request:
            query = dict(params or {})
            query["access_token"] = self._config.session.token
            kwargs: dict[str, t.Any] = {}
            if headers is not None:
                kwargs["headers"] = headers
            if json is not None:
                kwargs["json"] = json
            if stream:
                kwargs["timeout"] = STREAM_TIMEOUT
            return self._build(method, self._config.session.url(path), query, **kwargs)

        return await self.send(factory, stream=stream)


class AppStoreClient(AuthenticatedClient):
    """Client for the app store build service, authenticated by ``accessToken``."""

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, t.Any] | None = None,
        json: t.Any = None,
        data: dict[str, t.Any] | None = None,
        files: dict[str, t.Any] | None = None,
        stream: bool = False,
    ) -> httpx.Response:
        def factory() -> httpx.Request:
            query = dict(params or {})
            query["accessToken"] = self._config.appstore.token
            kwargs: dict[str, t.Any] = {}
            if json is not None:
                kwargs["json"] = json
            if data is not None:
                kwargs["data"] = data
            if files is not None:
                kwargs["files"] = files
            if stream:
                kwargs["timeout"] = STREAM_TIMEOUT
            return self._build(method, self._config.appstore.url(path), query, **kwargs)

        return await self.send(factory, stream=stream)


# ---------------------------------------------------------------------------
# Endpoint detection
# ---------------------------------------------------------------------------


def normalize_host(host: str) -> str:
    for prefix in ("https://", "my-", "my."):
        if host.startswith(prefix):
            host = host[len(prefix):]
    return host.split("/", 1)[0]


async def detect_api_endpoint(http: httpx.AsyncClient, host: str) -> tuple[str, str]:
    """Return ``(host, api_endpoint)`` for the first answering status route."""
    host = normalize_host(host)
    for api_endpoint in (f"my-{host}", f"my.{host}"):
        try:
            response = await http.get(f"https://{api_endpoint}{STATUS_PATH}", timeout=5.0)
        except httpx.TransportError as exc:
            logger.info("no cloudron at %s: %s", api_endpoint, exc)
            continue
        if response.status_code == 200 and response.json().get("version"):
            return host, api_endpoint
    raise CloudronNotFoundError(host)
