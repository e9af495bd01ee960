"""
Cloudron command line client.

Installs, updates and inspects apps on a Cloudron, runs commands inside them
over an upgraded HTTP connection, builds app images on the build service and
provisions new Cloudron servers.
"""

from ._types import (
    App,
    Command,
    Console,
    Context,
)
from .client import (
    AppStoreClient,
    AuthenticatedClient,
    CloudronClient,
    detect_api_endpoint,
)
from .config import (
    BuildRecord,
    Config,
    Session,
)
from .errors import (
    AuthenticationError,
    BuildError,
    CloudronError,
    DomainError,
    ExecError,
    InstallError,
    StatusError,
    TransportError,
)
from .exec import (
    ExecRequest,
    ExecSession,
)
from .poller import ProgressPoller
from .streaming import BuildLogRenderer

__version__ = "0.1.0"

__all__ = [
    # Types
    "App",
    "Command",
    "Console",
    "Context",
    # Config
    "BuildRecord",
    "Config",
    "Session",
    # Client
    "AppStoreClient",
    "AuthenticatedClient",
    "CloudronClient",
    "detect_api_endpoint",
    # Core
    "BuildLogRenderer",
    "ExecRequest",
    "ExecSession",
    "ProgressPoller",
    # Errors
    "AuthenticationError",
    "BuildError",
    "CloudronError",
    "DomainError",
    "ExecError",
    "InstallError",
    "StatusError",
    "TransportError",
]
