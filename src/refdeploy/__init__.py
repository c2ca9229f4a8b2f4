"""refdeploy - Installation orchestration for content-addressed app and runtime refs.

The object store and process launcher are injected by the application; this
library provides the transactions and queries on top of them.
"""

from .cancellable import Cancellable
from .config import InstallationConfig
from .directory import InstallationDir
from .exceptions import AlreadyInstalledError
from .exceptions import BusyError
from .exceptions import InstallationError
from .exceptions import MalformedBundleError
from .exceptions import MalformedRefError
from .exceptions import NotFoundError
from .exceptions import NotInstalledError
from .exceptions import OperationCancelledError
from .exceptions import TransferError
from .installation import Installation
from .installation import RemoteListing
from .installation import UpdateFlags
from .lock import InstallationLock
from .progress import ProgressAggregator
from .progress import ProgressSnapshot
from .progress import TransferCounters
from .progress import format_size
from .protocols import LauncherProtocol
from .protocols import ObjectStoreProtocol
from .refs import Ref
from .refs import RefKind
from .refs import build_app_ref
from .refs import build_runtime_ref
from .refs import compose_ref
from .refs import decompose_ref
from .refs import get_default_arch
from .remotes import RemoteCatalog
from .schema import BundleHeader
from .schema import DeployData
from .schema import InstalledRef
from .schema import Remote
from .schema import RemoteRef

__all__ = [
    # Installation
    "Installation",
    "InstallationConfig",
    "InstallationDir",
    "InstallationLock",
    "UpdateFlags",
    "RemoteListing",
    "Cancellable",
    # Refs
    "Ref",
    "RefKind",
    "compose_ref",
    "decompose_ref",
    "build_app_ref",
    "build_runtime_ref",
    "get_default_arch",
    # Values
    "InstalledRef",
    "Remote",
    "RemoteRef",
    "DeployData",
    "BundleHeader",
    "RemoteCatalog",
    # Progress
    "ProgressAggregator",
    "ProgressSnapshot",
    "TransferCounters",
    "format_size",
    # Protocols
    "ObjectStoreProtocol",
    "LauncherProtocol",
    # Exceptions
    "InstallationError",
    "MalformedRefError",
    "MalformedBundleError",
    "AlreadyInstalledError",
    "NotInstalledError",
    "NotFoundError",
    "BusyError",
    "OperationCancelledError",
    "TransferError",
]

__version__ = "0.1.0"
