"""Protocols for the object store and the process launcher.

The library does not know HOW data is transferred or checked out, or HOW an
app is sandboxed. Applications inject implementations of these interfaces.
"""

from pathlib import Path
from typing import Protocol

from .cancellable import Cancellable
from .progress import TransferSink
from .schema import BundleHeader
from .schema import Remote


class ObjectStoreProtocol(Protocol):
    """Content-addressed object store and transfer engine.

    All methods are coroutines; the installation drives them on a private
    event loop per operation. Failures should be raised as TransferError (or
    OSError for local disk problems) and are propagated uninterpreted.
    """

    def clone(self) -> "ObjectStoreProtocol":
        """Open a fresh handle on the same underlying store.

        Each install, update or uninstall runs against its own handle; the
        transfer engine is not safe to share between call sites.
        """
        ...

    async def pull(
        self,
        remote: Remote,
        ref: str,
        *,
        gpg_required: bool,
        progress: TransferSink | None,
        cancellable: Cancellable | None,
    ) -> str:
        """Fetch a ref's data into local storage.

        Returns:
            Commit checksum that was pulled
        """
        ...

    async def checkout(
        self,
        commit: str,
        target_dir: Path,
        *,
        subpaths: list[str],
        cancellable: Cancellable | None,
    ) -> int:
        """Check out a pulled commit into target_dir (created if needed).

        Args:
            commit: Commit checksum previously pulled
            target_dir: Directory to materialize files into
            subpaths: Partial checkout filter (empty list means everything)

        Returns:
            Installed size in bytes
        """
        ...

    async def list_remote_refs(self, remote: Remote, *, cancellable: Cancellable | None) -> dict[str, str]:
        """Return the remote's catalog as {full_ref: checksum}."""
        ...

    async def load_bundle(self, path: Path) -> BundleHeader:
        """Read identity, origin and signing material from a bundle file.

        Raises:
            MalformedBundleError: If the bundle cannot be read
        """
        ...

    async def pull_from_bundle(
        self,
        path: Path,
        remote_name: str,
        ref: str,
        *,
        gpg_required: bool,
        cancellable: Cancellable | None,
    ) -> str:
        """Import a bundle's data under remote_name.

        Returns:
            Commit checksum that was imported
        """
        ...

    async def fetch_ref_cache(
        self,
        remote: Remote,
        ref: str,
        *,
        cancellable: Cancellable | None,
    ) -> tuple[int, int, str]:
        """Return (download_size, installed_size, metadata) cached for a remote ref."""
        ...

    async def update_appstream(
        self,
        remote: Remote,
        arch: str,
        *,
        progress: TransferSink | None,
        cancellable: Cancellable | None,
    ) -> bool:
        """Refresh appstream data for remote/arch. Returns True if it changed."""
        ...

    async def prune(self, keep_commits: set[str], *, cancellable: Cancellable | None) -> None:
        """Delete objects not reachable from any commit in keep_commits."""
        ...


class LauncherProtocol(Protocol):
    """Sandboxed process launcher."""

    def launch(self, ref: str, deploy_dir: Path, *, background: bool = True) -> None:
        """Start the app deployed at deploy_dir."""
        ...
