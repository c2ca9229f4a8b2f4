"""Installation - Toplevel API for installing, updating and querying refs.

An Installation wraps one installation location (system-wide, per-user or an
arbitrary path). Read queries work on the caller's directory instance.
Mutations work on a private clone of it and drive the object store on a
private event loop, so they never race with concurrent readers.

Example:
    >>> installation = Installation.new_user(store=MyObjectStore())
    >>> ref = installation.install("example-remote", RefKind.APP, "org.example.Foo")
    >>> print(ref.format_ref(), ref.commit)
"""

import asyncio
import logging
import threading
from collections.abc import Coroutine
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Flag
from pathlib import Path
from typing import Any
from typing import TypeVar

import watchfiles

from .cancellable import Cancellable
from .cancellable import check_cancelled
from .config import InstallationConfig
from .directory import InstallationDir
from .exceptions import AlreadyInstalledError
from .exceptions import InstallationError
from .exceptions import NotFoundError
from .exceptions import NotInstalledError
from .exceptions import OperationCancelledError
from .progress import ProgressAggregator
from .progress import ProgressCallback
from .progress import TransferCounters
from .protocols import LauncherProtocol
from .protocols import ObjectStoreProtocol
from .refs import RefKind
from .refs import compose_ref
from .refs import decompose_ref
from .refs import get_default_arch
from .schema import InstalledRef
from .schema import Remote
from .schema import RemoteRef

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UpdateFlags(Flag):
    """Flags controlling update()."""

    NONE = 0
    NO_DEPLOY = 1
    NO_PULL = 2


@dataclass
class RemoteListing:
    """Outcome of listing one remote's catalog: refs on success, error otherwise."""

    remote: Remote
    refs: list[RemoteRef] | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _run_in_runner(coro: Coroutine[Any, Any, T]) -> T:
    with asyncio.Runner() as runner:
        return runner.run(coro)


def _run_private(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion on a private event loop.

    If the calling thread already runs a loop, the private loop lives on a
    one-shot worker thread instead.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return _run_in_runner(coro)

    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="refdeploy") as pool:
        return pool.submit(_run_in_runner, coro).result()


def _not_installed(name: str, branch: str | None, ref: str) -> NotInstalledError:
    return NotInstalledError(f"{name} branch {branch or 'master'} is not installed", context={"ref": ref})


class Installation:
    """Installation location for apps and runtimes."""

    def __init__(self, directory: InstallationDir, launcher: LauncherProtocol | None = None):
        """Initialize with a directory; prefer the new_* constructors.

        Args:
            directory: Deploy tree and object store of this location
            launcher: Optional launcher used by launch()
        """
        directory.ensure_repo()
        self.dir = directory
        self.launcher = launcher

    @classmethod
    def new_system(
        cls,
        store: ObjectStoreProtocol,
        config: InstallationConfig | None = None,
        launcher: LauncherProtocol | None = None,
    ) -> "Installation":
        """Create an Installation for the system-wide location."""
        config = config or InstallationConfig()
        return cls(InstallationDir(config.system_path, False, store, config), launcher)

    @classmethod
    def new_user(
        cls,
        store: ObjectStoreProtocol,
        config: InstallationConfig | None = None,
        launcher: LauncherProtocol | None = None,
    ) -> "Installation":
        """Create an Installation for the per-user location."""
        config = config or InstallationConfig()
        return cls(InstallationDir(config.user_path, True, store, config), launcher)

    @classmethod
    def new_for_path(
        cls,
        path: Path,
        user: bool,
        store: ObjectStoreProtocol,
        config: InstallationConfig | None = None,
        launcher: LauncherProtocol | None = None,
    ) -> "Installation":
        """Create an Installation for an arbitrary path."""
        return cls(InstallationDir(path, user, store, config), launcher)

    @property
    def path(self) -> Path:
        return self.dir.path

    @property
    def is_user(self) -> bool:
        return self.dir.user

    @property
    def changed_path(self) -> Path:
        """Marker file touched whenever install, update or uninstall completes."""
        return self.dir.changed_path

    # ------------------------------------------------------------------
    # Installed refs
    # ------------------------------------------------------------------

    def describe(self, full_ref: str) -> InstalledRef:
        """Build a fresh InstalledRef snapshot for an installed ref.

        Args:
            full_ref: Fully composed ref string

        Returns:
            InstalledRef describing the active deployment

        Raises:
            NotFoundError: If the ref has no deploy data
        """
        parsed = decompose_ref(full_ref)

        deploy_dir = self.dir.get_if_deployed(full_ref)
        if deploy_dir is None:
            raise NotFoundError(f"Ref {full_ref} not installed", context={"ref": full_ref})
        data = self.dir.load_deploy_data(deploy_dir)

        is_current = False
        if parsed.kind == RefKind.APP:
            is_current = self.dir.current_ref(parsed.name) == full_ref

        try:
            latest_commit = self.dir.read_latest(data.origin, full_ref)
        except OSError as e:
            logger.debug(f"Could not read latest commit of {full_ref} from {data.origin}: {e}")
            latest_commit = None

        return InstalledRef(
            kind=parsed.kind,
            name=parsed.name,
            arch=parsed.arch,
            branch=parsed.branch,
            commit=data.commit,
            latest_commit=latest_commit,
            origin=data.origin,
            subpaths=frozenset(data.subpaths),
            deploy_dir=deploy_dir,
            installed_size=data.installed_size,
            is_current=is_current,
        )

    def get_installed_ref(
        self,
        kind: RefKind,
        name: str,
        arch: str | None = None,
        branch: str | None = None,
    ) -> InstalledRef:
        """Return information about an installed ref.

        Raises:
            NotFoundError: If the ref is not installed
        """
        ref = compose_ref(kind == RefKind.APP, name, branch, arch)
        if self.dir.get_if_deployed(ref) is None:
            raise NotFoundError(f"Ref {ref} not installed", context={"ref": ref})
        return self.describe(ref)

    def get_current_installed_app(self, name: str) -> InstalledRef:
        """Return the app ref that is current for name.

        Raises:
            NotFoundError: If name has no current, deployed ref
        """
        current = self.dir.current_ref(name)
        if current is None or self.dir.get_if_deployed(current) is None:
            raise NotFoundError(f"App {name} not installed", context={"name": name})
        return self.describe(current)

    def list_installed_refs(self) -> list[InstalledRef]:
        """List all installed refs, apps first."""
        refs = []
        for kind in (RefKind.APP, RefKind.RUNTIME):
            refs.extend(self.list_installed_refs_by_kind(kind))
        return refs

    def list_installed_refs_by_kind(self, kind: RefKind) -> list[InstalledRef]:
        return [self.describe(ref) for ref in self.dir.list_refs(kind)]

    def list_installed_refs_for_update(self, cancellable: Cancellable | None = None) -> list[InstalledRef]:
        """List installed refs whose remote advertises a commit not known locally.

        A remote whose catalog cannot be listed is logged and skipped; the
        result is computed from the remaining remotes. The comparison is made
        against each ref's cached latest commit.

        Returns:
            Installed refs with a pending update
        """
        advertised: dict[tuple[str, str], str] = {}

        for listing in self._list_all_remote_refs(cancellable):
            if not listing.ok:
                logger.debug(f"Update: Failed to read remote {listing.remote.name}: {listing.error}")
                continue
            for remote_ref in listing.refs or []:
                advertised[(listing.remote.name, remote_ref.format_ref())] = remote_ref.commit

        updates = []
        for installed in self.list_installed_refs():
            remote_commit = advertised.get((installed.origin, installed.format_ref()))
            if remote_commit is not None and remote_commit != installed.latest_commit:
                updates.append(installed)

        logger.debug(f"Found {len(updates)} refs with updates")
        return updates

    def _list_all_remote_refs(self, cancellable: Cancellable | None) -> list[RemoteListing]:
        listings = []
        for remote in self.list_remotes():
            check_cancelled(cancellable)
            try:
                refs = self.list_remote_refs(remote.name, cancellable)
            except OperationCancelledError:
                raise
            except Exception as e:
                listings.append(RemoteListing(remote=remote, error=e))
            else:
                listings.append(RemoteListing(remote=remote, refs=refs))
        return listings

    def load_app_overrides(self, app_id: str) -> str:
        """Return the override metadata of an app.

        Raises:
            NotFoundError: If the app has no overrides
        """
        return self.dir.load_override(app_id)

    # ------------------------------------------------------------------
    # Remotes
    # ------------------------------------------------------------------

    def list_remotes(self) -> list[Remote]:
        """List remotes by descending priority (insertion order on ties)."""
        return self.dir.remotes.list_remotes()

    def get_remote_by_name(self, name: str) -> Remote:
        """Look up a remote.

        Raises:
            NotFoundError: If no remote has this name
        """
        return self.dir.remotes.require_remote(name)

    def add_remote(self, name: str, url: str, **options: Any) -> Remote:
        """Add or replace a remote; options as in RemoteCatalog.add_remote."""
        remote = self.dir.remotes.add_remote(name, url, **options)
        logger.info(f"Added remote {name}")
        return remote

    def delete_remote(self, name: str) -> None:
        self.dir.remotes.delete_remote(name)
        logger.info(f"Deleted remote {name}")

    def list_remote_refs(self, remote_name: str, cancellable: Cancellable | None = None) -> list[RemoteRef]:
        """List the refs advertised by a remote.

        Raises:
            NotFoundError: If the remote does not exist
        """
        remote = self.get_remote_by_name(remote_name)
        catalog = _run_private(self.dir.store.list_remote_refs(remote, cancellable=cancellable))

        refs = []
        for full_ref, checksum in catalog.items():
            remote_ref = RemoteRef.from_catalog(full_ref, checksum, remote_name)
            if remote_ref is not None:
                refs.append(remote_ref)
        return refs

    def fetch_remote_ref(
        self,
        remote_name: str,
        kind: RefKind,
        name: str,
        arch: str | None = None,
        branch: str | None = None,
        cancellable: Cancellable | None = None,
    ) -> RemoteRef:
        """Look up a single ref in a remote's catalog.

        Raises:
            NotFoundError: If the remote does not advertise the ref
        """
        remote = self.get_remote_by_name(remote_name)
        ref = compose_ref(kind == RefKind.APP, name, branch, arch)
        catalog = _run_private(self.dir.store.list_remote_refs(remote, cancellable=cancellable))

        checksum = catalog.get(ref)
        if checksum is None:
            raise NotFoundError(
                f"Reference {ref} doesn't exist in remote", context={"ref": ref, "remote": remote_name}
            )
        return RemoteRef.from_catalog(ref, checksum, remote_name)

    def fetch_remote_size(
        self,
        remote_name: str,
        ref: str,
        cancellable: Cancellable | None = None,
    ) -> tuple[int, int]:
        """Return (download_size, installed_size) for a ref in a remote."""
        remote = self.get_remote_by_name(remote_name)
        download_size, installed_size, _ = _run_private(
            self.dir.store.fetch_ref_cache(remote, ref, cancellable=cancellable)
        )
        return download_size, installed_size

    def fetch_remote_metadata(self, remote_name: str, ref: str, cancellable: Cancellable | None = None) -> bytes:
        """Return the metadata of a ref in a remote."""
        remote = self.get_remote_by_name(remote_name)
        _, _, metadata = _run_private(self.dir.store.fetch_ref_cache(remote, ref, cancellable=cancellable))
        return metadata.encode()

    def update_appstream(
        self,
        remote_name: str,
        arch: str | None = None,
        cancellable: Cancellable | None = None,
    ) -> bool:
        """Refresh appstream data of a remote.

        Returns:
            True if the appstream data changed
        """
        remote = self.get_remote_by_name(remote_name)
        dir_clone = self.dir.clone()
        return _run_private(
            dir_clone.store.update_appstream(
                remote, arch or get_default_arch(), progress=None, cancellable=cancellable
            )
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def install(
        self,
        remote_name: str,
        kind: RefKind,
        name: str,
        arch: str | None = None,
        branch: str | None = None,
        progress: ProgressCallback | None = None,
        cancellable: Cancellable | None = None,
    ) -> InstalledRef:
        """Install a ref from a remote.

        Process:
        1. Compose ref, fail if already deployed
        2. Clone the directory and run on a private event loop
        3. Pull from the remote and deploy
        4. Describe the installed ref

        Raises:
            AlreadyInstalledError: If the ref is already installed
            NotFoundError: If the remote does not exist
        """
        ref = compose_ref(kind == RefKind.APP, name, branch, arch)

        if self.dir.get_deploy_dir(ref).exists():
            raise AlreadyInstalledError(
                f"{name} branch {branch or 'master'} already installed", context={"ref": ref}
            )

        # Pull and deploy are not safe to share, so work on a copy
        dir_clone = self.dir.clone()
        sink = ProgressAggregator(progress).update if progress else None

        logger.info(f"Installing {ref} from {remote_name}")
        _run_private(dir_clone.install(ref, remote_name, progress=sink, cancellable=cancellable))

        result = self.describe(ref)
        logger.info(f"Successfully installed {ref} at {result.commit}")
        return result

    def install_bundle(
        self,
        path: Path,
        progress: ProgressCallback | None = None,
        cancellable: Cancellable | None = None,
    ) -> InstalledRef:
        """Install a ref from a bundle file.

        Creates an origin remote for later updates. If importing or deploying
        the bundle fails, that remote is deleted again before the error
        propagates.

        Raises:
            MalformedBundleError: If the bundle cannot be read
            AlreadyInstalledError: If the bundle's ref is already installed
        """
        header = _run_private(self.dir.store.load_bundle(path))
        parsed = decompose_ref(header.ref)
        ref = parsed.format_ref()

        if self.dir.get_deploy_dir(ref).exists():
            raise AlreadyInstalledError(
                f"{parsed.name} branch {parsed.branch} already installed", context={"ref": ref}
            )

        check_cancelled(cancellable)

        # Add a remote for later updates
        remote_name = self.dir.remotes.create_origin_remote(
            header.origin or "", parsed.name, path.name, header.gpg_data
        )

        result = None
        try:
            dir_clone = self.dir.clone()
            if progress:
                ProgressAggregator(progress).update(TransferCounters(status=f"Importing {path.name}"))
            _run_private(self._import_bundle(dir_clone, path, remote_name, ref, header.gpg_data, cancellable))
            result = self.describe(ref)
        finally:
            if result is None:
                logger.warning(f"Bundle install of {ref} failed, removing remote {remote_name}")
                try:
                    self.dir.remotes.delete_remote(remote_name)
                except (InstallationError, OSError) as e:
                    logger.error(f"Failed to remove remote {remote_name}: {e}")

        logger.info(f"Successfully installed {ref} from bundle {path.name}")
        return result

    async def _import_bundle(
        self,
        dir_clone: InstallationDir,
        path: Path,
        remote_name: str,
        ref: str,
        gpg_data: bytes | None,
        cancellable: Cancellable | None,
    ) -> None:
        check_cancelled(cancellable)
        commit = await dir_clone.store.pull_from_bundle(
            path, remote_name, ref, gpg_required=gpg_data is not None, cancellable=cancellable
        )
        check_cancelled(cancellable)
        dir_clone.write_latest(remote_name, ref, commit)
        await dir_clone.deploy_install(ref, remote_name, None, cancellable)

    def update(
        self,
        flags: UpdateFlags,
        kind: RefKind,
        name: str,
        arch: str | None = None,
        branch: str | None = None,
        progress: ProgressCallback | None = None,
        cancellable: Cancellable | None = None,
    ) -> InstalledRef:
        """Update an installed ref from its origin.

        Args:
            flags: NO_PULL reuses fetched data, NO_DEPLOY fetches without activating

        Raises:
            NotInstalledError: If the ref is not installed
        """
        ref = compose_ref(kind == RefKind.APP, name, branch, arch)

        if not self.dir.get_deploy_dir(ref).exists():
            raise _not_installed(name, branch, ref)

        remote_name = self.dir.get_origin(ref)
        subpaths = self.dir.get_subpaths(ref)

        # Pull and deploy are not safe to share, so work on a copy
        dir_clone = self.dir.clone()
        sink = ProgressAggregator(progress).update if progress else None

        logger.info(f"Updating {ref} from {remote_name}")
        _run_private(
            dir_clone.update(
                ref,
                remote_name,
                subpaths,
                no_pull=UpdateFlags.NO_PULL in flags,
                no_deploy=UpdateFlags.NO_DEPLOY in flags,
                progress=sink,
                cancellable=cancellable,
            )
        )

        result = self.describe(ref)
        logger.info(f"Updated {ref}, now at {result.commit}")
        return result

    def uninstall(
        self,
        kind: RefKind,
        name: str,
        arch: str | None = None,
        branch: str | None = None,
        progress: ProgressCallback | None = None,
        cancellable: Cancellable | None = None,
    ) -> None:
        """Uninstall a ref.

        Pointers, deployments and the ref's catalog entry are removed under
        the installation lock; pruning and export updates run after releasing
        it.

        Raises:
            BusyError: If the installation lock stays held by someone else
            NotInstalledError: If the ref is not installed, or had no deployment
        """
        ref = compose_ref(kind == RefKind.APP, name, branch, arch)
        aggregator = ProgressAggregator(progress) if progress else None

        # Prune etc. are not safe to share, so work on a copy
        dir_clone = self.dir.clone()

        with dir_clone.lock(cancellable):
            if not dir_clone.get_deploy_dir(ref).exists():
                raise _not_installed(name, branch, ref)

            remote_name = dir_clone.get_origin(ref)

            if aggregator:
                aggregator.update(TransferCounters(status=f"Uninstalling {ref}"))

            logger.debug("dropping active ref")
            dir_clone.set_active(ref, None)

            if kind == RefKind.APP:
                current_ref = dir_clone.current_ref(name)
                if current_ref == ref:
                    logger.debug("dropping current ref")
                    dir_clone.drop_current_ref(name)

            was_deployed = dir_clone.undeploy_all(ref)
            dir_clone.remove_ref(remote_name, ref)

        if aggregator:
            aggregator.update(TransferCounters(status="Pruning unused objects"))

        # A cancelled prune finishes the remaining steps before re-raising
        cancelled: OperationCancelledError | None = None
        try:
            _run_private(dir_clone.prune(cancellable))
        except OperationCancelledError as e:
            logger.info(f"Pruning cancelled after uninstalling {ref}")
            cancelled = e
        except Exception as e:
            logger.warning(f"Failed to prune after uninstalling {ref}: {e}")

        dir_clone.cleanup_removed()

        if kind == RefKind.APP:
            dir_clone.update_exports(name)

        dir_clone.mark_changed()

        if cancelled is not None:
            raise cancelled

        if not was_deployed:
            raise _not_installed(name, branch, ref)

        logger.info(f"Successfully uninstalled {ref}")

    # ------------------------------------------------------------------
    # Launch and monitoring
    # ------------------------------------------------------------------

    def launch(
        self,
        name: str,
        arch: str | None = None,
        branch: str | None = None,
        commit: str | None = None,
    ) -> None:
        """Launch an installed app in the background.

        Args:
            commit: Specific deployed commit (default: active one)

        Raises:
            NotFoundError: If the app (or commit) is not deployed
            InstallationError: If no launcher was configured
        """
        ref = compose_ref(True, name, branch, arch)

        deploy_dir = self.dir.get_if_deployed(ref, commit)
        if deploy_dir is None:
            raise NotFoundError(f"{ref} commit {commit or 'active'} not installed", context={"ref": ref})

        if self.launcher is None:
            raise InstallationError("No launcher configured for this installation", context={"ref": ref})

        logger.info(f"Launching {ref} from {deploy_dir}")
        self.launcher.launch(ref, deploy_dir, background=True)

    def create_monitor(self, stop_event: asyncio.Event | threading.Event | None = None):
        """Watch the change marker.

        Yields a set of file changes each time an install, update or
        uninstall completes on this location.

        Args:
            stop_event: Event that ends the watch when set

        Returns:
            Async iterator from watchfiles.awatch
        """
        if not self.changed_path.exists():
            self.changed_path.parent.mkdir(parents=True, exist_ok=True)
            self.changed_path.touch()
        return watchfiles.awatch(self.changed_path, stop_event=stop_event)
