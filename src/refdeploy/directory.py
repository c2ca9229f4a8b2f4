"""Deploy tree management for one installation location.

Layout:
    <base>/app|runtime/<name>/<arch>/<branch>/   deploy base of a ref
        origin.json                               origin remote and subpaths
        <commit>/deploy.json                      DeployData
        <commit>/files/...                        checked-out content
        active -> <commit>
    <base>/app/<name>/current -> <arch>/<branch>
    <base>/repo/remotes.json                      remote catalog
    <base>/repo/refs/remotes/<remote>/<ref>       latest known commit
    <base>/overrides/<app-id>
    <base>/exports/<name> -> <deploy>/export
    <base>/.removed/                              undeployed leftovers
    <base>/.changed                               change marker

Mutations happen on a clone (``InstallationDir.clone()``) so that a running
transaction never shares state with the caller's instance.
"""

import json
import logging
import os
import shutil
import time
import uuid
from pathlib import Path

from .cancellable import Cancellable
from .cancellable import check_cancelled
from .config import InstallationConfig
from .exceptions import InstallationError
from .exceptions import NotFoundError
from .lock import InstallationLock
from .progress import TransferSink
from .protocols import ObjectStoreProtocol
from .refs import RefKind
from .refs import decompose_ref
from .remotes import RemoteCatalog
from .schema import DeployData

logger = logging.getLogger(__name__)

DEPLOY_DATA_FILE = "deploy.json"
ORIGIN_FILE = "origin.json"
ACTIVE_LINK = "active"
CURRENT_LINK = "current"


def _replace_symlink(link: Path, target: str) -> None:
    tmp_link = link.with_name(f".{link.name}-{uuid.uuid4().hex[:8]}")
    os.symlink(target, tmp_link)
    os.replace(tmp_link, link)


def _remove_empty_parents(path: Path, stop: Path) -> None:
    while path != stop and path.is_relative_to(stop):
        try:
            path.rmdir()
        except OSError:
            return
        path = path.parent


class InstallationDir:
    """Filesystem state of an installation location plus its object store."""

    def __init__(
        self,
        path: Path,
        user: bool,
        store: ObjectStoreProtocol,
        config: InstallationConfig | None = None,
    ):
        self.path = path
        self.user = user
        self.store = store
        self.config = config or InstallationConfig()
        self.remotes = RemoteCatalog(path / "repo" / "remotes.json")

    def clone(self) -> "InstallationDir":
        """Return a private working copy of this directory.

        The copy gets its own object store handle, so transactions never drive
        the engine instance used for read queries.
        """
        return InstallationDir(self.path, self.user, self.store.clone(), self.config)

    def ensure_repo(self) -> None:
        (self.path / "repo").mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths and pointers
    # ------------------------------------------------------------------

    @property
    def changed_path(self) -> Path:
        return self.path / ".changed"

    @property
    def removed_dir(self) -> Path:
        return self.path / ".removed"

    def lock(self, cancellable: Cancellable | None = None) -> InstallationLock:
        return InstallationLock(
            self.path / "lock",
            timeout=self.config.lock_timeout,
            poll_interval=self.config.lock_poll_interval,
            cancellable=cancellable,
        )

    def get_deploy_dir(self, ref: str) -> Path:
        """Deploy base for a ref (contains one directory per deployed commit)."""
        return self.path / ref

    def get_if_deployed(self, ref: str, commit: str | None = None) -> Path | None:
        """Return the deploy directory of commit (default: active), if it exists."""
        deploy_base = self.get_deploy_dir(ref)
        deploy_dir = deploy_base / (commit if commit else ACTIVE_LINK)
        if (deploy_dir / DEPLOY_DATA_FILE).is_file():
            return deploy_base / deploy_dir.resolve().name
        return None

    def load_deploy_data(self, deploy_dir: Path) -> DeployData:
        with open(deploy_dir / DEPLOY_DATA_FILE) as f:
            return DeployData.model_validate(json.load(f))

    def get_deploy_data(self, ref: str) -> DeployData | None:
        """Deploy data of the active deployment, or None when not deployed."""
        deploy_dir = self.get_if_deployed(ref)
        if deploy_dir is None:
            return None
        return self.load_deploy_data(deploy_dir)

    def _read_origin_file(self, ref: str) -> dict:
        origin_path = self.get_deploy_dir(ref) / ORIGIN_FILE
        if not origin_path.is_file():
            raise NotFoundError(f"No origin recorded for {ref}", context={"ref": ref})
        with open(origin_path) as f:
            return json.load(f)

    def get_origin(self, ref: str) -> str:
        """Origin remote name recorded for an installed ref."""
        return self._read_origin_file(ref)["origin"]

    def get_subpaths(self, ref: str) -> list[str]:
        return list(self._read_origin_file(ref).get("subpaths", []))

    def _write_origin_file(self, ref: str, origin: str, subpaths: list[str]) -> None:
        deploy_base = self.get_deploy_dir(ref)
        deploy_base.mkdir(parents=True, exist_ok=True)
        with open(deploy_base / ORIGIN_FILE, "w") as f:
            json.dump({"origin": origin, "subpaths": subpaths}, f, indent=2)

    def set_active(self, ref: str, commit: str | None) -> None:
        """Point the ref's active link at commit, or remove it when commit is None."""
        active = self.get_deploy_dir(ref) / ACTIVE_LINK
        if commit is None:
            if active.is_symlink():
                active.unlink()
                logger.debug(f"Dropped active commit of {ref}")
            return
        _replace_symlink(active, commit)
        logger.debug(f"Set active commit of {ref} to {commit}")

    def current_ref(self, name: str) -> str | None:
        """Full ref of the app's current pointer, or None."""
        link = self.path / RefKind.APP.value / name / CURRENT_LINK
        if not link.is_symlink():
            return None
        target = os.readlink(link)
        parts = target.split("/")
        if len(parts) != 2:
            logger.warning(f"Ignoring invalid current link for {name}: {target}")
            return None
        return f"{RefKind.APP.value}/{name}/{target}"

    def make_current_ref(self, ref: str) -> None:
        parsed = decompose_ref(ref)
        if parsed.kind != RefKind.APP:
            raise InstallationError(f"Only apps can be made current: {ref}", context={"ref": ref})
        link = self.path / RefKind.APP.value / parsed.name / CURRENT_LINK
        _replace_symlink(link, f"{parsed.arch}/{parsed.branch}")
        logger.debug(f"Made {ref} current")

    def drop_current_ref(self, name: str) -> None:
        link = self.path / RefKind.APP.value / name / CURRENT_LINK
        if link.is_symlink():
            link.unlink()
            logger.debug(f"Dropped current ref of {name}")

    def list_refs(self, kind: RefKind) -> list[str]:
        """List refs of a kind that have an active deployment, sorted."""
        refs = []
        kind_dir = self.path / kind.value
        if not kind_dir.is_dir():
            return refs

        for name_dir in kind_dir.iterdir():
            if not name_dir.is_dir() or name_dir.is_symlink():
                continue
            for arch_dir in name_dir.iterdir():
                if not arch_dir.is_dir() or arch_dir.is_symlink():
                    continue
                for branch_dir in arch_dir.iterdir():
                    if branch_dir.is_dir() and (branch_dir / ACTIVE_LINK).exists():
                        refs.append(f"{kind.value}/{name_dir.name}/{arch_dir.name}/{branch_dir.name}")

        return sorted(refs)

    # ------------------------------------------------------------------
    # Latest known commits
    # ------------------------------------------------------------------

    def _latest_path(self, remote: str, ref: str) -> Path:
        return self.path / "repo" / "refs" / "remotes" / remote / ref

    def read_latest(self, remote: str, ref: str) -> str | None:
        """Latest commit pulled for (remote, ref), or None if unknown."""
        try:
            return self._latest_path(remote, ref).read_text().strip() or None
        except FileNotFoundError:
            return None

    def write_latest(self, remote: str, ref: str, commit: str) -> None:
        path = self._latest_path(remote, ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(commit + "\n")

    def remove_ref(self, remote: str, ref: str) -> None:
        """Forget the latest known commit of ref under remote."""
        path = self._latest_path(remote, ref)
        path.unlink(missing_ok=True)
        _remove_empty_parents(path.parent, self.path / "repo" / "refs" / "remotes")
        logger.debug(f"Removed ref {ref} from remote {remote}")

    def _commits_in_use(self) -> set[str]:
        commits = set()
        for kind in RefKind:
            kind_dir = self.path / kind.value
            if kind_dir.is_dir():
                for data_file in kind_dir.glob(f"*/*/*/*/{DEPLOY_DATA_FILE}"):
                    if not data_file.parent.is_symlink():
                        commits.add(data_file.parent.name)

        refs_dir = self.path / "repo" / "refs" / "remotes"
        if refs_dir.is_dir():
            for ref_file in refs_dir.rglob("*"):
                if ref_file.is_file():
                    commits.add(ref_file.read_text().strip())
        return commits

    # ------------------------------------------------------------------
    # Deploy and undeploy
    # ------------------------------------------------------------------

    async def pull(
        self,
        remote_name: str,
        ref: str,
        progress: TransferSink | None = None,
        cancellable: Cancellable | None = None,
    ) -> str:
        """Pull ref from remote and record it as the latest known commit."""
        remote = self.remotes.require_remote(remote_name)
        check_cancelled(cancellable)

        logger.debug(f"Pulling {ref} from {remote_name}")
        commit = await self.store.pull(
            remote, ref, gpg_required=remote.gpg_verify, progress=progress, cancellable=cancellable
        )
        check_cancelled(cancellable)

        self.write_latest(remote_name, ref, commit)
        logger.debug(f"Pulled {ref} at {commit}")
        return commit

    async def deploy(
        self,
        ref: str,
        commit: str,
        origin: str,
        subpaths: list[str],
        cancellable: Cancellable | None = None,
    ) -> Path:
        """Check out commit into the ref's deploy base and make it active."""
        deploy_base = self.get_deploy_dir(ref)
        deploy_dir = deploy_base / commit
        if (deploy_dir / DEPLOY_DATA_FILE).is_file():
            raise InstallationError(f"{ref} commit {commit} already deployed", context={"ref": ref, "commit": commit})

        deploy_base.mkdir(parents=True, exist_ok=True)
        checkout_dir = deploy_base / f".{commit}-{uuid.uuid4().hex[:8]}"

        try:
            checkout_dir.mkdir()
            check_cancelled(cancellable)
            installed_size = await self.store.checkout(
                commit, checkout_dir / "files", subpaths=subpaths, cancellable=cancellable
            )
            check_cancelled(cancellable)

            data = DeployData(origin=origin, commit=commit, subpaths=subpaths, installed_size=installed_size)
            with open(checkout_dir / DEPLOY_DATA_FILE, "w") as f:
                json.dump(data.model_dump(), f, indent=2)

            os.rename(checkout_dir, deploy_dir)
        finally:
            if checkout_dir.exists():
                shutil.rmtree(checkout_dir, ignore_errors=True)

        self._write_origin_file(ref, origin, subpaths)
        self.set_active(ref, commit)
        logger.debug(f"Deployed {ref} at {commit} ({installed_size} bytes)")
        return deploy_dir

    async def deploy_install(
        self,
        ref: str,
        origin: str,
        subpaths: list[str] | None = None,
        cancellable: Cancellable | None = None,
    ) -> None:
        """Deploy the latest pulled commit of a new ref.

        A failed deploy removes the deploy base it created.
        """
        commit = self.read_latest(origin, ref)
        if commit is None:
            raise InstallationError(f"{ref} has not been pulled from {origin}", context={"ref": ref, "origin": origin})

        parsed = decompose_ref(ref)
        deploy_base = self.get_deploy_dir(ref)
        created_base = not deploy_base.exists()

        try:
            await self.deploy(ref, commit, origin, subpaths or [], cancellable)
            if parsed.kind == RefKind.APP:
                # Never steal current from another deployed branch of the app
                current = self.current_ref(parsed.name)
                if current is None or self.get_if_deployed(current) is None:
                    self.make_current_ref(ref)
                self.update_exports(parsed.name)
        except BaseException:
            if created_base and deploy_base.exists():
                logger.debug(f"Removing partial deployment of {ref}")
                shutil.rmtree(deploy_base, ignore_errors=True)
                _remove_empty_parents(deploy_base.parent, self.path)
            raise

        self.mark_changed()

    async def install(
        self,
        ref: str,
        remote_name: str,
        subpaths: list[str] | None = None,
        progress: TransferSink | None = None,
        cancellable: Cancellable | None = None,
    ) -> None:
        """Pull and deploy a ref that is not yet installed."""
        await self.pull(remote_name, ref, progress, cancellable)
        await self.deploy_install(ref, remote_name, subpaths, cancellable)

    async def update(
        self,
        ref: str,
        remote_name: str,
        subpaths: list[str],
        *,
        no_pull: bool = False,
        no_deploy: bool = False,
        progress: TransferSink | None = None,
        cancellable: Cancellable | None = None,
    ) -> None:
        """Pull and/or deploy a new commit of an installed ref."""
        if not no_pull:
            await self.pull(remote_name, ref, progress, cancellable)

        if no_deploy:
            return

        latest = self.read_latest(remote_name, ref)
        active = self.get_deploy_data(ref)
        if latest is None or (active is not None and active.commit == latest):
            logger.debug(f"{ref} is already up to date")
            return

        await self.deploy(ref, latest, remote_name, subpaths, cancellable)

        if active is not None:
            self.undeploy(ref, active.commit)

        parsed = decompose_ref(ref)
        if parsed.kind == RefKind.APP:
            self.update_exports(parsed.name)

        await self.prune(cancellable)
        self.cleanup_removed()
        self.mark_changed()

    def undeploy(self, ref: str, commit: str) -> None:
        """Move a deployed commit out of the tree into the removed area."""
        deploy_dir = self.get_deploy_dir(ref) / commit
        self.removed_dir.mkdir(parents=True, exist_ok=True)
        parsed = decompose_ref(ref)
        target = self.removed_dir / f"{parsed.name}-{commit}-{uuid.uuid4().hex[:8]}"
        os.rename(deploy_dir, target)
        logger.debug(f"Undeployed {ref} commit {commit}")

    def undeploy_all(self, ref: str) -> bool:
        """Undeploy every commit of ref and remove its deploy base.

        Returns:
            True if at least one deployed commit was removed
        """
        deploy_base = self.get_deploy_dir(ref)
        was_deployed = False

        if deploy_base.is_dir():
            for child in sorted(deploy_base.iterdir()):
                if child.is_symlink() or not child.is_dir() or child.name.startswith("."):
                    continue
                if (child / DEPLOY_DATA_FILE).is_file():
                    self.undeploy(ref, child.name)
                    was_deployed = True

            shutil.rmtree(deploy_base)
            _remove_empty_parents(deploy_base.parent, self.path)

        return was_deployed

    async def prune(self, cancellable: Cancellable | None = None) -> None:
        """Ask the object store to drop objects no deployment or ref still uses."""
        keep = self._commits_in_use()
        logger.debug(f"Pruning object store, keeping {len(keep)} commits")
        await self.store.prune(keep, cancellable=cancellable)

    def cleanup_removed(self) -> None:
        """Best-effort deletion of undeployed leftovers."""
        if not self.removed_dir.is_dir():
            return

        for child in self.removed_dir.iterdir():
            try:
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as e:
                logger.warning(f"Failed to clean up removed deployment {child}: {e}")

    # ------------------------------------------------------------------
    # Exports, overrides and change notification
    # ------------------------------------------------------------------

    def update_exports(self, name: str) -> None:
        """Point exports/<name> at the current deployment's export directory."""
        exports_dir = self.path / "exports"
        link = exports_dir / name

        target = None
        current = self.current_ref(name)
        if current is not None:
            deploy_dir = self.get_if_deployed(current)
            if deploy_dir is not None and (deploy_dir / "files" / "export").is_dir():
                target = deploy_dir / "files" / "export"

        if target is None:
            if link.is_symlink():
                link.unlink()
                logger.debug(f"Removed exports of {name}")
            return

        exports_dir.mkdir(parents=True, exist_ok=True)
        _replace_symlink(link, os.path.relpath(target, exports_dir))
        logger.debug(f"Updated exports of {name}")

    def load_override(self, app_id: str) -> str:
        override_path = self.path / "overrides" / app_id
        try:
            return override_path.read_text()
        except FileNotFoundError:
            raise NotFoundError(f"No overrides found for {app_id}", context={"app_id": app_id}) from None

    def mark_changed(self) -> None:
        """Touch the change marker watched by monitors."""
        self.changed_path.parent.mkdir(parents=True, exist_ok=True)
        self.changed_path.write_text(f"{time.time()}\n")
        logger.debug(f"Marked {self.path} as changed")

