"""Shared fixtures: an in-memory object store and a temporary installation."""

import copy
import json
from pathlib import Path

import pytest
from refdeploy import BundleHeader
from refdeploy import Installation
from refdeploy import InstallationConfig
from refdeploy import MalformedBundleError
from refdeploy import TransferCounters
from refdeploy import TransferError


class FakeObjectStore:
    """Object store serving commits from per-remote catalogs held in memory."""

    def __init__(self):
        self.catalogs: dict[str, dict[str, str]] = {}
        self.failing_remotes: set[str] = set()
        self.fail_checkout = False
        self.fail_bundle_import = False
        self.fail_prune = False
        self.cancel_on_prune = False
        self.with_exports = True
        self.pulls: list[tuple[str, str]] = []
        self.pruned: list[set[str]] = []
        self.ref_cache: dict[tuple[str, str], tuple[int, int, str]] = {}
        self.clones: list[FakeObjectStore] = []
        self.calls: list[str] = []
        self.progress_samples: list[TransferCounters] = [
            TransferCounters(outstanding_fetches=1, outstanding_metadata_fetches=1, metadata_fetched=3),
            TransferCounters(outstanding_fetches=1, fetched=5, requested=10, bytes_transferred=5000, elapsed_seconds=1),
            TransferCounters(outstanding_writes=2),
        ]

    def advertise(self, remote: str, ref: str, commit: str) -> None:
        self.catalogs.setdefault(remote, {})[ref] = commit

    def clone(self):
        # Handles share the stored data but record their own calls
        handle = copy.copy(self)
        handle.calls = []
        self.clones.append(handle)
        return handle

    async def pull(self, remote, ref, *, gpg_required, progress, cancellable):
        self.calls.append("pull")
        if cancellable is not None:
            cancellable.raise_if_cancelled()
        commit = self.catalogs.get(remote.name, {}).get(ref)
        if commit is None:
            raise TransferError(f"No such ref {ref} in {remote.name}")
        if progress is not None:
            for sample in self.progress_samples:
                progress(sample)
        self.pulls.append((remote.name, ref))
        return commit

    async def checkout(self, commit, target_dir: Path, *, subpaths, cancellable):
        self.calls.append("checkout")
        if self.fail_checkout:
            raise TransferError(f"Checkout of {commit} failed")
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / "commit").write_text(commit)
        if self.with_exports:
            (target_dir / "export").mkdir()
        return 1234

    async def list_remote_refs(self, remote, *, cancellable):
        if remote.name in self.failing_remotes:
            raise TransferError(f"Remote {remote.name} unreachable")
        return dict(self.catalogs.get(remote.name, {}))

    async def load_bundle(self, path: Path):
        try:
            data = json.loads(path.read_text())
            return BundleHeader(
                ref=data["ref"],
                commit=data["commit"],
                origin=data.get("origin"),
                gpg_data=data["gpg"].encode() if data.get("gpg") else None,
            )
        except (OSError, ValueError, KeyError) as e:
            raise MalformedBundleError(f"Invalid bundle {path}: {e}") from e

    async def pull_from_bundle(self, path, remote_name, ref, *, gpg_required, cancellable):
        self.calls.append("pull_from_bundle")
        if cancellable is not None:
            cancellable.raise_if_cancelled()
        if self.fail_bundle_import:
            raise TransferError("Bundle import failed")
        return json.loads(path.read_text())["commit"]

    async def fetch_ref_cache(self, remote, ref, *, cancellable):
        try:
            return self.ref_cache[(remote.name, ref)]
        except KeyError:
            raise TransferError(f"No cached metadata for {ref}") from None

    async def update_appstream(self, remote, arch, *, progress, cancellable):
        self.calls.append("update_appstream")
        return remote.name in self.catalogs

    async def prune(self, keep_commits, *, cancellable):
        self.calls.append("prune")
        if self.cancel_on_prune:
            cancellable.cancel()
            cancellable.raise_if_cancelled()
        if self.fail_prune:
            raise TransferError("prune failed")
        self.pruned.append(set(keep_commits))


class RecordingLauncher:
    def __init__(self):
        self.launched: list[tuple[str, Path, bool]] = []

    def launch(self, ref, deploy_dir, *, background=True):
        self.launched.append((ref, deploy_dir, background))


@pytest.fixture
def store():
    return FakeObjectStore()


@pytest.fixture
def launcher():
    return RecordingLauncher()


@pytest.fixture
def installation(tmp_path, store, launcher):
    config = InstallationConfig(lock_timeout=0.2, lock_poll_interval=0.05)
    inst = Installation.new_for_path(tmp_path / "installation", True, store, config, launcher)
    inst.add_remote("test-remote", "https://example.org/repo", gpg_verify=False)
    return inst


@pytest.fixture
def make_bundle(tmp_path):
    """Write a JSON bundle file understood by FakeObjectStore."""

    def _make(ref: str, commit: str, origin: str | None = "https://example.org/repo", gpg: str | None = None) -> Path:
        path = tmp_path / f"{ref.split('/')[1]}.bundle"
        path.write_text(json.dumps({"ref": ref, "commit": commit, "origin": origin, "gpg": gpg}))
        return path

    return _make
