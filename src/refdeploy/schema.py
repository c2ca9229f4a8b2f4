"""Value types exchanged with callers and persisted in the deploy tree.

All models are immutable snapshots: they are rebuilt on every query and never
hold locks or live handles.
"""

from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from .exceptions import MalformedRefError
from .refs import RefKind
from .refs import decompose_ref


class _RefFields(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: RefKind
    name: str
    arch: str
    branch: str

    def format_ref(self) -> str:
        """Return the canonical ``kind/name/arch/branch`` string."""
        return f"{self.kind.value}/{self.name}/{self.arch}/{self.branch}"


class InstalledRef(_RefFields):
    """Snapshot of one installed ref."""

    commit: str
    latest_commit: str | None = None
    origin: str
    subpaths: frozenset[str] = Field(default_factory=frozenset)
    deploy_dir: Path
    installed_size: int = Field(default=0, ge=0)
    is_current: bool = False


class RemoteRef(_RefFields):
    """Ref advertised in a remote's catalog."""

    commit: str
    remote_name: str

    @classmethod
    def from_catalog(cls, full_ref: str, checksum: str, remote_name: str) -> "RemoteRef | None":
        """Build from a catalog entry, returning None for refs that do not parse.

        Catalogs can carry non-package refs (appstream branches etc.), which are skipped.
        """
        try:
            ref = decompose_ref(full_ref)
        except MalformedRefError:
            return None
        return cls(
            kind=ref.kind,
            name=ref.name,
            arch=ref.arch,
            branch=ref.branch,
            commit=checksum,
            remote_name=remote_name,
        )


class Remote(BaseModel):
    """Configured remote source of refs.

    Remotes sort by descending priority; ties keep insertion order (``index``).
    """

    model_config = ConfigDict(frozen=True)

    name: str
    url: str = ""
    title: str = ""
    priority: int = 1
    gpg_verify: bool = True
    gpg_key: str | None = None  # base64
    noenumerate: bool = False
    disabled: bool = False
    index: int = 0


class DeployData(BaseModel):
    """Metadata recorded for one deployed commit."""

    origin: str
    commit: str
    subpaths: list[str] = Field(default_factory=list)
    installed_size: int = Field(default=0, ge=0)


class BundleHeader(BaseModel):
    """Identity and origin information read from a bundle file."""

    model_config = ConfigDict(frozen=True)

    ref: str
    commit: str
    origin: str | None = None
    gpg_data: bytes | None = None
    metadata: str = ""
