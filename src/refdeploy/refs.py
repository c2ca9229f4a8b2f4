"""Ref algebra - Build and parse canonical ref identifiers.

A ref names one installable package: ``<kind>/<name>/<arch>/<branch>``,
e.g. ``app/org.example.Foo/x86_64/master``.

Pure functions, no I/O.
"""

import platform
from enum import Enum

from pydantic import BaseModel
from pydantic import ConfigDict

from .exceptions import MalformedRefError

DEFAULT_BRANCH = "master"


class RefKind(str, Enum):
    """Kind of an installable package."""

    APP = "app"
    RUNTIME = "runtime"


class Ref(BaseModel):
    """Decomposed ref (immutable)."""

    model_config = ConfigDict(frozen=True)

    kind: RefKind
    name: str
    arch: str
    branch: str

    def format_ref(self) -> str:
        """Return the canonical ``kind/name/arch/branch`` string."""
        return f"{self.kind.value}/{self.name}/{self.arch}/{self.branch}"

    def __str__(self) -> str:
        return self.format_ref()


def get_default_arch() -> str:
    """Return the canonical architecture name of the host machine.

    Returns:
        One of ``x86_64``, ``i386``, ``aarch64``, ``arm`` for common hosts,
        otherwise the lowercased machine string.
    """
    machine = platform.machine().lower()

    if machine in ("x86_64", "amd64"):
        return "x86_64"
    if len(machine) == 4 and machine.startswith("i") and machine.endswith("86"):
        return "i386"
    if machine in ("aarch64", "arm64"):
        return "aarch64"
    if machine.startswith("arm"):
        return "arm"
    return machine


def _check_component(value: str, what: str) -> None:
    if not value:
        raise MalformedRefError(f"Empty {what} in ref", context={what: value})
    if "/" in value:
        raise MalformedRefError(f"Invalid {what} '{value}': must not contain '/'", context={what: value})


def compose_ref(is_app: bool, name: str, branch: str | None = None, arch: str | None = None) -> str:
    """Compose a full ref string.

    Args:
        is_app: True for an app ref, False for a runtime ref
        name: Package name (non-empty, no '/')
        branch: Branch (default: "master")
        arch: Architecture (default: host architecture)

    Returns:
        Canonical ref string

    Raises:
        MalformedRefError: If any component is empty or contains '/'

    Example:
        >>> compose_ref(True, "org.example.Foo", arch="x86_64")
        'app/org.example.Foo/x86_64/master'
    """
    if branch is None:
        branch = DEFAULT_BRANCH
    if arch is None:
        arch = get_default_arch()

    _check_component(name, "name")
    _check_component(arch, "arch")
    _check_component(branch, "branch")

    kind = RefKind.APP if is_app else RefKind.RUNTIME
    return f"{kind.value}/{name}/{arch}/{branch}"


def build_app_ref(name: str, branch: str | None = None, arch: str | None = None) -> str:
    return compose_ref(True, name, branch, arch)


def build_runtime_ref(name: str, branch: str | None = None, arch: str | None = None) -> str:
    return compose_ref(False, name, branch, arch)


def decompose_ref(ref: str) -> Ref:
    """Split a full ref string into its components.

    Args:
        ref: Full ref string

    Returns:
        Ref with kind, name, arch and branch

    Raises:
        MalformedRefError: If ref does not have exactly four non-empty parts
            or has an unknown kind
    """
    parts = ref.split("/")
    if len(parts) != 4:
        raise MalformedRefError(f"Wrong number of components in {ref}", context={"ref": ref})

    kind, name, arch, branch = parts
    if kind not in (RefKind.APP.value, RefKind.RUNTIME.value):
        raise MalformedRefError(f"{kind} is not application or runtime", context={"ref": ref})

    for value, what in ((name, "name"), (arch, "arch"), (branch, "branch")):
        if not value:
            raise MalformedRefError(f"Empty {what} in {ref}", context={"ref": ref})

    return Ref(kind=RefKind(kind), name=name, arch=arch, branch=branch)
