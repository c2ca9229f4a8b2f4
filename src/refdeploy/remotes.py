"""Remote catalog - Configured remotes persisted as a JSON file.

Catalog format (JSON):
{
  "version": "1.0",
  "remotes": {
    "flathub": {
      "name": "flathub",
      "url": "https://dl.example.org/repo/",
      "title": "Example",
      "priority": 1,
      "gpg_verify": true,
      "gpg_key": null,
      "noenumerate": false,
      "disabled": false,
      "index": 0
    }
  }
}

The file is re-read on every query so that changes made through a working
copy are visible to the caller's instance.
"""

import base64
import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from .exceptions import InstallationError
from .exceptions import NotFoundError
from .schema import Remote

logger = logging.getLogger(__name__)


class RemoteCatalog:
    """Remote configuration manager for one installation."""

    VERSION = "1.0"

    def __init__(self, catalog_path: Path):
        """Initialize with the path of the catalog file.

        Args:
            catalog_path: Path to remotes.json (created on first save)
        """
        self.catalog_path = catalog_path

    def _load(self) -> dict[str, Remote]:
        if not self.catalog_path.exists():
            return {}

        try:
            with open(self.catalog_path) as f:
                data = json.load(f)

            if data.get("version") != self.VERSION:
                logger.warning(f"Remote catalog version mismatch: expected {self.VERSION}, got {data.get('version')}")

            return {name: Remote.model_validate(entry) for name, entry in data.get("remotes", {}).items()}

        except (json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to load remote catalog {self.catalog_path}: {e}")
            raise InstallationError(
                f"Invalid remote catalog: {e}", context={"catalog_path": str(self.catalog_path)}
            ) from e

    def _save(self, remotes: dict[str, Remote]) -> None:
        self.catalog_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "version": self.VERSION,
            "remotes": {name: remote.model_dump() for name, remote in remotes.items()},
        }

        tmp_path = self.catalog_path.with_name(self.catalog_path.name + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.catalog_path)
        logger.debug(f"Saved remote catalog with {len(remotes)} remotes")

    def list_remotes(self) -> list[Remote]:
        """List remotes by descending priority, earlier-added first on ties."""
        return sorted(self._load().values(), key=lambda r: (-r.priority, r.index))

    def get_remote(self, name: str) -> Remote | None:
        return self._load().get(name)

    def require_remote(self, name: str) -> Remote:
        """Get a remote or raise NotFoundError."""
        remote = self.get_remote(name)
        if remote is None:
            raise NotFoundError(f"No remote named '{name}'", context={"remote": name})
        return remote

    def add_remote(
        self,
        name: str,
        url: str,
        *,
        title: str = "",
        priority: int = 1,
        gpg_verify: bool = True,
        gpg_key: bytes | None = None,
        noenumerate: bool = False,
        disabled: bool = False,
    ) -> Remote:
        """Add or replace a remote.

        A replaced remote keeps its insertion position.

        Args:
            name: Remote name (non-empty, no '/')
            url: Remote URL
            gpg_key: Raw signing key material, stored base64 encoded

        Returns:
            The stored Remote
        """
        if not name or "/" in name:
            raise InstallationError(f"Invalid remote name '{name}'", context={"remote": name})

        remotes = self._load()
        existing = remotes.get(name)
        if existing is not None:
            index = existing.index
        else:
            index = max((r.index for r in remotes.values()), default=-1) + 1

        remote = Remote(
            name=name,
            url=url,
            title=title,
            priority=priority,
            gpg_verify=gpg_verify,
            gpg_key=base64.b64encode(gpg_key).decode("ascii") if gpg_key else None,
            noenumerate=noenumerate,
            disabled=disabled,
            index=index,
        )
        remotes[name] = remote
        self._save(remotes)

        logger.debug(f"Added remote {name} ({url})")
        return remote

    def delete_remote(self, name: str) -> None:
        """Delete a remote entry.

        Raises:
            NotFoundError: If no remote has this name
        """
        remotes = self._load()
        if name not in remotes:
            raise NotFoundError(f"No remote named '{name}'", context={"remote": name})

        del remotes[name]
        self._save(remotes)
        logger.debug(f"Deleted remote {name}")

    def create_origin_remote(
        self,
        url: str,
        name_hint: str,
        title: str,
        gpg_data: bytes | None,
    ) -> str:
        """Create a remote for a bundle's origin under a fresh name.

        Tries ``<name_hint>-origin``, then ``<name_hint>-origin-1`` and so on.

        Returns:
            Name of the created remote
        """
        existing = self._load()

        base = f"{name_hint}-origin"
        name = base
        version = 0
        while name in existing:
            version += 1
            name = f"{base}-{version}"

        self.add_remote(
            name,
            url,
            title=title,
            gpg_verify=gpg_data is not None,
            gpg_key=gpg_data,
            noenumerate=True,
        )
        logger.info(f"Created origin remote {name} for {url}")
        return name
