"""Installation configuration.

Locations and timeouts are application policy: apps construct an
InstallationConfig (or read one from the environment) and inject it.
"""

import logging
import os
from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PATH = Path("/var/lib/refdeploy")
DEFAULT_USER_PATH = Path.home() / ".local" / "share" / "refdeploy"


class InstallationConfig(BaseModel):
    """Settings shared by all installations created from it."""

    model_config = ConfigDict(frozen=True)

    system_path: Path = DEFAULT_SYSTEM_PATH
    user_path: Path = DEFAULT_USER_PATH
    lock_timeout: float = Field(default=30.0, ge=0)
    lock_poll_interval: float = Field(default=0.1, gt=0)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "InstallationConfig":
        """Build config from environment variables.

        Recognized variables:
        - REFDEPLOY_SYSTEM_DIR: system-wide installation path
        - REFDEPLOY_USER_DIR: per-user installation path
        - REFDEPLOY_LOCK_TIMEOUT: seconds to wait for the installation lock

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            InstallationConfig with defaults for unset variables
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        if env.get("REFDEPLOY_SYSTEM_DIR"):
            values["system_path"] = Path(env["REFDEPLOY_SYSTEM_DIR"]).expanduser()
        if env.get("REFDEPLOY_USER_DIR"):
            values["user_path"] = Path(env["REFDEPLOY_USER_DIR"]).expanduser()
        if env.get("REFDEPLOY_LOCK_TIMEOUT"):
            values["lock_timeout"] = env["REFDEPLOY_LOCK_TIMEOUT"]

        config = cls.model_validate(values)
        logger.debug(f"Loaded installation config: {config}")
        return config
