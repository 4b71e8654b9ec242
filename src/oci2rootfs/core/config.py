"""Configuration loaded from environment variables."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..exceptions import UsageError

CACHE_DIR_ENV = "OCI2ROOTFS_CACHE_DIR"
BASE_ROOTFS_ENV = "OCI2ROOTFS_BASE_ROOTFS"
INSECURE_REGISTRIES_ENV = "OCI2ROOTFS_INSECURE_REGISTRIES"
TIMEOUT_ENV = "OCI2ROOTFS_TIMEOUT"
LOG_LEVEL_ENV = "OCI2ROOTFS_LOG_LEVEL"

APP_NAME = "oci2rootfs"
DEFAULT_TIMEOUT = 300


@dataclass(frozen=True)
class RegistryConfig:
    """Connection settings for one registry."""

    url: str
    timeout: int = DEFAULT_TIMEOUT

    @property
    def base_url(self) -> str:
        return self.url.rstrip("/")


def default_cache_root() -> Path:
    """Return the blob cache root.

    ``$OCI2ROOTFS_CACHE_DIR`` wins, then ``$XDG_CACHE_HOME/oci2rootfs``, then
    ``~/.cache/oci2rootfs``.
    """
    explicit = os.getenv(CACHE_DIR_ENV, "").strip()
    if explicit:
        return Path(explicit).resolve()

    xdg_cache = os.getenv("XDG_CACHE_HOME", "").strip()
    if xdg_cache:
        return (Path(xdg_cache) / APP_NAME).resolve()

    return (Path.home() / ".cache" / APP_NAME).resolve()


def _read_timeout() -> int:
    raw = os.getenv(TIMEOUT_ENV, "").strip()
    if not raw:
        return DEFAULT_TIMEOUT
    try:
        timeout = int(raw)
    except ValueError as e:
        raise UsageError(
            f"Invalid {TIMEOUT_ENV} value '{raw}'.",
            ["Set it to a positive number of seconds, e.g. 300."],
        ) from e
    if timeout <= 0:
        raise UsageError(
            f"Invalid {TIMEOUT_ENV} value '{raw}'.",
            ["Set it to a positive number of seconds, e.g. 300."],
        )
    return timeout


def _split_hosts(raw: str) -> frozenset[str]:
    return frozenset(host.strip() for host in raw.split(",") if host.strip())


@dataclass(frozen=True)
class Settings:
    """Process-wide settings.

    Environment Variables:
        OCI2ROOTFS_CACHE_DIR: Blob cache root. Default: user cache directory
        OCI2ROOTFS_BASE_ROOTFS: ext4 image holding the base rootfs tree
        OCI2ROOTFS_INSECURE_REGISTRIES: Comma separated hosts reached over http
        OCI2ROOTFS_TIMEOUT: Registry request timeout in seconds. Default: 300
    """

    cache_root: Path = field(default_factory=default_cache_root)
    base_rootfs_image: Optional[Path] = None
    insecure_registries: frozenset[str] = frozenset()
    timeout: int = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls) -> "Settings":
        base_rootfs = os.getenv(BASE_ROOTFS_ENV, "").strip()
        return cls(
            cache_root=default_cache_root(),
            base_rootfs_image=Path(base_rootfs) if base_rootfs else None,
            insecure_registries=_split_hosts(os.getenv(INSECURE_REGISTRIES_ENV, "")),
            timeout=_read_timeout(),
        )

    def registry_config(self, registry_api_host: str) -> RegistryConfig:
        """Build the connection settings for a registry host."""
        scheme = "http" if registry_api_host in self.insecure_registries else "https"
        return RegistryConfig(url=f"{scheme}://{registry_api_host}", timeout=self.timeout)


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for applications embedding the converter.

    The level comes from the argument, then ``$OCI2ROOTFS_LOG_LEVEL``, then INFO.
    """
    level_name = (level or os.getenv(LOG_LEVEL_ENV, "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
