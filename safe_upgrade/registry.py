"""npm registry access.

The orchestrator only depends on the ``VersionSource`` protocol; the
``RegistryClient`` is the production implementation backed by the public
registry's packument endpoint.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

import requests

from .models import DEFAULT_REGISTRY

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """The registry could not be reached or returned an unusable answer."""


class VersionSource(Protocol):
    def fetch_versions(self, package_name: str) -> list[str]: ...


def packument_url(registry_url: str, package_name: str) -> str:
    """URL of a package's metadata document.

    Scoped names keep their ``@`` but escape the slash:
    ``@types/node`` → ``<registry>/@types%2fnode``.
    """
    escaped = quote(package_name, safe="@").replace("%2F", "%2f")
    return f"{registry_url.rstrip('/')}/{escaped}"


class RegistryClient:
    """Fetch published versions of npm packages.

    Args:
        registry_url: Base URL of the registry.
        timeout: Per-request timeout in seconds.
        session: Optional pre-configured requests session.
    """

    def __init__(
        self,
        registry_url: str = DEFAULT_REGISTRY,
        timeout: float = 30,
        session: requests.Session | None = None,
    ) -> None:
        self.registry_url = registry_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._cache: dict[str, list[str]] = {}

    def fetch_versions(self, package_name: str) -> list[str]:
        """Return every published, non-deprecated version of ``package_name``.

        Versions come back in the packument's own order; sorting and
        filtering of pre-releases is left to the caller.

        Raises:
            RegistryError: On network failures, non-2xx responses or a
                malformed document.
        """
        if package_name in self._cache:
            logger.debug("Cache hit: versions for %s", package_name)
            return list(self._cache[package_name])

        url = packument_url(self.registry_url, package_name)
        logger.info("Fetching versions for %s", package_name)
        try:
            with self.session.get(
                url, timeout=self.timeout, headers={"Accept": "application/json"}
            ) as response:
                response.raise_for_status()
                data = response.json()
        except requests.RequestException as exc:
            raise RegistryError(f"Failed to fetch {package_name}: {exc}") from exc
        except ValueError as exc:
            raise RegistryError(f"Invalid registry response for {package_name}") from exc

        versions = data.get("versions") if isinstance(data, dict) else None
        if not isinstance(versions, dict):
            raise RegistryError(f"Registry response for {package_name} has no versions")

        result = [
            version
            for version, manifest in versions.items()
            if not (isinstance(manifest, dict) and manifest.get("deprecated"))
        ]
        self._cache[package_name] = result
        return list(result)


def detect_custom_registry(
    project_dir: Path | str, active_registry: str = DEFAULT_REGISTRY
) -> str | None:
    """Warn when the project's .npmrc points at a different registry.

    Only the ``registry=`` line of the project-level ``.npmrc`` is read.

    Returns:
        A warning message, or None when no other registry is configured.
    """
    npmrc = Path(project_dir) / ".npmrc"
    if not npmrc.exists():
        return None
    try:
        content = npmrc.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Ignoring unreadable %s: %s", npmrc, exc)
        return None
    for line in content.splitlines():
        key, sep, value = line.strip().partition("=")
        if not sep or key.strip() != "registry":
            continue
        configured = value.strip().strip("\"'")
        if configured.rstrip("/") != active_registry.rstrip("/"):
            return (
                f"custom registry {configured} detected, "
                f"using {active_registry.rstrip('/')}/ instead"
            )
    return None
