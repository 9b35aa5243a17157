"""Sources of available provider versions.

RegistryClient queries an HTTP provider registry:

    GET {base_url}/v1/providers/{namespace}/{name}/versions
    -> {"versions": [{"version": "1.2.0", "checksums": ["sha256:..."]}, ...]}

LocalPluginSource lists the plugins installed in-process.
"""

import logging
from typing import Iterable, Optional

import requests

from errors import RegistryError

logger = logging.getLogger(__name__)


class RegistryClient:
    """HTTP provider registry client."""

    def __init__(
        self,
        base_url: str,
        namespace: str = 'landform',
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.namespace = namespace
        self.timeout = timeout
        self.session = session or requests.Session()

    def _split_source(self, name: str) -> tuple[str, str]:
        """'example/random' -> ('example', 'random'); bare names use the default namespace."""
        if '/' in name:
            namespace, _, short = name.rpartition('/')
            return namespace, short
        return self.namespace, name

    def versions(self, name: str) -> dict[str, list[str]]:
        """List available versions of one provider.

        Returns:
            Version text -> checksum list

        Raises:
            RegistryError: On transport failure or unexpected response
        """
        namespace, short = self._split_source(name)
        url = f"{self.base_url}/v1/providers/{namespace}/{short}/versions"
        logger.debug(f"Querying provider registry: {url}")

        try:
            resp = self.session.get(url, headers={'Accept': 'application/json'}, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise RegistryError(f"Cannot connect to provider registry {self.base_url}: {e}") from e
        except requests.exceptions.Timeout as e:
            raise RegistryError(f"Timeout querying provider registry {self.base_url}") from e

        if resp.status_code == 404:
            raise RegistryError(f"Provider '{namespace}/{short}' not found in registry")
        if resp.status_code != 200:
            raise RegistryError(
                f"Unexpected registry response for '{namespace}/{short}': "
                f"{resp.status_code} {resp.text[:100]}")

        try:
            data = resp.json()
        except ValueError as e:
            raise RegistryError(f"Invalid JSON from provider registry: {e}") from e

        result: dict[str, list[str]] = {}
        for item in data.get('versions', []):
            if isinstance(item, dict) and item.get('version'):
                result[str(item['version'])] = list(item.get('checksums') or [])
        logger.info(f"Registry lists {len(result)} versions of {namespace}/{short}")
        return result

    def available_versions(self, names: Iterable[str]) -> dict[str, dict[str, list[str]]]:
        """Provider name -> {version: checksums} for each name."""
        return {name: self.versions(name) for name in names}


class LocalPluginSource:
    """Available versions from an in-process plugin registry."""

    def __init__(self, plugins):
        self.plugins = plugins

    def available_versions(self, names: Iterable[str]) -> dict[str, dict[str, list[str]]]:
        return self.plugins.available_versions(names)
