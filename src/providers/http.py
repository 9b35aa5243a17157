"""http provider: JSON objects managed through a REST collection API.

Provider configuration:
    endpoint: Base URL of the API (required)
    token: Bearer token (optional)
    timeout: Request timeout in seconds (default: 10)

Objects live at {endpoint}/{collection}/{id}. POST to the collection
creates an object and returns it with its id; GET/PUT/DELETE act on it.
"""

import logging
from typing import Optional

import requests

from errors import ProviderError, ResourceNotFound
from providers.base import ProviderPlugin, Resource, ResourceSchema

logger = logging.getLogger(__name__)


class HttpObject(Resource):
    """One JSON object in a remote collection."""

    schema = ResourceSchema(
        force_new=frozenset({'collection'}),
        mutable=frozenset({'body'}),
        computed=frozenset({'id', 'url'}),
    )

    def _request(self, method: str, url: str, body: Optional[dict] = None) -> requests.Response:
        config = self.plugin.config
        headers = {'Accept': 'application/json'}
        if config.get('token'):
            headers['Authorization'] = f"Bearer {config['token']}"
        try:
            return self.plugin.session.request(
                method, url, json=body, headers=headers, timeout=config.get('timeout', 10))
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"http_object: cannot connect to {url}: {e}")
        except requests.exceptions.Timeout:
            raise ProviderError(f"http_object: timeout on {method} {url}")

    def _collection_url(self, attrs: dict) -> str:
        endpoint = self.plugin.config.get('endpoint')
        if not endpoint:
            raise ProviderError("http provider requires 'endpoint' configuration")
        collection = attrs.get('collection')
        if not collection:
            raise ProviderError("http_object: collection is required")
        return f"{endpoint.rstrip('/')}/{collection}"

    @staticmethod
    def _check(resp: requests.Response, action: str) -> None:
        if resp.status_code >= 400:
            raise ProviderError(f"http_object: {action} failed: {resp.status_code} {resp.text[:100]}")

    @staticmethod
    def _body_of(data: dict) -> dict:
        return {k: v for k, v in data.items() if k != 'id'}

    def create(self, attrs: dict) -> tuple[dict, str]:
        url = self._collection_url(attrs)
        resp = self._request('POST', url, attrs.get('body') or {})
        self._check(resp, 'create')
        data = resp.json()
        if 'id' not in data:
            raise ProviderError("http_object: create response has no id")
        object_id = str(data['id'])
        return {**attrs, 'id': object_id, 'url': f'{url}/{object_id}'}, object_id

    def read(self, attrs: dict) -> dict:
        url = attrs.get('url') or f"{self._collection_url(attrs)}/{attrs.get('id')}"
        resp = self._request('GET', url)
        if resp.status_code == 404:
            raise ResourceNotFound(f"http_object: {url} no longer exists")
        self._check(resp, 'read')
        return {**attrs, 'body': self._body_of(resp.json())}

    def update(self, old: dict, new: dict) -> dict:
        result = self.keep_computed(old, new)
        resp = self._request('PUT', result['url'], new.get('body') or {})
        if resp.status_code == 404:
            raise ResourceNotFound(f"http_object: {result['url']} no longer exists")
        self._check(resp, 'update')
        return result

    def delete(self, attrs: dict) -> None:
        url = attrs.get('url') or f"{self._collection_url(attrs)}/{attrs.get('id')}"
        resp = self._request('DELETE', url)
        if resp.status_code == 404:
            logger.debug(f"{url} already gone")
            return
        self._check(resp, 'delete')


class HttpProvider(ProviderPlugin):
    name = 'http'
    version = '1.4.0'
    resources = {'http_object': HttpObject}

    def __init__(self):
        super().__init__()
        self.session = requests.Session()

    def configure(self, attrs: dict) -> None:
        if not attrs.get('endpoint'):
            raise ProviderError("http provider requires 'endpoint' configuration")
        super().configure(attrs)
