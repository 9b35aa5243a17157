"""Tests for provider version sources."""

from unittest.mock import MagicMock

import pytest
import requests

from errors import RegistryError
from resolver.registry import LocalPluginSource, RegistryClient


def _response(status=200, payload=None, text=''):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


class TestRegistryClient:
    """Tests for RegistryClient."""

    def test_versions(self):
        session = MagicMock()
        session.get.return_value = _response(payload={'versions': [
            {'version': '1.0.0', 'checksums': ['sha256:a']},
            {'version': '1.1.0'},
            {'bogus': True},
        ]})
        client = RegistryClient('https://registry.example/', session=session)

        result = client.versions('random')

        assert result == {'1.0.0': ['sha256:a'], '1.1.0': []}
        url = session.get.call_args[0][0]
        assert url == 'https://registry.example/v1/providers/landform/random/versions'

    def test_source_namespace(self):
        session = MagicMock()
        session.get.return_value = _response(payload={'versions': []})
        RegistryClient('https://r.example', session=session).versions('example/random')
        assert session.get.call_args[0][0] == 'https://r.example/v1/providers/example/random/versions'

    def test_timeout_passed(self):
        session = MagicMock()
        session.get.return_value = _response(payload={'versions': []})
        RegistryClient('https://r.example', timeout=3, session=session).versions('null')
        assert session.get.call_args[1]['timeout'] == 3

    def test_not_found(self):
        session = MagicMock()
        session.get.return_value = _response(status=404)
        with pytest.raises(RegistryError, match='not found'):
            RegistryClient('https://r.example', session=session).versions('ghost')

    def test_server_error(self):
        session = MagicMock()
        session.get.return_value = _response(status=500, text='boom')
        with pytest.raises(RegistryError, match='500'):
            RegistryClient('https://r.example', session=session).versions('null')

    def test_connection_error(self):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.ConnectionError('refused')
        with pytest.raises(RegistryError, match='Cannot connect'):
            RegistryClient('https://r.example', session=session).versions('null')

    def test_timeout(self):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.Timeout()
        with pytest.raises(RegistryError, match='Timeout'):
            RegistryClient('https://r.example', session=session).versions('null')

    def test_invalid_json(self):
        session = MagicMock()
        session.get.return_value = _response(payload=ValueError('not json'))
        with pytest.raises(RegistryError, match='Invalid JSON'):
            RegistryClient('https://r.example', session=session).versions('null')

    def test_available_versions(self):
        session = MagicMock()
        session.get.return_value = _response(payload={'versions': [{'version': '2.0.0'}]})
        result = RegistryClient('https://r.example', session=session).available_versions(['a', 'b'])
        assert result == {'a': {'2.0.0': []}, 'b': {'2.0.0': []}}


class TestLocalPluginSource:
    """Tests for LocalPluginSource."""

    def test_lists_installed_versions(self, registry):
        result = LocalPluginSource(registry).available_versions(['fake', 'null'])
        assert sorted(result['fake']) == ['1.0.0', '1.1.0']
        assert list(result['null']) == ['3.2.1']
        assert result['null']['3.2.1'][0].startswith('sha256:')

    def test_unknown_provider_has_no_versions(self, registry):
        assert LocalPluginSource(registry).available_versions(['ghost']) == {'ghost': {}}
