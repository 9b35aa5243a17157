#!/usr/bin/env python3
"""Tests for common.py - shared value helpers.

Tests verify:
1. Address splitting and instance addresses
2. Reference parsing and module prefixes
3. UNKNOWN handling in substitute/lookup_path
4. call_with_timeout and call_provider behavior
"""

import copy
import time

import pytest

from common import (
    UNKNOWN,
    Reference,
    base_address,
    call_provider,
    call_with_timeout,
    contains_unknown,
    default_provider_for_type,
    instance_address,
    instance_key,
    lookup_path,
    provider_address,
    provider_name,
    split_address,
    substitute,
    walk_references,
)
from errors import ConfigurationError, OperationTimeout, ProviderError, ResourceNotFound


class TestAddresses:
    """Test address helpers."""

    def test_split_ignores_dots_in_brackets(self):
        assert split_address('fake_thing.a["x.y"].id') == ['fake_thing', 'a["x.y"]', 'id']

    def test_split_rejects_empty_part(self):
        with pytest.raises(ConfigurationError):
            split_address('fake_thing..id')

    def test_instance_address(self):
        assert instance_address('random_id.a') == 'random_id.a'
        assert instance_address('random_id.a', 2) == 'random_id.a[2]'
        assert instance_address('random_id.a', 'eu') == 'random_id.a["eu"]'

    def test_instance_key(self):
        assert instance_key('random_id.a[2]') == 2
        assert instance_key('random_id.a["eu"]') == 'eu'

    def test_base_address(self):
        assert base_address('random_id.a["eu"]') == 'random_id.a'
        assert base_address('random_id.a') == 'random_id.a'

    def test_provider_addresses(self):
        assert provider_address('http') == 'provider.http'
        assert provider_address('http', 'west') == 'provider.http.west'
        assert provider_name('provider.http.west') == 'http'
        assert default_provider_for_type('random_id') == 'provider.random'


class TestReference:
    """Test Reference parsing."""

    def test_parse(self):
        ref = Reference.parse('random_id.a.hex')
        assert ref.address == 'random_id.a'
        assert ref.path == ('hex',)

    def test_parse_nested_path_and_module(self):
        ref = Reference.parse('module.net.random_id.a[0].tags.Name')
        assert ref.address == 'module.net.random_id.a[0]'
        assert ref.attribute == 'tags.Name'

    def test_missing_attribute(self):
        with pytest.raises(ConfigurationError, match='expected'):
            Reference.parse('random_id.a')

    def test_provider_reference_rejected(self):
        with pytest.raises(ConfigurationError):
            Reference.parse('provider.http.url')

    def test_with_prefix(self):
        ref = Reference.parse('random_id.a.hex').with_prefix('module.net')
        assert str(ref) == 'module.net.random_id.a.hex'
        absolute = Reference.parse('module.db.random_id.a.hex')
        assert absolute.with_prefix('module.net') is absolute


class TestUnknown:
    """UNKNOWN is a singleton that survives copying."""

    def test_copy_keeps_identity(self):
        assert copy.deepcopy({'x': [UNKNOWN]})['x'][0] is UNKNOWN

    def test_contains_unknown(self):
        assert contains_unknown({'a': [1, {'b': UNKNOWN}]})
        assert not contains_unknown({'a': [1, None]})

    def test_substitute_and_walk(self):
        value = {'a': Reference.parse('x_y.z.id'), 'b': [1, Reference.parse('x_y.w.id')]}
        assert [str(r) for r in walk_references(value)] == ['x_y.z.id', 'x_y.w.id']
        assert substitute(value, lambda ref: ref.address) == {'a': 'x_y.z', 'b': [1, 'x_y.w']}


class TestLookupPath:
    """Test lookup_path."""

    def test_nested(self):
        assert lookup_path({'tags': {'Name': 'web'}}, ('tags', 'Name')) == 'web'

    def test_list_index(self):
        assert lookup_path({'ips': ['a', 'b']}, ('ips', '1')) == 'b'

    def test_missing_complete(self):
        assert lookup_path({}, ('id',)) is None

    def test_missing_incomplete_is_unknown(self):
        assert lookup_path({}, ('id',), complete=False) is UNKNOWN

    def test_through_unknown(self):
        assert lookup_path({'tags': UNKNOWN}, ('tags', 'Name')) is UNKNOWN


class TestCallWithTimeout:
    """Test call_with_timeout."""

    def test_no_timeout_calls_directly(self):
        assert call_with_timeout(lambda x: x * 2, None, 4) == 8

    def test_returns_value(self):
        assert call_with_timeout(lambda: 'ok', 1.0) == 'ok'

    def test_reraises_error(self):
        def boom():
            raise KeyError('x')

        with pytest.raises(KeyError):
            call_with_timeout(boom, 1.0)

    def test_timeout(self):
        with pytest.raises(OperationTimeout) as exc_info:
            call_with_timeout(time.sleep, 0.05, 1, operation='create random_id.a')
        assert exc_info.value.operation == 'create random_id.a'
        assert 'outcome unknown' in str(exc_info.value)


class TestCallProvider:
    """Test call_provider."""

    def test_plugin_exception_becomes_provider_error(self):
        def boom(attrs):
            raise KeyError('id')

        with pytest.raises(ProviderError, match="read fake_thing.a: KeyError"):
            call_provider('read', 'fake_thing.a', boom, {})

    def test_engine_errors_pass_through(self):
        def gone(attrs):
            raise ResourceNotFound('gone')

        with pytest.raises(ResourceNotFound):
            call_provider('read', 'fake_thing.a', gone, {}, timeout=1.0)

    def test_timeout_applies(self):
        with pytest.raises(OperationTimeout):
            call_provider('read', 'fake_thing.a', time.sleep, 1, timeout=0.05)
