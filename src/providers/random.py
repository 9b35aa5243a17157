"""random provider: random values kept stable in state.

Every input forces a new value; the generated value lives in state and is
only regenerated on replacement.
"""

import base64
import random as _random
import secrets

from errors import ProviderError
from providers.base import ProviderPlugin, Resource, ResourceSchema


class RandomId(Resource):
    """Random bytes rendered as hex, base64url and decimal."""

    schema = ResourceSchema(
        force_new=frozenset({'byte_length', 'prefix', 'keepers'}),
        mutable=frozenset(),
        computed=frozenset({'hex', 'b64_url', 'dec', 'id'}),
    )

    def create(self, attrs: dict) -> tuple[dict, str]:
        length = attrs.get('byte_length')
        if isinstance(length, bool) or not isinstance(length, int) or length < 1:
            raise ProviderError(f"random_id: byte_length must be a positive integer, got {length!r}")
        prefix = attrs.get('prefix') or ''
        data = secrets.token_bytes(length)
        b64 = base64.urlsafe_b64encode(data).decode().rstrip('=')
        result = {
            **attrs,
            'hex': prefix + data.hex(),
            'b64_url': prefix + b64,
            'dec': prefix + str(int.from_bytes(data, 'big')),
            'id': b64,
        }
        return result, b64

    def read(self, attrs: dict) -> dict:
        return dict(attrs)

    def update(self, old: dict, new: dict) -> dict:
        return self.keep_computed(old, new)

    def delete(self, attrs: dict) -> None:
        return None


class RandomInteger(Resource):
    """Random integer in [min, max]."""

    schema = ResourceSchema(
        force_new=frozenset({'min', 'max', 'seed', 'keepers'}),
        mutable=frozenset(),
        computed=frozenset({'result', 'id'}),
    )

    def create(self, attrs: dict) -> tuple[dict, str]:
        low, high = attrs.get('min'), attrs.get('max')
        if not isinstance(low, int) or not isinstance(high, int) or low > high:
            raise ProviderError(f"random_integer: invalid range min={low!r} max={high!r}")
        seed = attrs.get('seed')
        rng = _random.Random(seed) if seed is not None else _random.SystemRandom()
        value = rng.randint(low, high)
        return {**attrs, 'result': value, 'id': str(value)}, str(value)

    def read(self, attrs: dict) -> dict:
        return dict(attrs)

    def update(self, old: dict, new: dict) -> dict:
        return self.keep_computed(old, new)

    def delete(self, attrs: dict) -> None:
        return None


class RandomProvider(ProviderPlugin):
    name = 'random'
    version = '3.6.0'
    resources = {
        'random_id': RandomId,
        'random_integer': RandomInteger,
    }
