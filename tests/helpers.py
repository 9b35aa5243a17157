"""Test doubles and builders shared by the test modules."""

import threading
import time

from configuration import Configuration
from engine.state import StateRecord, StateStore
from errors import ProviderError, ResourceNotFound
from providers.base import ProviderPlugin, Resource, ResourceSchema

class FakeCloud:
    """In-memory backend shared by every FakePlugin instance of a test.

    Objects are keyed by id. Calls are recorded as (operation, name) where
    name is the object's 'name' attribute.

    Attributes:
        fail: {(operation, name)} pairs that raise ProviderError
        delays: name -> seconds to sleep inside create/update/delete
    """

    def __init__(self):
        self.objects: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.configured: list[dict] = []
        self.fail: set[tuple[str, str]] = set()
        self.delays: dict[str, float] = {}
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self._counter = 0

    def _enter(self, op: str, attrs: dict) -> str:
        name = str(attrs.get('name', '?'))
        with self._lock:
            self.calls.append((op, name))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if name in self.delays:
                time.sleep(self.delays[name])
            if (op, name) in self.fail:
                raise ProviderError(f"{op} {name} failed")
        except BaseException:
            self._exit()
            raise
        return name

    def _exit(self) -> None:
        with self._lock:
            self.active -= 1

    def next_id(self) -> str:
        with self._lock:
            self._counter += 1
            return f'id-{self._counter}'

    def ops(self, op: str) -> list[str]:
        return [name for o, name in self.calls if o == op]

class FakeThing(Resource):
    """name and zone force replacement; size and tags update in place."""

    schema = ResourceSchema(
        force_new=frozenset({'name', 'zone'}),
        computed=frozenset({'id', 'arn'}),
    )

    @property
    def cloud(self) -> FakeCloud:
        return self.plugin.cloud

    def create(self, attrs: dict) -> tuple[dict, str]:
        self.cloud._enter('create', attrs)
        try:
            object_id = self.cloud.next_id()
            result = {**attrs, 'id': object_id, 'arn': f"arn:{attrs.get('name')}"}
            self.cloud.objects[object_id] = dict(result)
            return result, object_id
        finally:
            self.cloud._exit()

    def read(self, attrs: dict) -> dict:
        current = self.cloud.objects.get(attrs.get('id'))
        if current is None:
            raise ResourceNotFound(f"{attrs.get('name')} not found")
        return dict(current)

    def update(self, old: dict, new: dict) -> dict:
        self.cloud._enter('update', new)
        try:
            result = self.keep_computed(old, new)
            self.cloud.objects[result['id']] = dict(result)
            return result
        finally:
            self.cloud._exit()

    def delete(self, attrs: dict) -> None:
        self.cloud._enter('delete', attrs)
        try:
            if attrs.get('id') not in self.cloud.objects:
                raise ResourceNotFound(f"{attrs.get('name')} not found")
            del self.cloud.objects[attrs['id']]
        finally:
            self.cloud._exit()

class FakePlugin(ProviderPlugin):
    name = 'fake'
    version = '1.0.0'
    resources = {'fake_thing': FakeThing}

    def __init__(self, cloud: FakeCloud):
        super().__init__()
        self.cloud = cloud

    def configure(self, attrs: dict) -> None:
        super().configure(attrs)
        self.cloud.configured.append(dict(attrs))

def thing(name: str, **attrs) -> dict:
    """Resource entry for a fake_thing document."""
    extra = {k: v for k, v in attrs.items() if k in ('count', 'for_each', 'lifecycle', 'depends_on', 'provider')}
    values = {k: v for k, v in attrs.items() if k not in extra}
    return {'type': 'fake_thing', 'name': name, 'attributes': {'name': name, **values}, **extra}

def make_config(*resources, **extra) -> Configuration:
    return Configuration.from_dict({'resources': list(resources), **extra})

def record(address: str, attributes: dict, serial: int = 1, **kwargs) -> StateRecord:
    type_name = address.split('.')[0]
    return StateRecord(
        address=address,
        type=kwargs.pop('type', type_name),
        provider=kwargs.pop('provider', f"provider.{type_name.split('_')[0]}"),
        serial=serial,
        attributes=attributes,
        **kwargs,
    )

def seed(store: StateStore, *records: StateRecord) -> None:
    """Write records into a store (serials start at 1)."""
    with store.begin_transaction('seed') as lock:
        for rec in records:
            store.write(rec.address, rec, 0, lock)

