"""Tests for plan/apply cycle orchestration and refresh."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from config import EngineConfig
from engine.orchestrator import Orchestrator
from engine.plan import Action
from engine.refresh import Refresher
from engine.state import StateStore
from errors import AlreadyLocked, ConstraintUnsatisfiable, ProviderError
from helpers import make_config, record, seed, thing
from resolver.lock import LockEntry


@pytest.fixture
def orchestrator(tmp_path, registry, store):
    config = EngineConfig(workdir=tmp_path, refresh=False)
    return Orchestrator(config, registry=registry, store=store)


class TestCycle:
    """Plan and apply cycles."""

    def test_apply_creates_and_locks_providers(self, orchestrator, store, cloud):
        configuration = make_config(thing('a'), thing('b', parent={'$ref': 'fake_thing.a.id'}))
        result = orchestrator.apply(configuration=configuration)

        assert result.success
        assert sorted(store.addresses()) == ['fake_thing.a', 'fake_thing.b']
        assert str(orchestrator.lock_file.load()['fake'].version) == '1.1.0'
        assert str(store.providers()['fake'].version) == '1.1.0'
        assert store.lock_info() is None

    def test_plan_does_not_touch_objects(self, orchestrator, store, cloud):
        result = orchestrator.plan(configuration=make_config(thing('a')))

        assert result.plan.has_changes
        assert result.plan.nodes['fake_thing.a'].action == Action.CREATE
        assert result.plan.state_serial == store.serial
        assert cloud.calls == []
        assert store.addresses() == []

    def test_already_locked(self, orchestrator, store, cloud):
        with store.begin_transaction('apply'):
            with pytest.raises(AlreadyLocked):
                orchestrator.apply(configuration=make_config(thing('a')))
        assert cloud.calls == []

    def test_concurrent_applies(self, tmp_path, registry, cloud):
        """Second apply on the same state fails fast; the first completes."""
        state_path = tmp_path / '.landform' / 'state.json'
        config = EngineConfig(workdir=tmp_path, refresh=False)
        first = Orchestrator(config, registry=registry, store=StateStore(state_path))
        second = Orchestrator(config, registry=registry, store=StateStore(state_path))
        configuration = make_config(thing('a'), thing('b'))

        locked = threading.Event()
        released = threading.Event()
        results = {}

        def hold(plan):
            locked.set()
            return released.wait(5)

        def run_first():
            results['first'] = first.apply(configuration=configuration, confirm=hold)

        worker = threading.Thread(target=run_first)
        worker.start()
        try:
            assert locked.wait(5)
            with pytest.raises(AlreadyLocked) as exc_info:
                second.apply(configuration=configuration)
            assert exc_info.value.code == 'E401'
        finally:
            released.set()
            worker.join(10)

        assert results['first'].success
        assert sorted(results['first'].report.applied) == ['fake_thing.a', 'fake_thing.b']
        assert sorted(cloud.ops('create')) == ['a', 'b']
        assert StateStore(state_path).addresses() == ['fake_thing.a', 'fake_thing.b']
        assert StateStore(state_path).lock_info() is None

    def test_confirmation_declined(self, orchestrator, store, cloud):
        result = orchestrator.apply(configuration=make_config(thing('a')), confirm=lambda plan: False)

        assert not result.confirmed
        assert not result.success
        assert result.report is None
        assert cloud.calls == []
        assert store.addresses() == []

    def test_no_changes_skips_confirmation(self, orchestrator):
        configuration = make_config(thing('a'))
        orchestrator.apply(configuration=configuration)

        confirm = MagicMock(return_value=True)
        result = orchestrator.apply(configuration=configuration, confirm=confirm)

        confirm.assert_not_called()
        assert result.success
        assert result.report.outcomes == []

    def test_outcome_callback(self, orchestrator):
        seen = []
        orchestrator.apply(configuration=make_config(thing('a')), on_outcome=seen.append)
        assert 'fake_thing.a' in [o.key for o in seen]

    def test_destroy(self, orchestrator, store, cloud):
        configuration = make_config(thing('a'))
        orchestrator.apply(configuration=configuration)

        result = orchestrator.apply(configuration=configuration, destroy=True)

        assert result.success
        assert store.addresses() == []
        assert cloud.objects == {}

    def test_cancel_before_apply(self, orchestrator, store):
        orchestrator.cancel()
        result = orchestrator.apply(configuration=make_config(thing('a')))

        assert result.report.interrupted
        assert result.report.cancelled == ['fake_thing.a']
        assert store.addresses() == []

    def test_load_configuration_from_workdir(self, tmp_path, registry, store):
        (tmp_path / 'main.yaml').write_text(
            "resources:\n"
            "  - type: fake_thing\n"
            "    name: a\n"
            "    attributes:\n"
            "      name: a\n")
        orchestrator = Orchestrator(EngineConfig(workdir=tmp_path, refresh=False), registry=registry, store=store)

        result = orchestrator.plan()
        assert sorted(result.plan.nodes) == ['fake_thing.a', 'provider.fake']


class TestProviderLocking:
    """Version resolution within a cycle."""

    def test_lock_file_pins_version(self, orchestrator, store):
        orchestrator.lock_file.save({'fake': LockEntry('fake', '1.0.0')})
        orchestrator.apply(configuration=make_config(thing('a')))
        assert store.get('fake_thing.a').provider_version == '1.0.0'

    def test_upgrade_selects_newest(self, orchestrator):
        orchestrator.lock_file.save({'fake': LockEntry('fake', '1.0.0')})
        entries = orchestrator.lock_providers(make_config(thing('a')), upgrade=True)
        assert str(entries['fake'].version) == '1.1.0'
        assert str(orchestrator.lock_file.load()['fake'].version) == '1.1.0'

    def test_required_version_constraint(self, orchestrator):
        configuration = make_config(thing('a'), required_providers={'fake': {'version': '~> 1.0.0'}})
        entries = orchestrator.lock_providers(configuration)
        assert str(entries['fake'].version) == '1.0.0'

    def test_unsatisfiable_constraint(self, orchestrator, store):
        configuration = make_config(thing('a'), required_providers={'fake': {'version': '>= 2.0'}})
        with pytest.raises(ConstraintUnsatisfiable):
            orchestrator.apply(configuration=configuration)
        assert store.lock_info() is None

    def test_state_only_provider_resolved(self, orchestrator, store):
        seed(store, record('null_resource.old', {'triggers': {}}))
        entries = orchestrator.lock_providers(make_config())
        assert 'null' in entries


class TestRefresh:
    """Refresh before planning."""

    @pytest.fixture
    def drifted(self, orchestrator, store, cloud):
        """Applied fake_thing.a whose live size has drifted to 5."""
        configuration = make_config(thing('a', size=1))
        orchestrator.apply(configuration=configuration)
        cloud.objects[store.get('fake_thing.a').attributes['id']]['size'] = 5
        return configuration

    def test_plan_diffs_against_drift(self, orchestrator, store, drifted):
        serial = store.serial

        result = orchestrator.plan(configuration=drifted, refresh=True)

        assert result.refresh.drifted == ['fake_thing.a']
        node = result.plan.nodes['fake_thing.a']
        assert node.action == Action.UPDATE
        assert [(c.before, c.after) for c in node.changes] == [(5, 1)]
        assert store.get('fake_thing.a').attributes['size'] == 1
        assert store.serial == serial

    def test_apply_persists_drift_then_converges(self, orchestrator, store, cloud, drifted):
        result = orchestrator.apply(configuration=drifted, refresh=True)

        assert result.success
        assert cloud.ops('update') == ['a']
        record = store.get('fake_thing.a')
        assert record.attributes['size'] == 1
        assert record.serial == 3

    def test_plan_keeps_record_of_deleted_object(self, orchestrator, store, cloud):
        configuration = make_config(thing('a'))
        orchestrator.apply(configuration=configuration)
        cloud.objects.clear()

        result = orchestrator.plan(configuration=configuration, refresh=True)

        assert result.refresh.removed == ['fake_thing.a']
        assert result.plan.nodes['fake_thing.a'].action == Action.CREATE
        assert store.addresses() == ['fake_thing.a']

    def test_apply_recreates_deleted_object(self, orchestrator, store, cloud):
        configuration = make_config(thing('a'))
        orchestrator.apply(configuration=configuration)
        cloud.objects.clear()

        result = orchestrator.apply(configuration=configuration, refresh=True)

        assert result.success
        assert cloud.ops('create') == ['a', 'a']
        assert store.get('fake_thing.a').serial == 1
        assert len(cloud.objects) == 1

    def test_refresh_setting_default(self, tmp_path, registry, store, cloud):
        orchestrator = Orchestrator(EngineConfig(workdir=tmp_path), registry=registry, store=store)
        configuration = make_config(thing('a'))
        orchestrator.apply(configuration=configuration)
        cloud.objects.clear()

        result = orchestrator.plan(configuration=configuration)
        assert result.refresh is not None
        assert result.refresh.removed == ['fake_thing.a']

    def test_read_error_recorded(self, store, providers):
        seed(store, record('fake_thing.a', {'name': 'a', 'id': 'x'}))
        providers.resource('provider.fake', 'fake_thing').read = MagicMock(
            side_effect=ProviderError('api down'))

        with store.begin_transaction() as lock:
            result = Refresher(store, providers).refresh(lock, persist=True)

        assert 'fake_thing.a' in result.errors
        assert store.get('fake_thing.a') is not None

    def test_plugin_exception_recorded(self, store, providers):
        seed(store, record('fake_thing.a', {'name': 'a', 'id': 'x'}))
        providers.resource('provider.fake', 'fake_thing').read = MagicMock(side_effect=KeyError('boom'))

        with store.begin_transaction() as lock:
            result = Refresher(store, providers).refresh(lock)

        assert 'KeyError' in result.errors['fake_thing.a']
        assert result.snapshot['fake_thing.a'].attributes == {'name': 'a', 'id': 'x'}

    def test_read_timeout_recorded(self, store, providers):
        seed(store, record('fake_thing.a', {'name': 'a', 'id': 'x'}))
        providers.resource('provider.fake', 'fake_thing').read = MagicMock(
            side_effect=lambda attrs: time.sleep(1))

        with store.begin_transaction() as lock:
            result = Refresher(store, providers, operation_timeout=0.05).refresh(lock)

        assert 'E303' in result.errors['fake_thing.a']

    def test_unchanged(self, orchestrator, store):
        configuration = make_config(thing('a'))
        orchestrator.apply(configuration=configuration)
        result = orchestrator.plan(configuration=configuration, refresh=True)
        assert result.refresh.unchanged == ['fake_thing.a']
        assert not result.refresh.changed
        assert not result.plan.has_changes
