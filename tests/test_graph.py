"""Tests for dependency graph construction."""

import pytest

from engine.graph import PROVIDER, GraphBuilder, find_cycle, topological_sort
from errors import AddressConflict, CycleDetected, UnresolvedReference
from helpers import make_config, record, thing


def ref(expr):
    return {'$ref': expr}


def build(configuration, snapshot=None, moved=None):
    return GraphBuilder().build(configuration, snapshot or {}, moved)


def assert_valid_order(graph):
    order = graph.topological_order()
    position = {a: i for i, a in enumerate(order)}
    for address, node in graph.nodes.items():
        for dep in node.dependencies:
            assert position[dep] < position[address], f"{dep} must precede {address}"
    return order


class TestTopologicalSort:
    """Tests for topological_sort and find_cycle."""

    def test_ties_broken_by_key(self):
        assert topological_sort({'c': [], 'a': [], 'b': []}) == ['a', 'b', 'c']

    def test_dependencies_first(self):
        assert topological_sort({'a': ['b'], 'b': ['c'], 'c': []}) == ['c', 'b', 'a']

    def test_unknown_dependencies_ignored(self):
        assert topological_sort({'a': ['zzz']}) == ['a']

    def test_cycle(self):
        with pytest.raises(CycleDetected) as exc_info:
            topological_sort({'a': ['b'], 'b': ['a'], 'c': []})
        assert exc_info.value.addresses == ['a', 'b', 'a']

    def test_find_cycle_none(self):
        assert find_cycle({'a': ['b'], 'b': []}) is None


class TestEdges:
    """Edges from references, depends_on and providers."""

    def test_reference_edge(self):
        graph = build(make_config(thing('a'), thing('b', parent=ref('fake_thing.a.id'))))
        assert graph.get('fake_thing.b').dependencies == {'fake_thing.a', 'provider.fake'}
        order = assert_valid_order(graph)
        assert order.index('fake_thing.a') < order.index('fake_thing.b')

    def test_nested_reference(self):
        graph = build(make_config(
            thing('a'),
            thing('b', tags={'owner': [ref('fake_thing.a.arn')]}),
        ))
        assert 'fake_thing.a' in graph.get('fake_thing.b').dependencies

    def test_depends_on_edge(self):
        graph = build(make_config(thing('a'), thing('b', depends_on=['fake_thing.a'])))
        assert 'fake_thing.a' in graph.get('fake_thing.b').dependencies

    def test_provider_node_and_edge(self):
        graph = build(make_config(thing('a')))
        assert graph.get('provider.fake').kind == PROVIDER
        assert 'provider.fake' in graph.get('fake_thing.a').dependencies

    def test_provider_config_references_resource(self):
        configuration = make_config(
            thing('a', provider='fake.west'),
            thing('endpoint'),
            providers=[{'name': 'fake', 'alias': 'west', 'config': {'region': ref('fake_thing.endpoint.id')}}],
        )
        graph = build(configuration)
        assert graph.get('provider.fake.west').dependencies == {'fake_thing.endpoint'}
        assert 'provider.fake.west' in graph.get('fake_thing.a').dependencies
        assert_valid_order(graph)

    def test_unresolved_reference(self):
        with pytest.raises(UnresolvedReference) as exc_info:
            build(make_config(thing('b', parent=ref('fake_thing.missing.id'))))
        assert exc_info.value.address == 'fake_thing.b'
        assert exc_info.value.target == 'fake_thing.missing'

    def test_reference_to_state_only_object(self):
        snapshot = {'fake_thing.old': record('fake_thing.old', {'id': 'x'})}
        graph = build(make_config(thing('b', parent=ref('fake_thing.old.id'))), snapshot)
        assert 'fake_thing.old' in graph.get('fake_thing.b').dependencies

    def test_cycle_detected(self):
        configuration = make_config(
            thing('a', peer=ref('fake_thing.b.id')),
            thing('b', peer=ref('fake_thing.a.id')),
        )
        with pytest.raises(CycleDetected) as exc_info:
            build(configuration)
        assert set(exc_info.value.addresses) == {'fake_thing.a', 'fake_thing.b'}


class TestExpansion:
    """Expansion instances are independent nodes."""

    def test_count_instances(self):
        graph = build(make_config(thing('a', count=3)))
        assert [n.address for n in graph.instances_of('fake_thing.a')] == [
            'fake_thing.a[0]', 'fake_thing.a[1]', 'fake_thing.a[2]']

    def test_reference_to_bare_address_depends_on_all_instances(self):
        graph = build(make_config(thing('a', count=2), thing('b', ids=ref('fake_thing.a.id'))))
        assert {'fake_thing.a[0]', 'fake_thing.a[1]'} <= graph.get('fake_thing.b').dependencies

    def test_reference_to_single_instance(self):
        graph = build(make_config(
            thing('a', for_each=['x', 'y']),
            thing('b', parent=ref('fake_thing.a["y"].id')),
        ))
        deps = graph.get('fake_thing.b').dependencies
        assert 'fake_thing.a["y"]' in deps
        assert 'fake_thing.a["x"]' not in deps

    def test_instance_order_numeric(self):
        graph = build(make_config(thing('a', count=12)))
        addresses = [n.address for n in graph.instances_of('fake_thing.a')]
        assert addresses[2] == 'fake_thing.a[2]'
        assert addresses[-1] == 'fake_thing.a[11]'


class TestOrphansAndMoves:
    """State-only objects and moved renames."""

    def test_orphan_keeps_recorded_dependencies(self):
        snapshot = {
            'fake_thing.base': record('fake_thing.base', {}),
            'fake_thing.user': record('fake_thing.user', {}, dependencies=['fake_thing.base']),
        }
        graph = build(make_config(), snapshot)
        assert graph.get('fake_thing.user').is_orphan
        assert 'fake_thing.base' in graph.get('fake_thing.user').dependencies
        assert graph.get('provider.fake') is not None

    def test_move_inherits_record(self):
        snapshot = {'fake_thing.old': record('fake_thing.old', {'name': 'x'}, serial=4)}
        graph = build(make_config(thing('new')), snapshot, {'fake_thing.old': 'fake_thing.new'})

        node = graph.get('fake_thing.new')
        assert node.prior.serial == 4
        assert node.prior.address == 'fake_thing.new'
        assert node.moved_from == 'fake_thing.old'
        assert graph.get('fake_thing.old') is None
        assert graph.moved == {'fake_thing.old': 'fake_thing.new'}

    def test_move_without_source_ignored(self):
        graph = build(make_config(thing('new')), {}, {'fake_thing.old': 'fake_thing.new'})
        assert graph.get('fake_thing.new').prior is None
        assert graph.moved == {}

    def test_move_onto_existing_record(self):
        snapshot = {
            'fake_thing.old': record('fake_thing.old', {}),
            'fake_thing.new': record('fake_thing.new', {}),
        }
        with pytest.raises(AddressConflict):
            build(make_config(thing('new')), snapshot, {'fake_thing.old': 'fake_thing.new'})

    def test_move_whole_resource_moves_instances(self):
        snapshot = {
            'fake_thing.old[0]': record('fake_thing.old[0]', {}),
            'fake_thing.old[1]': record('fake_thing.old[1]', {}),
        }
        graph = build(make_config(thing('new', count=2)), snapshot, {'fake_thing.old': 'fake_thing.new'})
        assert graph.get('fake_thing.new[0]').prior is not None
        assert graph.get('fake_thing.new[1]').moved_from == 'fake_thing.old[1]'

    def test_configuration_moved_used_by_default(self):
        configuration = make_config(thing('new'), moved=[{'from': 'fake_thing.old', 'to': 'fake_thing.new'}])
        snapshot = {'fake_thing.old': record('fake_thing.old', {})}
        graph = GraphBuilder().build(configuration, snapshot)
        assert graph.get('fake_thing.new').moved_from == 'fake_thing.old'

    def test_move_rewrites_recorded_dependencies(self):
        snapshot = {
            'fake_thing.old': record('fake_thing.old', {}),
            'fake_thing.user': record('fake_thing.user', {}, dependencies=['fake_thing.old']),
        }
        graph = build(make_config(thing('new')), snapshot, {'fake_thing.old': 'fake_thing.new'})
        assert graph.get('fake_thing.user').prior.dependencies == ['fake_thing.new']
        assert 'fake_thing.new' in graph.get('fake_thing.user').dependencies
