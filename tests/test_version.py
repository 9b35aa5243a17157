"""Tests for version parsing, ordering and constraints."""

import pytest

from errors import InvalidConstraint, InvalidVersion
from resolver.version import Constraint, ConstraintSet, Version


def v(text):
    return Version.parse(text)


class TestVersionParse:
    """Tests for Version.parse."""

    def test_full_version(self):
        version = v('1.2.3')
        assert (version.major, version.minor, version.patch) == (1, 2, 3)
        assert version.prerelease == ()

    def test_missing_components_default_to_zero(self):
        assert v('2') == v('2.0.0')
        assert v('2.1') == v('2.1.0')

    def test_prerelease_and_build(self):
        version = v('1.0.0-beta.2+build.7')
        assert version.prerelease == ('beta', '2')
        assert version.build == 'build.7'
        assert version.is_prerelease

    def test_leading_v_accepted(self):
        assert v('v1.4.0') == v('1.4.0')

    @pytest.mark.parametrize('text', ['', 'abc', '1.2.3.4', '1..2', '1.0.0-', '1.0.0-a..b'])
    def test_invalid(self, text):
        with pytest.raises(InvalidVersion):
            Version.parse(text)

    def test_str_round_trip(self):
        assert str(v('1.2.3-rc.1+abc')) == '1.2.3-rc.1+abc'
        assert str(v('1.2')) == '1.2.0'


class TestVersionOrdering:
    """Semantic-version ordering rules."""

    def test_numeric_components(self):
        assert v('1.2.10') > v('1.2.9')
        assert v('1.10.0') > v('1.9.9')
        assert v('2.0.0') > v('1.99.99')

    def test_prerelease_before_release(self):
        assert v('1.0.0-alpha') < v('1.0.0')

    def test_prerelease_identifier_order(self):
        ordered = ['1.0.0-alpha', '1.0.0-alpha.1', '1.0.0-alpha.beta', '1.0.0-beta',
                   '1.0.0-beta.2', '1.0.0-beta.11', '1.0.0-rc.1', '1.0.0']
        versions = [v(t) for t in ordered]
        assert sorted(reversed(versions)) == versions

    def test_build_metadata_ignored(self):
        assert v('1.0.0+a') == v('1.0.0+b')
        assert hash(v('1.0.0+a')) == hash(v('1.0.0'))


class TestConstraint:
    """Tests for single constraints."""

    def test_bare_version_means_equal(self):
        c = Constraint.parse('1.2.0')
        assert c.operator == '='
        assert c.allows(v('1.2.0'))
        assert not c.allows(v('1.2.1'))

    @pytest.mark.parametrize('text,yes,no', [
        ('!= 1.0.0', '1.0.1', '1.0.0'),
        ('> 1.0.0', '1.0.1', '1.0.0'),
        ('>= 1.0.0', '1.0.0', '0.9.9'),
        ('< 2.0.0', '1.9.9', '2.0.0'),
        ('<= 2.0.0', '2.0.0', '2.0.1'),
    ])
    def test_operators(self, text, yes, no):
        c = Constraint.parse(text)
        assert c.allows(v(yes))
        assert not c.allows(v(no))

    def test_pessimistic_two_components(self):
        c = Constraint.parse('~> 1.2')
        assert c.allows(v('1.2.0'))
        assert c.allows(v('1.2.99'))
        assert not c.allows(v('1.3.0'))
        assert not c.allows(v('1.1.9'))

    def test_pessimistic_three_components(self):
        c = Constraint.parse('~> 1.2.3')
        assert c.allows(v('1.2.3'))
        assert c.allows(v('1.2.9'))
        assert not c.allows(v('1.2.2'))
        assert not c.allows(v('1.3.0'))

    def test_pessimistic_one_component(self):
        c = Constraint.parse('~> 1')
        assert c.allows(v('1.9.0'))
        assert not c.allows(v('2.0.0'))

    @pytest.mark.parametrize('text', ['>>= 1.0', '~> x', '>= ', '=> 1.0.0'])
    def test_invalid(self, text):
        with pytest.raises(InvalidConstraint):
            Constraint.parse(text)

    def test_str(self):
        assert str(Constraint.parse('~>1.2')) == '~> 1.2'


class TestConstraintSet:
    """Tests for constraint conjunctions."""

    def test_range(self):
        cs = ConstraintSet.parse('>= 2.0.0, < 3.0.0')
        assert cs.allows(v('2.9.9'))
        assert cs.allows(v('2.0.0'))
        assert not cs.allows(v('3.0.0'))
        assert not cs.allows(v('1.9.9'))

    def test_empty_allows_any_release(self):
        cs = ConstraintSet.parse(None)
        assert not cs
        assert cs.allows(v('0.0.1'))

    def test_prerelease_filtered_unless_named_exactly(self):
        assert not ConstraintSet.parse('>= 1.0.0').allows(v('2.0.0-rc.1'))
        assert ConstraintSet.parse('= 2.0.0-rc.1').allows(v('2.0.0-rc.1'))

    def test_merge_drops_duplicates(self):
        merged = ConstraintSet.parse('>= 1.0').merge(ConstraintSet.parse(['>= 1.0', '< 2.0']))
        assert str(merged) == '>= 1.0, < 2.0'

    def test_filter_ascending(self):
        cs = ConstraintSet.parse('~> 1.2')
        result = cs.filter([v('1.3.0'), v('1.2.5'), v('1.2.0'), v('1.1.0')])
        assert result == [v('1.2.0'), v('1.2.5')]
