"""Semantic versions and version constraints.

Version ordering: major.minor.patch, then pre-release (a pre-release sorts
before its release). Build metadata is ignored for ordering.

Constraint operators: =, !=, >, >=, <, <=, ~> (pessimistic).
~> bounds the version to the same major.minor when two or three components
are given, and to the same major when only one is given:

    ~> 1.2.3  ->  >= 1.2.3, < 1.3.0
    ~> 1.2    ->  >= 1.2.0, < 1.3.0
    ~> 1      ->  >= 1.0.0, < 2.0.0
"""

import functools
import re
from dataclasses import dataclass, field
from typing import Iterable, Union

from errors import InvalidConstraint, InvalidVersion

_VERSION_RE = re.compile(
    r'^v?(?P<major>\d+)(?:\.(?P<minor>\d+))?(?:\.(?P<patch>\d+))?'
    r'(?:-(?P<pre>[0-9A-Za-z.-]+))?(?:\+(?P<build>[0-9A-Za-z.-]+))?$'
)
_CONSTRAINT_RE = re.compile(r'^\s*(?P<op>~>|>=|<=|!=|=|>|<)?\s*(?P<version>\S+)\s*$')

OPERATORS = ('=', '!=', '>', '>=', '<', '<=', '~>')


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """A semantic version.

    Attributes:
        major, minor, patch: Numeric components
        prerelease: Dot-separated pre-release identifiers
        build: Build metadata (ignored for ordering)
        precision: Number of numeric components written in the source text
    """
    major: int
    minor: int = 0
    patch: int = 0
    prerelease: tuple[str, ...] = ()
    build: str = ''
    precision: int = 3

    @classmethod
    def parse(cls, text: Union[str, 'Version']) -> 'Version':
        """Parse a version literal.

        Raises:
            InvalidVersion: If text is not a version
        """
        if isinstance(text, Version):
            return text
        match = _VERSION_RE.match(str(text).strip())
        if not match:
            raise InvalidVersion(str(text))
        precision = 1 + (match['minor'] is not None) + (match['patch'] is not None)
        prerelease = tuple(match['pre'].split('.')) if match['pre'] else ()
        if prerelease and any(not p for p in prerelease):
            raise InvalidVersion(str(text))
        return cls(
            major=int(match['major']),
            minor=int(match['minor'] or 0),
            patch=int(match['patch'] or 0),
            prerelease=prerelease,
            build=match['build'] or '',
            precision=precision,
        )

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    def _key(self) -> tuple:
        if not self.prerelease:
            pre: tuple = (1,)
        else:
            pre = (0, tuple(
                (0, int(p), '') if p.isdigit() else (1, 0, p)
                for p in self.prerelease
            ))
        return (self.major, self.minor, self.patch, pre)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() < other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def format(self, precision: int = 3) -> str:
        """Render with the given number of numeric components."""
        text = '.'.join(str(c) for c in (self.major, self.minor, self.patch)[:precision])
        if self.prerelease:
            text += '-' + '.'.join(self.prerelease)
        return text

    def __str__(self) -> str:
        text = self.format()
        if self.build:
            text += f'+{self.build}'
        return text

    def __repr__(self) -> str:
        return f"Version('{self}')"


@dataclass(frozen=True)
class Constraint:
    """A single operator + version constraint."""
    operator: str
    version: Version

    @classmethod
    def parse(cls, text: str) -> 'Constraint':
        """Parse '>= 1.2.0', '~> 1.2', '1.0.0' (bare version means =).

        Raises:
            InvalidConstraint: If text is not a constraint
        """
        match = _CONSTRAINT_RE.match(text)
        if not match:
            raise InvalidConstraint(text)
        try:
            version = Version.parse(match['version'])
        except InvalidVersion:
            raise InvalidConstraint(text)
        return cls(operator=match['op'] or '=', version=version)

    def upper_bound(self) -> Version:
        """Exclusive upper bound of a ~> constraint."""
        v = self.version
        if v.precision == 1:
            return Version(v.major + 1, 0, 0)
        return Version(v.major, v.minor + 1, 0)

    def allows(self, version: Version) -> bool:
        op = self.operator
        if op == '=':
            return version == self.version
        if op == '!=':
            return version != self.version
        if op == '>':
            return version > self.version
        if op == '>=':
            return version >= self.version
        if op == '<':
            return version < self.version
        if op == '<=':
            return version <= self.version
        # ~>
        return self.version <= version < self.upper_bound()

    def __str__(self) -> str:
        return f'{self.operator} {self.version.format(self.version.precision)}'


@dataclass
class ConstraintSet:
    """Conjunction of constraints declared for one provider."""
    constraints: list[Constraint] = field(default_factory=list)

    @classmethod
    def parse(cls, spec: Union[str, Iterable[str], None]) -> 'ConstraintSet':
        """Parse '>= 2.0.0, < 3.0.0' or a list of such strings."""
        if spec is None:
            return cls()
        if isinstance(spec, str):
            items = [spec]
        else:
            items = list(spec)
        constraints: list[Constraint] = []
        for item in items:
            for part in str(item).split(','):
                if not part.strip():
                    continue
                constraint = Constraint.parse(part)
                if constraint not in constraints:
                    constraints.append(constraint)
        return cls(constraints)

    def merge(self, other: 'ConstraintSet') -> 'ConstraintSet':
        """Conjunction of both sets (duplicates dropped, order kept)."""
        merged = list(self.constraints)
        for c in other.constraints:
            if c not in merged:
                merged.append(c)
        return ConstraintSet(merged)

    def allows(self, version: Version) -> bool:
        """True if version satisfies every constraint.

        Pre-releases are only admitted when named exactly by an = constraint.
        """
        if version.is_prerelease and not any(
                c.operator == '=' and c.version == version for c in self.constraints):
            return False
        return all(c.allows(version) for c in self.constraints)

    def filter(self, versions: Iterable[Version]) -> list[Version]:
        """Satisfying versions, ascending."""
        return sorted(v for v in versions if self.allows(v))

    def __bool__(self) -> bool:
        return bool(self.constraints)

    def __str__(self) -> str:
        return ', '.join(str(c) for c in self.constraints)
