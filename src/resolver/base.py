"""Provider version selection.

For each provider the available versions are filtered to those satisfying
its constraint set, then:

1. The locked version is kept when it still satisfies, is still available
   and no upgrade was requested (stability over recency).
2. Otherwise the greatest satisfying version is selected.

Providers are resolved independently; there is no cross-provider coupling.
"""

import logging
from typing import Iterable, Mapping, Optional, Union

from errors import ChecksumMismatch, ConstraintUnsatisfiable
from resolver.lock import LockEntry
from resolver.version import ConstraintSet, Version

logger = logging.getLogger(__name__)

# Either an ordered collection of versions or version -> checksums
AvailableVersions = Union[Iterable[Union[str, Version]], Mapping[Union[str, Version], Iterable[str]]]


def _normalize(available: AvailableVersions) -> dict[Version, list[str]]:
    """Map parsed versions to their checksum lists."""
    if isinstance(available, Mapping):
        return {Version.parse(v): sorted(set(sums or [])) for v, sums in available.items()}
    return {Version.parse(v): [] for v in available}


def select_version(
    provider: str,
    constraints: ConstraintSet,
    versions: Iterable[Version],
    locked: Optional[Version] = None,
    upgrade: bool = False,
) -> Version:
    """Pick one version for a provider.

    Raises:
        ConstraintUnsatisfiable: If no available version satisfies
    """
    candidates = constraints.filter(versions)
    if not candidates:
        reason = 'no versions available' if not list(versions) else ''
        raise ConstraintUnsatisfiable(
            provider, [str(c) for c in constraints.constraints], reason)

    if locked is not None and not upgrade and locked in candidates:
        logger.debug(f"Keeping locked {provider} {locked}")
        return locked

    if locked is not None and not upgrade:
        logger.info(f"Locked {provider} {locked} no longer satisfies '{constraints}'; re-selecting")
    return candidates[-1]


def resolve(
    constraint_sets: Mapping[str, Union[ConstraintSet, str, list]],
    available: Mapping[str, AvailableVersions],
    existing_lock: Optional[Mapping[str, LockEntry]] = None,
    upgrade: bool = False,
) -> dict[str, LockEntry]:
    """Resolve every provider's constraint set to a LockEntry.

    Args:
        constraint_sets: Provider name -> ConstraintSet (or constraint text)
        available: Provider name -> versions, or versions -> checksums
        existing_lock: Previously resolved entries
        upgrade: Ignore locked versions and select the newest

    Returns:
        Provider name -> LockEntry, sorted by provider name

    Raises:
        ConstraintUnsatisfiable: Some provider has no satisfying version
        ChecksumMismatch: A kept locked version's checksums disagree with the source
    """
    existing_lock = existing_lock or {}
    entries: dict[str, LockEntry] = {}

    for provider in sorted(constraint_sets):
        constraints = constraint_sets[provider]
        if not isinstance(constraints, ConstraintSet):
            constraints = ConstraintSet.parse(constraints)

        pool = _normalize(available.get(provider, []))
        prior = existing_lock.get(provider)
        locked = prior.version if prior is not None else None

        version = select_version(provider, constraints, list(pool), locked, upgrade)
        checksums = list(pool.get(version, []))

        if prior is not None and prior.version == version:
            if prior.checksums and checksums and not set(prior.checksums) & set(checksums):
                raise ChecksumMismatch(provider, str(version))
            checksums = sorted(set(prior.checksums) | set(checksums))

        entries[provider] = LockEntry(
            provider=provider,
            version=version,
            constraints=str(constraints),
            checksums=checksums,
        )
        logger.debug(f"Resolved {provider} -> {version}")

    return entries
