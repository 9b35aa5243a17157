"""Provider version resolution and the provider lock file."""

from resolver.base import resolve, select_version
from resolver.lock import LockEntry, LockFile
from resolver.registry import LocalPluginSource, RegistryClient
from resolver.version import Constraint, ConstraintSet, Version

__all__ = [
    "resolve",
    "select_version",
    "LockEntry",
    "LockFile",
    "LocalPluginSource",
    "RegistryClient",
    "Constraint",
    "ConstraintSet",
    "Version",
]
