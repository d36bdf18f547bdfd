"""
Protocol version registry.

The registry is an immutable table built once; ``DEFAULT_REGISTRY`` is the
only process-wide instance and nothing mutates it. Callers that need a
different table (tests, migrations) construct their own and pass it in.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping

from .canonical import RULES_V1, RULES_V2, CanonicalRules
from .errors import ObsoleteProtocolVersionError, UnknownProtocolVersionError


DEFAULT_PROTOCOL_VERSION = "1.0"

_VERSION_RE = re.compile(r"^([0-9]+)\.([0-9]+)$")


class VersionStatus(str, Enum):
    CURRENT = "current"
    DEPRECATED = "deprecated"
    OBSOLETE = "obsolete"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProtocolVersionEntry:
    version: str
    status: VersionStatus


def parse_version(version: str) -> tuple[int, int] | None:
    """Return (major, minor), or None when the string is not ``major.minor``."""
    if not isinstance(version, str):
        return None
    match = _VERSION_RE.match(version)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


@dataclass(frozen=True)
class ProtocolVersionRegistry:
    """
    Immutable mapping of protocol version to status and canonicalization rules.

    Args:
        entries: Known versions and their status
        rulesets: Canonicalization ruleset per major version
        accept_unknown_minor: Report an unknown minor of a known,
            non-obsolete major as DEPRECATED instead of UNKNOWN
    """
    entries: Mapping[str, ProtocolVersionEntry]
    rulesets: Mapping[int, CanonicalRules]
    accept_unknown_minor: bool = False
    _majors: frozenset[int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for version in self.entries:
            if parse_version(version) is None:
                raise ValueError(f"Malformed protocol version in registry: {version!r}")
        object.__setattr__(self, "entries", MappingProxyType(dict(self.entries)))
        object.__setattr__(self, "rulesets", MappingProxyType(dict(self.rulesets)))
        object.__setattr__(self, "_majors", frozenset(
            parse_version(v)[0]
            for v, e in self.entries.items()
            if e.status != VersionStatus.OBSOLETE
        ))

    @classmethod
    def build(
        cls,
        entries: Iterable[tuple[str, VersionStatus]],
        rulesets: Mapping[int, CanonicalRules],
        accept_unknown_minor: bool = False,
    ) -> "ProtocolVersionRegistry":
        return cls(
            entries={v: ProtocolVersionEntry(v, s) for v, s in entries},
            rulesets=rulesets,
            accept_unknown_minor=accept_unknown_minor,
        )

    def with_policy(self, accept_unknown_minor: bool) -> "ProtocolVersionRegistry":
        """Return a copy of this registry with a different minor-version policy."""
        if accept_unknown_minor == self.accept_unknown_minor:
            return self
        return ProtocolVersionRegistry(
            entries=self.entries,
            rulesets=self.rulesets,
            accept_unknown_minor=accept_unknown_minor,
        )

    def lookup(self, version: str) -> VersionStatus:
        entry = self.entries.get(version)
        if entry is not None:
            return entry.status
        parsed = parse_version(version)
        if parsed is None:
            return VersionStatus.UNKNOWN
        if self.accept_unknown_minor and parsed[0] in self._majors and parsed[0] in self.rulesets:
            return VersionStatus.DEPRECATED
        return VersionStatus.UNKNOWN

    def require_usable(self, version: str) -> VersionStatus:
        """
        Fail closed: raise for UNKNOWN and OBSOLETE, return the status otherwise.
        """
        status = self.lookup(version)
        if status == VersionStatus.UNKNOWN:
            raise UnknownProtocolVersionError(
                f"Unknown protocol version: {version!r}",
                version=version,
            )
        if status == VersionStatus.OBSOLETE:
            raise ObsoleteProtocolVersionError(
                f"Protocol version {version} is obsolete and no longer supported",
                version=version,
            )
        return status

    def select_canonicalization(self, version: str) -> CanonicalRules:
        self.require_usable(version)
        major = parse_version(version)[0]
        rules = self.rulesets.get(major)
        if rules is None:
            raise UnknownProtocolVersionError(
                f"No canonicalization rules for protocol major version {major}",
                version=version,
            )
        return rules

    def latest(self) -> str:
        """Highest CURRENT version in the table."""
        current = [v for v, e in self.entries.items() if e.status == VersionStatus.CURRENT]
        if not current:
            return DEFAULT_PROTOCOL_VERSION
        return max(current, key=parse_version)


DEFAULT_REGISTRY = ProtocolVersionRegistry.build(
    [
        ("1.0", VersionStatus.CURRENT),
        ("1.1", VersionStatus.CURRENT),
        ("2.0", VersionStatus.CURRENT),
    ],
    rulesets={1: RULES_V1, 2: RULES_V2},
)
