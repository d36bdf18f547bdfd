"""
Compiler policy and its environment overrides.
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping

from .versions import DEFAULT_PROTOCOL_VERSION


DEFAULT_MAX_INCLUDE_DEPTH = 5

ENV_MAX_DEPTH = "RHODI_MAX_DEPTH"
ENV_HALT_ON_FIRST_ERROR = "RHODI_HALT_ON_FIRST_ERROR"
ENV_ACCEPT_UNKNOWN_MINOR = "RHODI_ACCEPT_UNKNOWN_MINOR"

_TRUTHY_VALUES = {"1", "true", "yes", "on"}
_FALSEY_VALUES = {"0", "false", "no", "off"}


def _env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUTHY_VALUES:
        return True
    if raw in _FALSEY_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag, got {raw!r}")


@dataclass(frozen=True)
class CompilerPolicy:
    """
    Args:
        max_depth: Deepest allowed include nesting; the root is depth 0
        halt_on_first_error: Published documents stop at the first error
        accept_unknown_minor: Treat an unknown minor of a known major as
            deprecated instead of unknown
        default_protocol_version: Version given to documents created by
            the compiler
    """
    max_depth: int = DEFAULT_MAX_INCLUDE_DEPTH
    halt_on_first_error: bool = True
    accept_unknown_minor: bool = False
    default_protocol_version: str = DEFAULT_PROTOCOL_VERSION

    def __post_init__(self) -> None:
        if isinstance(self.max_depth, bool) or not isinstance(self.max_depth, int) or self.max_depth < 0:
            raise ValueError(f"max_depth must be a non-negative integer, got {self.max_depth!r}")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "CompilerPolicy":
        env = os.environ if env is None else env
        policy = cls()
        raw_depth = env.get(ENV_MAX_DEPTH, "").strip()
        if raw_depth:
            if not raw_depth.isdigit():
                raise ValueError(f"{ENV_MAX_DEPTH} must be a non-negative integer, got {raw_depth!r}")
            policy = replace(policy, max_depth=int(raw_depth))
        return replace(
            policy,
            halt_on_first_error=_env_flag(env, ENV_HALT_ON_FIRST_ERROR, policy.halt_on_first_error),
            accept_unknown_minor=_env_flag(env, ENV_ACCEPT_UNKNOWN_MINOR, policy.accept_unknown_minor),
        )
