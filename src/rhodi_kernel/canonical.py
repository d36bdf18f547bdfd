"""
Canonical byte forms for hashing.

Three canonical forms feed the version hash:

- the body, normalized by ``canonicalize_text``,
- the frontmatter projection, serialized as canonical JSON (RFC 8785
  style: sorted keys, no whitespace, shortest numbers),
- the framing produced by ``compose``, which length-delimits every part so
  that no two distinct (version, frontmatter, body) triples share bytes.

Everything here is pure: no clock, no I/O, no dependency on the host's
Unicode database.
"""

import json
import math
from dataclasses import dataclass
from typing import Any

from .errors import EncodingError


# Domain separation tag prefixed to every composed payload.
COMPOSE_TAG = b"rhodi-tmd"

# Invisible format characters removed from bodies. The table is fixed here
# rather than derived from unicodedata so the output does not change with
# the interpreter's Unicode version.
_FORMAT_CHAR_RANGES: tuple[tuple[int, int], ...] = (
    (0x0600, 0x0605),    # Arabic number signs
    (0x06DD, 0x06DD),    # Arabic end of ayah
    (0x070F, 0x070F),    # Syriac abbreviation mark
    (0x08A0, 0x08B4),
    (0x08E3, 0x08FF),
    (0x180E, 0x180E),    # Mongolian vowel separator
    (0x200B, 0x200F),    # zero width space/joiners, LRM/RLM
    (0x202A, 0x202E),    # bidi embedding/override
    (0x2060, 0x206F),    # word joiner, invisible operators
    (0xFEFF, 0xFEFF),    # BOM / ZWNBSP
    (0xFFF0, 0xFFF8),
    (0x110BD, 0x110BD),  # Kaithi number sign
    (0x1BCA0, 0x1BCA4),  # shorthand format controls
    (0x1D173, 0x1D17A),  # musical format controls
)


@dataclass(frozen=True)
class CanonicalRules:
    """
    Body canonicalization ruleset bound to a protocol major version.

    A ruleset never changes once a version using it has been released;
    new behaviour gets a new ruleset so old signatures keep verifying.
    """
    name: str
    keep_tabs: bool = True
    collapse_trailing_blank_lines: bool = False


RULES_V1 = CanonicalRules(name="tmd-c14n-v1")
RULES_V2 = CanonicalRules(name="tmd-c14n-v2", collapse_trailing_blank_lines=True)


def _is_stripped(code: int, keep_tabs: bool) -> bool:
    if code == 0x0A:
        return False
    if code == 0x09:
        return not keep_tabs
    if code < 0x20 or 0x7F <= code <= 0x9F:
        return True
    for low, high in _FORMAT_CHAR_RANGES:
        if low <= code <= high:
            return True
    return False


def canonicalize_text(body: str | bytes, rules: CanonicalRules = RULES_V1) -> str:
    """
    Normalize a document body.

    - ``\\r\\n`` and lone ``\\r`` become ``\\n``
    - trailing whitespace is stripped from every line
    - C0/C1 control characters (except ``\\n``, and ``\\t`` unless the
      ruleset says otherwise) and invisible format characters are removed
    - a non-empty result ends with exactly one ``\\n``

    Args:
        body: Body text, or raw bytes that must be valid UTF-8
        rules: Ruleset selected for the document's protocol version

    Returns:
        Canonical body text

    Raises:
        EncodingError: Invalid UTF-8, or a string holding lone surrogates
    """
    if isinstance(body, (bytes, bytearray)):
        try:
            text = bytes(body).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EncodingError(
                f"Body is not valid UTF-8 at byte {exc.start}", offset=exc.start
            ) from exc
    else:
        text = body

    try:
        text.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise EncodingError(
            f"Body contains an unencodable code point at index {exc.start}", offset=exc.start
        ) from exc

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = []
    for line in text.split("\n"):
        kept = "".join(ch for ch in line if not _is_stripped(ord(ch), rules.keep_tabs))
        lines.append(kept.rstrip())

    result = "\n".join(lines)
    if rules.collapse_trailing_blank_lines:
        result = result.rstrip("\n")
    if result and not result.endswith("\n"):
        result += "\n"
    return result


def canonical_json(value: Any) -> str:
    """
    Serialize a value to canonical JSON per RFC 8785.

    Args:
        value: JSON-compatible value (dict, list, str, int, float, bool, None)

    Returns:
        Canonical JSON string with sorted keys and no whitespace

    Raises:
        EncodingError: Non-finite numbers, non-string keys, unsupported types
    """
    return _serialize_value(value)


def _serialize_value(value: Any) -> str:
    if value is None:
        return "null"

    if isinstance(value, bool):
        # Must check bool before int (bool is subclass of int in Python)
        return "true" if value else "false"

    if isinstance(value, (int, float)):
        return _serialize_number(value)

    if isinstance(value, str):
        return _serialize_string(value)

    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_serialize_value(item) for item in value) + "]"

    if isinstance(value, dict):
        return _serialize_object(value)

    raise EncodingError(
        f"Cannot canonicalize value of type {type(value).__name__}",
        type=type(value).__name__,
    )


def _serialize_number(num: float | int) -> str:
    """Shortest round-trip representation; integral values have no fraction."""
    if isinstance(num, float) and (math.isnan(num) or math.isinf(num)):
        raise EncodingError("Non-finite numbers have no canonical form", value=repr(num))

    if isinstance(num, int) or num.is_integer():
        int_val = int(num)
        if abs(int_val) < 10**20:
            return str(int_val)

    result = json.dumps(num)
    if result.endswith(".0"):
        result = result[:-2]
    return result


def _serialize_string(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _serialize_object(obj: dict) -> str:
    for key in obj:
        if not isinstance(key, str):
            raise EncodingError(
                f"Object keys must be strings, got {type(key).__name__}", key=repr(key)
            )
    # Default str ordering is by Unicode code point.
    pairs = [
        _serialize_string(key) + ":" + _serialize_value(obj[key])
        for key in sorted(obj)
    ]
    return "{" + ",".join(pairs) + "}"


def canonicalize_frontmatter(
    frontmatter: Any,
    exclude: frozenset[str] = frozenset({"version_hash", "signature"}),
) -> bytes:
    """
    Canonical bytes of the hashable frontmatter projection.

    ``frontmatter`` is either a FrontMatter (its ``to_dict`` projection is
    used) or an already projected mapping. Keys in ``exclude`` are dropped
    before serialization.

    Raises:
        EncodingError: The projection holds a value with no canonical form
    """
    mapping = frontmatter.to_dict() if hasattr(frontmatter, "to_dict") else dict(frontmatter)
    projection = {k: v for k, v in mapping.items() if k not in exclude}
    try:
        return canonical_json(projection).encode("utf-8")
    except UnicodeEncodeError as exc:
        raise EncodingError("Frontmatter contains an unencodable code point") from exc


def _netstring(data: bytes) -> bytes:
    return str(len(data)).encode("ascii") + b":" + data + b","


def compose(protocol_version: str, canonical_frontmatter: bytes, canonical_body: str | bytes) -> bytes:
    """
    Frame the three hashed parts into one unambiguous byte string.

    Layout: ``netstring(tag) netstring(version) netstring(frontmatter)
    netstring(body)`` where ``netstring(x) = len(x) ":" x ","``.
    """
    body = canonical_body.encode("utf-8") if isinstance(canonical_body, str) else canonical_body
    return b"".join((
        _netstring(COMPOSE_TAG),
        _netstring(protocol_version.encode("ascii")),
        _netstring(canonical_frontmatter),
        _netstring(body),
    ))
