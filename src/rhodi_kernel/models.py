"""
Data model for Traced Markdown Documents.

A TracedDocument owns its FrontMatter and its body text. Include and trace
blocks live inside the body; their parsed form and location are derived on
demand (``TracedDocument.blocks``) and never stored separately, so the body
stays the single source of truth for the hashed bytes.
"""

import copy
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from .errors import FormatError
from .versions import DEFAULT_PROTOCOL_VERSION


_HEX64 = re.compile(r"^[0-9a-f]{64}$")
_HEX128 = re.compile(r"^[0-9a-f]{128}$")
_TAGGED_HASH = re.compile(r"^[a-z0-9-]+:[0-9a-f]+$")


class DocStatus(str, Enum):
    NOTES = "notes"
    DRAFT = "draft"
    PUBLISHED = "published"
    REVOKED = "revoked"


class TraceMethod(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    AGENT = "agent"


def new_document_id() -> str:
    """
    Generate a time-sortable identifier (UUIDv7 layout: 48-bit Unix
    milliseconds, version and variant bits, random tail).
    """
    millis = time.time_ns() // 1_000_000
    rand = int.from_bytes(os.urandom(10), "big")
    value = (millis & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= ((rand >> 62) & 0xFFF) << 64
    value |= 0b10 << 62
    value |= rand & ((1 << 62) - 1)
    return str(uuid.UUID(int=value))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """The one RFC3339 form used in canonical bytes: UTC, microseconds, ``Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def plain_value(value: Any) -> Any:
    """Dates and timestamps inside free-form data, as the strings they hash as."""
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: plain_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [plain_value(v) for v in value]
    return value


def parse_timestamp(value: Any, field_name: str) -> datetime:
    """Accept a datetime (YAML may already have produced one) or an RFC3339 string."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise FormatError(f"Invalid timestamp for {field_name}: {value!r}", field=field_name) from exc
    else:
        raise FormatError(f"Invalid timestamp for {field_name}: {value!r}", field=field_name)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _optional_str(data: dict[str, Any], key: str, context: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise FormatError(f"{context}: '{key}' must be a string", field=key)
    return value


def _required_str(data: dict[str, Any], key: str, context: str) -> str:
    value = _optional_str(data, key, context)
    if value is None:
        raise FormatError(f"{context}: missing required field '{key}'", field=key)
    return value


def _hex_field(data: dict[str, Any], key: str, pattern: re.Pattern, context: str) -> str | None:
    value = _optional_str(data, key, context)
    if value is not None and not pattern.match(value):
        raise FormatError(f"{context}: '{key}' must be lowercase hex", field=key)
    return value


def _tagged_hash(data: dict[str, Any], context: str) -> str | None:
    value = _optional_str(data, "hash", context)
    if value is not None and not _TAGGED_HASH.match(value):
        raise FormatError(f"{context}: hash must have the form '<algorithm>:<hex>'", field="hash")
    return value


def _reject_unknown(data: dict[str, Any], allowed: frozenset[str], context: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise FormatError(f"{context}: unknown field(s) {', '.join(unknown)}", fields=unknown)


def _drop_none(mapping: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in mapping.items() if v is not None}


@dataclass
class DocumentPolicy:
    allow_include: bool = True

    @classmethod
    def from_mapping(cls, data: Any) -> "DocumentPolicy":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise FormatError("policy must be a mapping", field="policy")
        _reject_unknown(data, frozenset({"allow_include"}), "policy")
        allow = data.get("allow_include", True)
        if not isinstance(allow, bool):
            raise FormatError("policy.allow_include must be a boolean", field="policy.allow_include")
        return cls(allow_include=allow)

    def to_dict(self) -> dict[str, Any]:
        return {"allow_include": self.allow_include}


_FRONTMATTER_FIELDS = frozenset({
    "id", "title", "author", "created_at", "modified_at", "doc_status",
    "protocol_version", "doc_version", "prev_version_hash", "version_hash",
    "signature", "public_key", "policy", "extra",
})


@dataclass
class FrontMatter:
    """
    Document metadata. ``version_hash`` and ``signature`` describe the rest
    and are therefore left out of ``hashable_projection``.
    """
    id: str
    title: str
    created_at: datetime
    author: str | None = None
    modified_at: datetime | None = None
    doc_status: DocStatus = DocStatus.NOTES
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    doc_version: int = 0
    prev_version_hash: str | None = None
    version_hash: str | None = None
    signature: str | None = None
    public_key: str | None = None
    policy: DocumentPolicy = field(default_factory=DocumentPolicy)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, title: str, author: str | None = None, **extra: Any) -> "FrontMatter":
        return cls(
            id=new_document_id(),
            title=title,
            author=author,
            created_at=utc_now(),
            extra=dict(extra),
        )

    @classmethod
    def from_mapping(cls, data: Any) -> "FrontMatter":
        """
        Build FrontMatter from a parsed YAML mapping.

        Raises:
            FormatError: Missing required fields, wrong types, unknown keys
        """
        context = "frontmatter"
        if not isinstance(data, dict):
            raise FormatError("frontmatter must be a mapping")
        _reject_unknown(data, _FRONTMATTER_FIELDS, context)

        if "created_at" not in data or data["created_at"] is None:
            raise FormatError("frontmatter: missing required field 'created_at'", field="created_at")

        status_raw = data.get("doc_status", DocStatus.NOTES.value)
        try:
            status = DocStatus(str(status_raw).lower())
        except ValueError as exc:
            raise FormatError(f"frontmatter: invalid doc_status {status_raw!r}", field="doc_status") from exc

        protocol_version = data.get("protocol_version", DEFAULT_PROTOCOL_VERSION)
        if not isinstance(protocol_version, str):
            # An unquoted 1.10 in YAML is the float 1.1; refuse to guess.
            raise FormatError("frontmatter: protocol_version must be a quoted string", field="protocol_version")

        doc_version = data.get("doc_version", 0)
        if isinstance(doc_version, bool) or not isinstance(doc_version, int) or doc_version < 0:
            raise FormatError("frontmatter: doc_version must be a non-negative integer", field="doc_version")

        extra = data.get("extra") or {}
        if not isinstance(extra, dict):
            raise FormatError("frontmatter: extra must be a mapping", field="extra")

        modified_at = data.get("modified_at")

        return cls(
            id=_required_str(data, "id", context),
            title=_required_str(data, "title", context),
            created_at=parse_timestamp(data["created_at"], "created_at"),
            author=_optional_str(data, "author", context),
            modified_at=None if modified_at is None else parse_timestamp(modified_at, "modified_at"),
            doc_status=status,
            protocol_version=protocol_version,
            doc_version=doc_version,
            prev_version_hash=_hex_field(data, "prev_version_hash", _HEX64, context),
            version_hash=_hex_field(data, "version_hash", _HEX64, context),
            signature=_hex_field(data, "signature", _HEX128, context),
            public_key=_hex_field(data, "public_key", _HEX64, context),
            policy=DocumentPolicy.from_mapping(data.get("policy")),
            extra=plain_value(extra),
        )

    def to_dict(self) -> dict[str, Any]:
        """Full frontmatter as plain data; unset optional fields are omitted."""
        data = {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "created_at": format_timestamp(self.created_at),
            "modified_at": None if self.modified_at is None else format_timestamp(self.modified_at),
            "doc_status": self.doc_status.value,
            "protocol_version": self.protocol_version,
            "doc_version": self.doc_version,
            "prev_version_hash": self.prev_version_hash,
            "version_hash": self.version_hash,
            "signature": self.signature,
            "public_key": self.public_key,
            "policy": self.policy.to_dict(),
            "extra": plain_value(self.extra) if self.extra else None,
        }
        return _drop_none(data)

    def hashable_projection(self) -> dict[str, Any]:
        data = self.to_dict()
        data.pop("version_hash", None)
        data.pop("signature", None)
        return data


@dataclass
class AgentMetadata:
    model: str
    prompt_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({"model": self.model, "prompt_hash": self.prompt_hash})


@dataclass
class Witness:
    """Detached Ed25519 signature of a human witness over a manual trace."""
    public_key: str
    signature: str

    def to_dict(self) -> dict[str, Any]:
        return {"public_key": self.public_key, "signature": self.signature}


@dataclass
class Selector:
    query: str
    kind: str | None = None

    def to_value(self) -> Any:
        if self.kind is None:
            return self.query
        return {"kind": self.kind, "query": self.query}


@dataclass
class IncludeBlock:
    path: str
    hash: str | None = None
    encoding: str = "utf-8"
    timestamp: datetime | None = None

    KIND = "include"
    FIELDS = frozenset({"path", "hash", "encoding", "timestamp"})

    @classmethod
    def from_mapping(cls, data: Any) -> "IncludeBlock":
        context = "include block"
        if not isinstance(data, dict):
            raise FormatError(f"{context} must hold a YAML mapping")
        _reject_unknown(data, cls.FIELDS, context)
        timestamp = data.get("timestamp")
        return cls(
            path=_required_str(data, "path", context),
            hash=_tagged_hash(data, context),
            encoding=_optional_str(data, "encoding", context) or "utf-8",
            timestamp=None if timestamp is None else parse_timestamp(timestamp, "timestamp"),
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "path": self.path,
            "hash": self.hash,
            "encoding": None if self.encoding == "utf-8" else self.encoding,
            "timestamp": None if self.timestamp is None else format_timestamp(self.timestamp),
        })


@dataclass
class TraceBlock:
    source: str
    expected: str
    hash: str | None = None
    selector: Selector | None = None
    extractor: str | None = None
    method: TraceMethod = TraceMethod.AUTOMATIC
    confidence: float | None = None
    agent_metadata: AgentMetadata | None = None
    witness: Witness | None = None
    timestamp: datetime | None = None
    context: str | None = None

    KIND = "trace"
    FIELDS = frozenset({
        "source", "expected", "hash", "selector", "extractor", "method",
        "confidence", "agent_metadata", "witness", "timestamp", "context",
    })

    @classmethod
    def from_mapping(cls, data: Any) -> "TraceBlock":
        context = "trace block"
        if not isinstance(data, dict):
            raise FormatError(f"{context} must hold a YAML mapping")
        _reject_unknown(data, cls.FIELDS, context)

        expected = data.get("expected")
        if expected is None:
            raise FormatError(f"{context}: missing required field 'expected'", field="expected")
        if isinstance(expected, bool) or not isinstance(expected, (str, int, float)):
            raise FormatError(f"{context}: 'expected' must be a scalar", field="expected")

        method_raw = data.get("method", TraceMethod.AUTOMATIC.value)
        try:
            method = TraceMethod(str(method_raw).lower())
        except ValueError as exc:
            raise FormatError(f"{context}: invalid method {method_raw!r}", field="method") from exc

        selector_raw = data.get("selector")
        selector = None
        if isinstance(selector_raw, str):
            selector = Selector(query=selector_raw)
        elif isinstance(selector_raw, dict):
            query = selector_raw.get("query")
            kind = selector_raw.get("kind")
            if not isinstance(query, str) or (kind is not None and not isinstance(kind, str)):
                raise FormatError(f"{context}: selector needs a string 'query' and optional 'kind'", field="selector")
            selector = Selector(query=query, kind=kind)
        elif selector_raw is not None:
            raise FormatError(f"{context}: selector must be a string or mapping", field="selector")

        confidence = data.get("confidence")
        if confidence is not None and (isinstance(confidence, bool) or not isinstance(confidence, (int, float))):
            raise FormatError(f"{context}: confidence must be a number", field="confidence")

        agent = data.get("agent_metadata")
        agent_metadata = None
        if agent is not None:
            if not isinstance(agent, dict):
                raise FormatError(f"{context}: agent_metadata must be a mapping", field="agent_metadata")
            agent_metadata = AgentMetadata(
                model=_required_str(agent, "model", "agent_metadata"),
                prompt_hash=_optional_str(agent, "prompt_hash", "agent_metadata"),
            )

        witness_raw = data.get("witness")
        witness = None
        if witness_raw is not None:
            if not isinstance(witness_raw, dict):
                raise FormatError(f"{context}: witness must be a mapping", field="witness")
            witness = Witness(
                public_key=_required_str(witness_raw, "public_key", "witness"),
                signature=_required_str(witness_raw, "signature", "witness"),
            )

        timestamp = data.get("timestamp")
        return cls(
            source=_required_str(data, "source", context),
            expected=expected if isinstance(expected, str) else str(expected),
            hash=_tagged_hash(data, context),
            selector=selector,
            extractor=_optional_str(data, "extractor", context),
            method=method,
            confidence=None if confidence is None else float(confidence),
            agent_metadata=agent_metadata,
            witness=witness,
            timestamp=None if timestamp is None else parse_timestamp(timestamp, "timestamp"),
            context=_optional_str(data, "context", context),
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "source": self.source,
            "hash": self.hash,
            "selector": None if self.selector is None else self.selector.to_value(),
            "extractor": self.extractor,
            "expected": self.expected,
            "method": None if self.method == TraceMethod.AUTOMATIC else self.method.value,
            "confidence": self.confidence,
            "agent_metadata": None if self.agent_metadata is None else self.agent_metadata.to_dict(),
            "witness": None if self.witness is None else self.witness.to_dict(),
            "timestamp": None if self.timestamp is None else format_timestamp(self.timestamp),
            "context": self.context,
        })


Block = IncludeBlock | TraceBlock


@dataclass(frozen=True)
class LocatedBlock:
    """
    A fenced block found in a body. ``start``/``end`` are character offsets
    of the whole fence (opening line through closing fence, no trailing
    newline); ``line`` is the 1-based line of the opening fence.
    """
    index: int
    kind: str
    start: int
    end: int
    line: int
    block: Block

    @property
    def label(self) -> str:
        target = self.block.path if isinstance(self.block, IncludeBlock) else self.block.source
        return f"{self.kind}[{self.index}] {target}"


@dataclass
class TracedDocument:
    frontmatter: FrontMatter
    body: str

    @classmethod
    def create(cls, title: str, body: str, author: str | None = None, **extra: Any) -> "TracedDocument":
        return cls(frontmatter=FrontMatter.new(title, author=author, **extra), body=body.strip())

    @property
    def status(self) -> DocStatus:
        return self.frontmatter.doc_status

    @property
    def blocks(self) -> list[LocatedBlock]:
        from .markdown import locate_blocks
        return locate_blocks(self.body)

    @property
    def includes(self) -> list[LocatedBlock]:
        return [b for b in self.blocks if b.kind == IncludeBlock.KIND]

    @property
    def traces(self) -> list[LocatedBlock]:
        return [b for b in self.blocks if b.kind == TraceBlock.KIND]

    def clone(self) -> "TracedDocument":
        return copy.deepcopy(self)
