"""
Document summary utilities for human-readable inspection.

Extracts key metadata from traced documents without modifying them.
"""

from typing import Any

from .errors import RhodiError
from .models import TracedDocument, format_timestamp
from .versions import DEFAULT_REGISTRY, ProtocolVersionRegistry


def document_summary(
    document: TracedDocument,
    registry: ProtocolVersionRegistry = DEFAULT_REGISTRY,
) -> dict[str, Any]:
    """
    Extract a human-readable summary from a traced document.

    Args:
        document: A parsed document, sealed or not
        registry: Table used to report the protocol version status

    Returns:
        Dict with id, title, author, status, protocol version and status,
        doc_version, hashes, signature presence and block counts
    """
    fm = document.frontmatter
    try:
        blocks = document.blocks
    except RhodiError:
        blocks = None

    return {
        "id": fm.id,
        "title": fm.title,
        "author": fm.author,
        "doc_status": fm.doc_status.value,
        "created_at": format_timestamp(fm.created_at),
        "modified_at": None if fm.modified_at is None else format_timestamp(fm.modified_at),
        "protocol_version": fm.protocol_version,
        "protocol_status": registry.lookup(fm.protocol_version).value,
        "doc_version": fm.doc_version,
        "prev_version_hash": fm.prev_version_hash,
        "version_hash": fm.version_hash,
        "public_key": fm.public_key,
        "signed": fm.signature is not None,
        "include_count": None if blocks is None else sum(1 for b in blocks if b.kind == "include"),
        "trace_count": None if blocks is None else sum(1 for b in blocks if b.kind == "trace"),
        "body_length": len(document.body),
    }


def format_document_summary(
    document: TracedDocument,
    registry: ProtocolVersionRegistry = DEFAULT_REGISTRY,
) -> str:
    """
    Format a document as a single-line human-readable string.

    Returns:
        String like "Quarterly report [published v3, protocol 1.0] | 2 includes, 5 traces | abc123..."
    """
    s = document_summary(document, registry)
    hash_short = s["version_hash"] or "unsealed"
    if len(hash_short) > 20:
        hash_short = hash_short[:20] + "..."
    if s["trace_count"] is None:
        blocks = "malformed blocks"
    else:
        blocks = f"{s['include_count']} includes, {s['trace_count']} traces"
    signed = "" if s["signed"] else ", unsigned"
    return (
        f"{s['title']} [{s['doc_status']} v{s['doc_version']}, protocol {s['protocol_version']}"
        f"{signed}] | {blocks} | {hash_short}"
    )
