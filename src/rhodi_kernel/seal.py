"""
Document sealing for rhodi-kernel.

Sealing advances the version chain, hashes the composed canonical bytes
and signs the digest. The functions here are pure: block auto-locking
needs source access and is done by the composer before ``seal_document``
is called (see ``Compiler.seal``).

Uses hashlib for SHA-256 and cryptography for Ed25519.
"""

import hashlib
import logging

from .canonical import canonicalize_frontmatter, canonicalize_text, compose
from .errors import SigningError
from .models import DocStatus, TracedDocument, utc_now
from .sign import KeyPair
from .versions import DEFAULT_REGISTRY, ProtocolVersionRegistry


logger = logging.getLogger(__name__)

HASH_ALGORITHM = "sha256"


def compute_content_hash(data: bytes) -> str:
    """
    Tagged SHA-256 of raw source bytes, as written into include/trace blocks.

    Returns:
        "sha256:<hex>" formatted hash
    """
    return f"{HASH_ALGORITHM}:{hashlib.sha256(data).hexdigest()}"


def canonical_bytes(
    document: TracedDocument,
    registry: ProtocolVersionRegistry = DEFAULT_REGISTRY,
) -> bytes:
    """
    The exact bytes covered by ``version_hash``.

    Raises:
        UnknownProtocolVersionError: Version unknown or obsolete
        EncodingError: Body or frontmatter cannot be canonicalized
    """
    fm = document.frontmatter
    rules = registry.select_canonicalization(fm.protocol_version)
    canonical_fm = canonicalize_frontmatter(fm.hashable_projection())
    canonical_body = canonicalize_text(document.body, rules)
    return compose(fm.protocol_version, canonical_fm, canonical_body)


def compute_version_hash(
    document: TracedDocument,
    registry: ProtocolVersionRegistry = DEFAULT_REGISTRY,
) -> bytes:
    """Raw 32-byte SHA-256 digest of ``canonical_bytes``."""
    return hashlib.sha256(canonical_bytes(document, registry)).digest()


def seal_document(
    document: TracedDocument,
    keypair: KeyPair,
    registry: ProtocolVersionRegistry = DEFAULT_REGISTRY,
) -> TracedDocument:
    """
    Seal a document whose blocks are already locked.

    Steps: status/modified_at/public_key, chain (prev_version_hash,
    doc_version + 1), canonicalize and compose, SHA-256, Ed25519 sign.
    The chain fields are set before hashing so the hash covers them.

    Args:
        document: Document to seal; it is not modified
        keypair: Signer
        registry: Protocol version table

    Returns:
        A new, sealed document

    Raises:
        SigningError: ``keypair`` cannot sign
        EncodingError: Canonicalization failed
        UnknownProtocolVersionError: Version unknown or obsolete
    """
    if not isinstance(keypair, KeyPair):
        raise SigningError(f"Expected a KeyPair, got {type(keypair).__name__}")

    sealed = document.clone()
    fm = sealed.frontmatter

    if fm.doc_status != DocStatus.REVOKED:
        fm.doc_status = DocStatus.PUBLISHED
    fm.modified_at = utc_now()
    fm.public_key = keypair.public_key_hex

    fm.prev_version_hash = fm.version_hash if fm.doc_version > 0 else None
    fm.doc_version += 1
    fm.version_hash = None
    fm.signature = None

    digest = compute_version_hash(sealed, registry)
    signature = keypair.sign(digest)

    fm.version_hash = digest.hex()
    fm.signature = signature.hex()

    logger.info(
        "sealed document %s as version %d (%s)",
        fm.id, fm.doc_version, fm.version_hash,
    )
    return sealed
