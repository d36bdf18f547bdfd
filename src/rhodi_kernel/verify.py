"""
Offline seal verification for rhodi-kernel.

Integrity (does the content still hash to ``version_hash``?) and
authenticity (does ``signature`` verify over ``version_hash``?) are checked
independently, so a report can say "content changed" and "wrong signer"
separately.
"""

import logging
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import (
    ErrorCode,
    ObsoleteProtocolVersionError,
    RhodiError,
    UnknownProtocolVersionError,
    VerificationError,
    VerificationResult,
)
from .models import TracedDocument
from .seal import compute_version_hash
from .sign import SIGNATURE_BYTES, load_public_key, safe_equal
from .versions import DEFAULT_PROTOCOL_VERSION, DEFAULT_REGISTRY, ProtocolVersionRegistry, VersionStatus


logger = logging.getLogger(__name__)


def verify_protocol_version(
    document: TracedDocument,
    registry: ProtocolVersionRegistry = DEFAULT_REGISTRY,
) -> VerificationResult:
    """
    Fail-closed protocol gate. Unknown and obsolete versions are errors;
    deprecated versions pass with a warning.
    """
    version = document.frontmatter.protocol_version or DEFAULT_PROTOCOL_VERSION
    try:
        status = registry.require_usable(version)
    except ObsoleteProtocolVersionError as exc:
        return VerificationResult(valid=False, errors=[VerificationError(
            code=ErrorCode.OBSOLETE_PROTOCOL_VERSION,
            message=exc.message,
            details={"version": version},
        )])
    except UnknownProtocolVersionError as exc:
        return VerificationResult(valid=False, errors=[VerificationError(
            code=ErrorCode.UNKNOWN_PROTOCOL_VERSION,
            message=exc.message,
            details={"version": version},
        )])

    warnings = []
    if status == VersionStatus.DEPRECATED:
        warnings.append(VerificationError(
            code=ErrorCode.DEPRECATED_PROTOCOL_VERSION,
            message=f"Protocol version {version} is deprecated",
            details={"version": version},
        ))
    return VerificationResult(valid=True, warnings=warnings)


def verify_integrity(
    document: TracedDocument,
    registry: ProtocolVersionRegistry = DEFAULT_REGISTRY,
) -> VerificationResult:
    """
    Recompute the version hash from current content and compare it to the
    stored one.
    """
    stored = document.frontmatter.version_hash
    if not stored:
        return VerificationResult(valid=False, errors=[VerificationError(
            code=ErrorCode.NOT_SEALED,
            message="Document is not sealed (missing version_hash)",
        )])

    try:
        computed = compute_version_hash(document, registry).hex()
    except RhodiError as exc:
        return VerificationResult(valid=False, errors=[VerificationError(
            code=exc.code,
            message=f"Cannot recompute version_hash: {exc.message}",
            details=dict(exc.details),
        )])

    if not safe_equal(computed, stored):
        return VerificationResult(valid=False, errors=[VerificationError(
            code=ErrorCode.INTEGRITY,
            message="Integrity check failed: version_hash mismatch",
            details={"expected": stored, "actual": computed},
        )])
    return VerificationResult(valid=True)


def verify_authenticity(
    document: TracedDocument,
    public_key: "str | bytes | ed25519.Ed25519PublicKey",
) -> VerificationResult:
    """
    Verify ``signature`` over the stored ``version_hash`` digest. Independent
    of whether the stored hash still matches the content.
    """
    fm = document.frontmatter
    if not fm.signature:
        return VerificationResult(valid=False, errors=[VerificationError(
            code=ErrorCode.SIGNATURE_REQUIRED,
            message="Document is not signed (missing signature)",
        )])
    if not fm.version_hash:
        return VerificationResult(valid=False, errors=[VerificationError(
            code=ErrorCode.SIGNATURE_REQUIRED,
            message="Signature present but there is no version_hash to verify it against",
        )])

    details: dict[str, Any] = {}
    try:
        key = load_public_key(public_key)
    except (TypeError, ValueError) as exc:
        return VerificationResult(valid=False, errors=[VerificationError(
            code=ErrorCode.AUTHENTICITY,
            message=f"Invalid public key: {exc}",
        )])

    try:
        signature = bytes.fromhex(fm.signature)
        digest = bytes.fromhex(fm.version_hash)
    except (TypeError, ValueError):
        signature = digest = b""
    if len(signature) != SIGNATURE_BYTES or len(digest) != 32:
        return VerificationResult(valid=False, errors=[VerificationError(
            code=ErrorCode.AUTHENTICITY,
            message=f"Signature must be {SIGNATURE_BYTES} bytes over a 32-byte digest",
        )])

    try:
        key.verify(signature, digest)
    except InvalidSignature:
        if fm.public_key:
            details["document_public_key"] = fm.public_key
        return VerificationResult(valid=False, errors=[VerificationError(
            code=ErrorCode.AUTHENTICITY,
            message="Authenticity check failed: signature does not verify",
            details=details,
        )])
    return VerificationResult(valid=True)


def verify_document(
    document: TracedDocument,
    public_key: "str | bytes | ed25519.Ed25519PublicKey",
    registry: ProtocolVersionRegistry = DEFAULT_REGISTRY,
) -> VerificationResult:
    """
    Full seal verification: protocol version, integrity, authenticity.

    An unknown or obsolete protocol version aborts before any hashing.
    Integrity and authenticity are both evaluated and both reported.

    Args:
        document: Sealed document
        public_key: Signer's key (hex, raw bytes, PEM, or key object)
        registry: Protocol version table

    Returns:
        VerificationResult; ``integrity_ok`` / ``authenticity_ok`` tell the
        two failure classes apart
    """
    gate = verify_protocol_version(document, registry)
    if not gate.valid:
        logger.info("verification of %s aborted: %s", document.frontmatter.id, gate.errors[0].message)
        return gate

    integrity = verify_integrity(document, registry)
    authenticity = verify_authenticity(document, public_key)

    errors = integrity.errors + authenticity.errors
    result = VerificationResult(valid=not errors, errors=errors, warnings=gate.warnings)
    logger.info(
        "verified document %s v%d: valid=%s",
        document.frontmatter.id, document.frontmatter.doc_version, result.valid,
    )
    return result
