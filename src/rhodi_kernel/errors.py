"""
Error codes and types for rhodi-kernel.

Every failure the kernel can report has one ErrorCode. The same code is
carried by the raised exception and by the report record, so an audit
trail reads identically whether the caller handled an exception or
inspected a report.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """
    Verification and compilation error codes.
    Values are stable: they appear in serialized reports.
    """
    FORMAT_INVALID = "FORMAT_INVALID"
    ENCODING_INVALID = "ENCODING_INVALID"
    UNKNOWN_PROTOCOL_VERSION = "UNKNOWN_PROTOCOL_VERSION"
    OBSOLETE_PROTOCOL_VERSION = "OBSOLETE_PROTOCOL_VERSION"
    DEPRECATED_PROTOCOL_VERSION = "DEPRECATED_PROTOCOL_VERSION"
    NOT_SEALED = "NOT_SEALED"
    INTEGRITY = "INTEGRITY"
    SIGNATURE_REQUIRED = "SIGNATURE_REQUIRED"
    AUTHENTICITY = "AUTHENTICITY"
    SIGNING_FAILED = "SIGNING_FAILED"
    DOCUMENT_REVOKED = "DOCUMENT_REVOKED"
    SOURCE_MISSING = "SOURCE_MISSING"
    HASH_MISSING = "HASH_MISSING"
    HASH_MISMATCH = "HASH_MISMATCH"
    PATH_TRAVERSAL = "PATH_TRAVERSAL"
    CYCLE = "CYCLE"
    DEPTH_EXCEEDED = "DEPTH_EXCEEDED"
    INCLUSION_DENIED = "INCLUSION_DENIED"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    CLAIM_MISMATCH = "CLAIM_MISMATCH"
    WITNESS_INVALID = "WITNESS_INVALID"
    AGENT_METADATA_INVALID = "AGENT_METADATA_INVALID"
    CONFIDENCE_OUT_OF_RANGE = "CONFIDENCE_OUT_OF_RANGE"
    CANCELLED = "CANCELLED"
    COMPILATION_FAILED = "COMPILATION_FAILED"


class RhodiError(Exception):
    """Base class for every error raised by the kernel."""

    code: ErrorCode = ErrorCode.FORMAT_INVALID

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class FormatError(RhodiError):
    code = ErrorCode.FORMAT_INVALID


class EncodingError(RhodiError):
    """Invalid UTF-8 or a value that cannot be canonicalized."""
    code = ErrorCode.ENCODING_INVALID


class SigningError(RhodiError):
    code = ErrorCode.SIGNING_FAILED


class UnknownProtocolVersionError(RhodiError):
    """Protocol version is unknown or obsolete. There is no fallback."""
    code = ErrorCode.UNKNOWN_PROTOCOL_VERSION


class ObsoleteProtocolVersionError(UnknownProtocolVersionError):
    code = ErrorCode.OBSOLETE_PROTOCOL_VERSION


class IntegrityError(RhodiError):
    """Recomputed version_hash differs from the stored one."""
    code = ErrorCode.INTEGRITY


class AuthenticityError(RhodiError):
    """Signature does not verify against the stored version_hash."""
    code = ErrorCode.AUTHENTICITY


class ResolutionError(RhodiError):
    """Base for failures while resolving include/trace sources."""
    code = ErrorCode.SOURCE_MISSING


class SourceNotFoundError(ResolutionError):
    code = ErrorCode.SOURCE_MISSING


class HashMissingError(ResolutionError):
    code = ErrorCode.HASH_MISSING


class HashMismatchError(ResolutionError):
    code = ErrorCode.HASH_MISMATCH


class PathTraversalError(ResolutionError):
    code = ErrorCode.PATH_TRAVERSAL


class CycleError(ResolutionError):
    code = ErrorCode.CYCLE


class DepthExceededError(ResolutionError):
    code = ErrorCode.DEPTH_EXCEEDED


class InclusionDeniedError(ResolutionError):
    code = ErrorCode.INCLUSION_DENIED


class ExtractionError(RhodiError):
    """
    Extractor failure. ``reason`` is NOT_FOUND when the selector matched
    nothing, MALFORMED when the source or the selector could not be parsed.
    """
    code = ErrorCode.EXTRACTION_FAILED

    NOT_FOUND = "NOT_FOUND"
    MALFORMED = "MALFORMED"

    def __init__(self, message: str, reason: str = MALFORMED, **details: Any) -> None:
        super().__init__(message, reason=reason, **details)
        self.reason = reason


class CancelledError(RhodiError):
    """Raised when an external cancellation signal is observed."""
    code = ErrorCode.CANCELLED


class CompilationError(RhodiError):
    """
    A document was refused for publication. ``report`` is the
    CompilationReport whose errors caused the refusal.
    """
    code = ErrorCode.COMPILATION_FAILED

    def __init__(self, message: str, report: Any, **details: Any) -> None:
        super().__init__(message, **details)
        self.report = report


_EXCEPTIONS_BY_CODE: dict[ErrorCode, type[RhodiError]] = {
    ErrorCode.FORMAT_INVALID: FormatError,
    ErrorCode.ENCODING_INVALID: EncodingError,
    ErrorCode.UNKNOWN_PROTOCOL_VERSION: UnknownProtocolVersionError,
    ErrorCode.OBSOLETE_PROTOCOL_VERSION: ObsoleteProtocolVersionError,
    ErrorCode.NOT_SEALED: IntegrityError,
    ErrorCode.INTEGRITY: IntegrityError,
    ErrorCode.SIGNATURE_REQUIRED: AuthenticityError,
    ErrorCode.AUTHENTICITY: AuthenticityError,
}


def exception_for(code: ErrorCode) -> type[RhodiError]:
    """Return the exception class that corresponds to a verification code."""
    return _EXCEPTIONS_BY_CODE.get(code, RhodiError)


@dataclass
class VerificationError:
    """
    A single verification error with typed code and audit details.
    """
    code: ErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class VerificationResult:
    """
    Result of a seal verification.

    ``errors`` make the result invalid; ``warnings`` (deprecated protocol
    version) do not.
    """
    valid: bool
    errors: list[VerificationError] = field(default_factory=list)
    warnings: list[VerificationError] = field(default_factory=list)

    @property
    def codes(self) -> list[ErrorCode]:
        return [e.code for e in self.errors]

    @property
    def integrity_ok(self) -> bool:
        return not any(
            c in (ErrorCode.INTEGRITY, ErrorCode.NOT_SEALED) for c in self.codes
        )

    @property
    def authenticity_ok(self) -> bool:
        return not any(
            c in (ErrorCode.AUTHENTICITY, ErrorCode.SIGNATURE_REQUIRED) for c in self.codes
        )

    def raise_for_errors(self) -> None:
        """Raise the exception matching the first error, if any."""
        if not self.errors:
            return
        first = self.errors[0]
        raise exception_for(first.code)(first.message, **first.details)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }
