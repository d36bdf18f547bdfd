"""
rhodi-kernel: Deterministic sealing and verification of traced documents.

Canonicalization, Ed25519 sealing with version chaining, include graph
resolution and trace evidence verification for TMD (Traced Markdown)
documents. All reads go through an injected SourceResolver; nothing here
touches the network.
"""

from .canonical import (
    RULES_V1,
    RULES_V2,
    CanonicalRules,
    canonical_json,
    canonicalize_frontmatter,
    canonicalize_text,
    compose,
)
from .compiler import Compiler
from .composer import Composer, ResolvedGraph
from .config import CompilerPolicy
from .errors import (
    AuthenticityError,
    CancelledError,
    CompilationError,
    CycleError,
    DepthExceededError,
    EncodingError,
    ErrorCode,
    ExtractionError,
    FormatError,
    HashMismatchError,
    HashMissingError,
    InclusionDeniedError,
    IntegrityError,
    ObsoleteProtocolVersionError,
    PathTraversalError,
    ResolutionError,
    RhodiError,
    SigningError,
    SourceNotFoundError,
    UnknownProtocolVersionError,
    VerificationError,
    VerificationResult,
)
from .extractors import ExtractorRegistry, default_extractors
from .markdown import parse_document, render_document
from .models import (
    DocStatus,
    FrontMatter,
    IncludeBlock,
    Selector,
    TraceBlock,
    TracedDocument,
    TraceMethod,
)
from .report import CompilationReport, Finding, Severity
from .resolver import FileResolver, InMemoryResolver, SourceResolver
from .seal import compute_content_hash, compute_version_hash, seal_document
from .sign import KeyPair
from .summary import document_summary, format_document_summary
from .trace import TraceVerifier, attach_witness
from .verify import verify_document
from .versions import DEFAULT_REGISTRY, ProtocolVersionRegistry, VersionStatus

__version__ = "0.1.0"
__all__ = [
    # Canonicalization
    "CanonicalRules",
    "RULES_V1",
    "RULES_V2",
    "canonical_json",
    "canonicalize_frontmatter",
    "canonicalize_text",
    "compose",
    # Protocol versions
    "DEFAULT_REGISTRY",
    "ProtocolVersionRegistry",
    "VersionStatus",
    # Documents
    "DocStatus",
    "FrontMatter",
    "IncludeBlock",
    "Selector",
    "TraceBlock",
    "TraceMethod",
    "TracedDocument",
    "parse_document",
    "render_document",
    "document_summary",
    "format_document_summary",
    # Sealing and verification
    "KeyPair",
    "compute_content_hash",
    "compute_version_hash",
    "seal_document",
    "verify_document",
    # Resolution and compilation
    "Compiler",
    "CompilerPolicy",
    "CompilationReport",
    "Composer",
    "ExtractorRegistry",
    "FileResolver",
    "Finding",
    "InMemoryResolver",
    "ResolvedGraph",
    "Severity",
    "SourceResolver",
    "TraceVerifier",
    "attach_witness",
    "default_extractors",
    # Errors
    "AuthenticityError",
    "CancelledError",
    "CompilationError",
    "CycleError",
    "DepthExceededError",
    "EncodingError",
    "ErrorCode",
    "ExtractionError",
    "FormatError",
    "HashMismatchError",
    "HashMissingError",
    "InclusionDeniedError",
    "IntegrityError",
    "ObsoleteProtocolVersionError",
    "PathTraversalError",
    "ResolutionError",
    "RhodiError",
    "SigningError",
    "SourceNotFoundError",
    "UnknownProtocolVersionError",
    "VerificationError",
    "VerificationResult",
]
