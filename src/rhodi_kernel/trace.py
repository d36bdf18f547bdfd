"""
Trace evidence verification.

For each trace block:

1. resolve and fetch the source (path containment is the resolver's job),
2. check the recorded source hash, or note that none is recorded,
3. obtain the actual value (extractor, or witness signature for manual
   traces) and compare it to the claimed ``expected`` value.

Problems are returned as ``VerificationError`` records; the compiler turns
them into findings with the severity the document's lifecycle calls for.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation

from .canonical import canonical_json
from .errors import (
    ErrorCode,
    ExtractionError,
    HashMismatchError,
    RhodiError,
    VerificationError,
)
from .extractors import ExtractorRegistry, default_extractors, select_kind
from .models import TraceBlock, TraceMethod, Witness, utc_now
from .resolver import SourceResolver
from .seal import HASH_ALGORITHM, compute_content_hash
from .sign import KeyPair, safe_equal, verify_signature


logger = logging.getLogger(__name__)

_PROMPT_HASH = re.compile(r"^sha256:[0-9a-f]{64}$")
_NUMBER = r"[+-]?(?:\d{1,3}(?:,\d{3})+|\d+|\d*\.\d+)(?:\.\d+)?"
_PERCENT_RE = re.compile(rf"^({_NUMBER})\s*%$")
_NUMBER_RE = re.compile(rf"^{_NUMBER}$")


def _typed_value(text: str) -> tuple[str, Decimal] | None:
    """Classify a claim as ('percent', n) or ('number', n), else None."""
    text = text.strip()
    match = _PERCENT_RE.match(text)
    if match:
        kind, digits = "percent", match.group(1)
    elif _NUMBER_RE.match(text):
        kind, digits = "number", text
    else:
        return None
    try:
        return kind, Decimal(digits.replace(",", ""))
    except InvalidOperation:
        return None


def compare_values(actual: str, expected: str) -> bool:
    """
    Exact string equality after trimming, or equal numeric values when both
    sides parse as the same value class ("85%" == "85.0 %", "1,200" == "1200";
    "85%" != "85").
    """
    if actual.strip() == expected.strip():
        return True
    left, right = _typed_value(actual), _typed_value(expected)
    if left is None or right is None:
        return False
    return left[0] == right[0] and left[1] == right[1]


def witness_message(trace: TraceBlock) -> bytes:
    """Bytes a witness signs: SHA-256 of canonical JSON {source, hash, expected}."""
    payload = canonical_json({
        "source": trace.source,
        "hash": trace.hash,
        "expected": trace.expected,
    })
    return hashlib.sha256(payload.encode("utf-8")).digest()


def attach_witness(trace: TraceBlock, keypair: KeyPair) -> TraceBlock:
    """
    Return a copy of a manual trace signed by ``keypair``. The trace should
    be locked first: the witness covers the source hash.
    """
    signature = keypair.sign(witness_message(trace))
    return replace(
        trace,
        method=TraceMethod.MANUAL,
        witness=Witness(public_key=keypair.public_key_hex, signature=signature.hex()),
    )


def _problem(exc: RhodiError) -> VerificationError:
    return VerificationError(code=exc.code, message=exc.message, details=dict(exc.details))


@dataclass
class TraceOutcome:
    verified: bool
    actual: str | None = None
    problems: list[VerificationError] = field(default_factory=list)


class TraceVerifier:
    """
    Verify trace blocks against their sources.

    Args:
        resolver: Source resolver shared with the composer
        extractors: Kind registry; defaults to regex/jsonpath/csv
    """

    def __init__(self, resolver: SourceResolver, extractors: ExtractorRegistry | None = None) -> None:
        self.resolver = resolver
        self.extractors = extractors or default_extractors()

    def fetch_source(self, trace: TraceBlock, base: str | None) -> tuple[str, bytes]:
        """
        Raises:
            PathTraversalError: Source escapes the project root
            SourceNotFoundError: Source does not exist
        """
        key = self.resolver.resolve_path(trace.source, base)
        return key, self.resolver.fetch(key)

    def lock(self, trace: TraceBlock, base: str | None) -> TraceBlock:
        """Return the trace with the current source hash and a fresh timestamp."""
        _, content = self.fetch_source(trace, base)
        return replace(trace, hash=compute_content_hash(content), timestamp=utc_now())

    def verify(self, trace: TraceBlock, base: str | None) -> TraceOutcome:
        outcome = TraceOutcome(verified=False)
        try:
            key, content = self.fetch_source(trace, base)
        except RhodiError as exc:
            outcome.problems.append(_problem(exc))
            return outcome

        if trace.hash is None:
            outcome.problems.append(VerificationError(
                code=ErrorCode.HASH_MISSING,
                message=f"Trace source {trace.source} has no locked hash",
                details={"source": trace.source},
            ))
        else:
            mismatch = self._check_hash(trace, content)
            if mismatch is not None:
                outcome.problems.append(_problem(mismatch))

        if trace.confidence is not None and not 0.0 <= trace.confidence <= 1.0:
            outcome.problems.append(VerificationError(
                code=ErrorCode.CONFIDENCE_OUT_OF_RANGE,
                message=f"Confidence {trace.confidence} is outside [0, 1]",
                details={"source": trace.source, "confidence": trace.confidence},
            ))

        if trace.method == TraceMethod.MANUAL:
            self._check_witness(trace, outcome)
        else:
            if trace.method == TraceMethod.AGENT:
                self._check_agent(trace, outcome)
            self._check_claim(trace, content, outcome)

        outcome.verified = not outcome.problems
        logger.debug("trace %s (%s): verified=%s", trace.source, key, outcome.verified)
        return outcome

    def _check_hash(self, trace: TraceBlock, content: bytes) -> HashMismatchError | None:
        algorithm, _, _ = trace.hash.partition(":")
        if algorithm != HASH_ALGORITHM:
            return HashMismatchError(
                f"Unsupported hash algorithm {algorithm!r} for {trace.source}",
                source=trace.source,
            )
        computed = compute_content_hash(content)
        if not safe_equal(computed, trace.hash):
            return HashMismatchError(
                f"Hash mismatch for {trace.source}",
                source=trace.source,
                expected=trace.hash,
                actual=computed,
            )
        return None

    def _check_witness(self, trace: TraceBlock, outcome: TraceOutcome) -> None:
        if trace.witness is None:
            outcome.problems.append(VerificationError(
                code=ErrorCode.WITNESS_INVALID,
                message=f"Manual trace {trace.source} requires a witness signature",
                details={"source": trace.source},
            ))
            return
        if not verify_signature(trace.witness.public_key, trace.witness.signature, witness_message(trace)):
            outcome.problems.append(VerificationError(
                code=ErrorCode.WITNESS_INVALID,
                message=f"Witness signature on {trace.source} does not verify",
                details={"source": trace.source, "witness": trace.witness.public_key},
            ))

    def _check_agent(self, trace: TraceBlock, outcome: TraceOutcome) -> None:
        meta = trace.agent_metadata
        if meta is None or meta.prompt_hash is None:
            return
        if not _PROMPT_HASH.match(meta.prompt_hash):
            outcome.problems.append(VerificationError(
                code=ErrorCode.AGENT_METADATA_INVALID,
                message=f"agent_metadata.prompt_hash must be 'sha256:<64 hex>', got {meta.prompt_hash!r}",
                details={"source": trace.source, "model": meta.model},
            ))

    def _check_claim(self, trace: TraceBlock, content: bytes, outcome: TraceOutcome) -> None:
        if trace.selector is None:
            # No selector: the claim must appear literally in the source.
            text = content.decode("utf-8", errors="replace")
            if trace.expected.strip() and trace.expected.strip() in text:
                outcome.actual = trace.expected
                return
            outcome.problems.append(VerificationError(
                code=ErrorCode.CLAIM_MISMATCH,
                message=f"Claim {trace.expected!r} not found in {trace.source}",
                details={"source": trace.source, "expected": trace.expected},
            ))
            return

        kind = select_kind(trace)
        try:
            actual = self.extractors.extract(content, trace.selector, kind)
        except ExtractionError as exc:
            outcome.problems.append(VerificationError(
                code=exc.code,
                message=f"Extraction from {trace.source} failed: {exc.message}",
                details={"source": trace.source, "kind": kind, "reason": exc.reason},
            ))
            return

        outcome.actual = actual
        if not compare_values(actual, trace.expected):
            outcome.problems.append(VerificationError(
                code=ErrorCode.CLAIM_MISMATCH,
                message=f"Claim mismatch for {trace.source}: expected {trace.expected!r}, got {actual!r}",
                details={"source": trace.source, "expected": trace.expected, "actual": actual},
            ))
