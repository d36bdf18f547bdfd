"""
Compiler: lifecycle operations and whole-document compilation.

``compile`` runs, in order: the protocol gate, the revocation check, the
seal check, the include graph walk, trace verification over every
document of the graph, and the seal check of included published
documents. Include and trace failures are reported at the severity the
root document's lifecycle status calls for:

    notes      ignored
    draft      warning
    published  error, compilation halts at the first one
    revoked    error

Cycle, depth and path traversal failures are errors whatever the status.
"""

import logging
from typing import Any

from .composer import ROOT_LABEL, STRUCTURAL_CODES, Composer, CancellationToken, GraphProblem, ResolvedGraph
from .config import CompilerPolicy
from .errors import (
    CompilationError,
    ErrorCode,
    RhodiError,
    SigningError,
    VerificationError,
    VerificationResult,
)
from .extractors import ExtractorRegistry
from .models import DocStatus, TracedDocument, utc_now
from .report import CompilationReport, Finding, HaltCompilation, Severity, severity_for_status
from .resolver import SourceResolver
from .seal import seal_document
from .sign import KeyPair
from .trace import TraceVerifier
from .verify import verify_document, verify_integrity, verify_protocol_version
from .versions import DEFAULT_REGISTRY, ProtocolVersionRegistry


logger = logging.getLogger(__name__)


class Compiler:
    """
    Args:
        resolver: Where include and trace sources are read from
        policy: Depth limit, halting and version policy
        registry: Protocol version table
        extractors: Extractor kinds available to traces
    """

    def __init__(
        self,
        resolver: SourceResolver,
        policy: CompilerPolicy | None = None,
        registry: ProtocolVersionRegistry = DEFAULT_REGISTRY,
        extractors: ExtractorRegistry | None = None,
    ) -> None:
        self.resolver = resolver
        self.policy = policy or CompilerPolicy()
        self.registry = registry.with_policy(self.policy.accept_unknown_minor)
        self.traces = TraceVerifier(resolver, extractors)

    def _composer(self, cancel: CancellationToken | None) -> Composer:
        return Composer(self.resolver, self.policy.max_depth, cancel)

    def _root_key(self, source: str | None) -> str | None:
        return None if source is None else self.resolver.resolve_path(source, None)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, title: str, body: str, author: str | None = None, **extra: Any) -> TracedDocument:
        """New unsealed document in Notes status."""
        document = TracedDocument.create(title, body, author=author, **extra)
        document.frontmatter.protocol_version = self.policy.default_protocol_version
        logger.info("created document %s", document.frontmatter.id)
        return document

    def lock(
        self,
        document: TracedDocument,
        source: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> TracedDocument:
        """
        Write current source hashes and timestamps into the root document's
        include and trace blocks. Manual traces should be locked before a
        witness signs them.

        Raises:
            RhodiError: Any resolution failure in the include graph
        """
        return self._composer(cancel).lock(document, self._root_key(source), self.traces)

    def seal(
        self,
        document: TracedDocument,
        keypair: KeyPair,
        source: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> TracedDocument:
        """
        Auto-lock, then seal. The input document is never modified.

        Args:
            document: Document to seal
            keypair: Signer
            source: Path of the document under the resolver root; includes
                are resolved relative to it

        Raises:
            SigningError: ``keypair`` cannot sign
            UnknownProtocolVersionError: Version unknown or obsolete
            RhodiError: Auto-lock failed
        """
        if not isinstance(keypair, KeyPair):
            raise SigningError(f"Expected a KeyPair, got {type(keypair).__name__}")
        self.registry.require_usable(document.frontmatter.protocol_version)
        locked = self.lock(document, source, cancel)
        return seal_document(locked, keypair, self.registry)

    def publish(
        self,
        document: TracedDocument,
        keypair: KeyPair,
        source: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> TracedDocument:
        """
        Auto-lock, compile as a published document, and seal only when the
        compilation has no errors.

        Raises:
            CompilationError: Compilation found errors; ``exc.report`` has them
        """
        if not isinstance(keypair, KeyPair):
            raise SigningError(f"Expected a KeyPair, got {type(keypair).__name__}")
        locked = self.lock(document, source, cancel)

        status = DocStatus.REVOKED if locked.status == DocStatus.REVOKED else DocStatus.PUBLISHED
        report = CompilationReport(halt_on_error=self.policy.halt_on_first_error)
        try:
            self._run(locked, source, cancel, report, status, check_seal=False)
        except HaltCompilation:
            pass
        if not report.ok:
            first = report.errors[0]
            raise CompilationError(
                f"Refusing to publish {document.frontmatter.id}: {first.message}",
                report,
                document_id=document.frontmatter.id,
            )
        return seal_document(locked, keypair, self.registry)

    def update(self, document: TracedDocument) -> TracedDocument:
        """
        Reopen a document for editing: status Draft, signature dropped.
        ``version_hash`` is kept so the next seal chains to it.
        """
        draft = document.clone()
        fm = draft.frontmatter
        fm.doc_status = DocStatus.DRAFT
        fm.signature = None
        fm.modified_at = utc_now()
        logger.info("reopened document %s at version %d", fm.id, fm.doc_version)
        return draft

    def revoke(self, document: TracedDocument, keypair: KeyPair) -> TracedDocument:
        """
        Mark a document Revoked and re-seal it. No auto-lock: revoking must
        work even after the sources are gone.
        """
        revoked = document.clone()
        revoked.frontmatter.doc_status = DocStatus.REVOKED
        sealed = seal_document(revoked, keypair, self.registry)
        logger.info("revoked document %s at version %d", sealed.frontmatter.id, sealed.frontmatter.doc_version)
        return sealed

    def verify(self, document: TracedDocument, public_key: Any = None) -> VerificationResult:
        """
        Seal check only: protocol version, integrity, authenticity.

        Args:
            public_key: Key to verify against; defaults to the document's
                own ``public_key``, which only proves the seal is
                self-consistent, not who made it
        """
        key = public_key if public_key is not None else document.frontmatter.public_key
        if key is not None:
            return verify_document(document, key, self.registry)

        gate = verify_protocol_version(document, self.registry)
        if not gate.valid:
            return gate
        errors = verify_integrity(document, self.registry).errors
        errors.append(VerificationError(
            code=ErrorCode.SIGNATURE_REQUIRED,
            message="No public key available to verify the signature",
        ))
        return VerificationResult(valid=False, errors=errors, warnings=gate.warnings)

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------

    def compile(
        self,
        document: TracedDocument,
        source: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> CompilationReport:
        """
        Verify a document and everything it includes.

        Args:
            document: Root document
            source: Path of the document under the resolver root
            cancel: Token whose ``is_set()`` aborts the walk

        Returns:
            CompilationReport with findings in discovery order

        Raises:
            CancelledError: ``cancel`` was set
        """
        status = document.status
        report = CompilationReport(
            halt_on_error=self.policy.halt_on_first_error and status == DocStatus.PUBLISHED,
        )
        try:
            self._run(document, source, cancel, report, status, check_seal=True)
        except HaltCompilation:
            logger.info("compilation of %s halted at first error", document.frontmatter.id)

        logger.info(
            "compiled %s (%s): %d error(s), %d warning(s), %d/%d trace(s) verified",
            document.frontmatter.id, status.value, len(report.errors), len(report.warnings),
            report.traces_verified, report.traces_total,
        )
        return report

    def _record(self, report: CompilationReport, finding: Finding) -> None:
        if finding.severity == Severity.WARNING:
            logger.warning("%s: %s", finding.subject, finding.message)
        report.add(finding)

    def _run(
        self,
        document: TracedDocument,
        source: str | None,
        cancel: CancellationToken | None,
        report: CompilationReport,
        status: DocStatus,
        check_seal: bool,
    ) -> None:
        composer = self._composer(cancel)
        severity = severity_for_status(status)

        gate = verify_protocol_version(document, self.registry)
        for warning in gate.warnings:
            self._record(report, Finding.from_verification(warning, Severity.WARNING, ROOT_LABEL))
        if not gate.valid:
            for error in gate.errors:
                self._record(report, Finding.from_verification(error, Severity.ERROR, ROOT_LABEL))
            return

        try:
            root_key = self._root_key(source)
        except RhodiError as exc:
            self._record(report, Finding.from_exception(exc, Severity.ERROR, ROOT_LABEL))
            return
        subject = composer.label(root_key)

        if status == DocStatus.REVOKED:
            self._record(report, Finding(
                Severity.ERROR, ErrorCode.DOCUMENT_REVOKED, subject, "Document has been revoked",
            ))

        if check_seal:
            self._check_seal(document, subject, status, report)

        def on_problem(problem: GraphProblem) -> None:
            level = Severity.ERROR if problem.structural else severity
            if level is not None:
                self._record(report, Finding.from_exception(problem.error, level, problem.subject))

        graph = composer.resolve(document, root_key, on_problem)
        self._verify_traces(graph, composer, severity, report)
        self._check_included_seals(graph, composer, severity, report)

    def _check_seal(
        self,
        document: TracedDocument,
        subject: str,
        status: DocStatus,
        report: CompilationReport,
    ) -> None:
        fm = document.frontmatter
        if status in (DocStatus.PUBLISHED, DocStatus.REVOKED):
            level = Severity.ERROR
        elif status == DocStatus.DRAFT and fm.version_hash and fm.signature:
            level = Severity.WARNING
        else:
            return
        for error in self.verify(document).errors:
            self._record(report, Finding.from_verification(error, level, subject))

    def _verify_traces(
        self,
        graph: ResolvedGraph,
        composer: Composer,
        severity: Severity | None,
        report: CompilationReport,
    ) -> None:
        for node in graph.nodes:
            try:
                traces = node.document.traces
            except RhodiError:
                # Already reported by the graph walk.
                continue
            for loc in traces:
                composer.check_cancelled()
                report.traces_total += 1
                outcome = self.traces.verify(loc.block, node.key)
                if outcome.verified:
                    report.traces_verified += 1
                subject = f"{composer.label(node.key)}: {loc.label}"
                for problem in outcome.problems:
                    level = Severity.ERROR if problem.code in STRUCTURAL_CODES else severity
                    if level is not None:
                        self._record(report, Finding.from_verification(problem, level, subject))

    def _check_included_seals(
        self,
        graph: ResolvedGraph,
        composer: Composer,
        severity: Severity | None,
        report: CompilationReport,
    ) -> None:
        if severity is None:
            return
        for node in graph.nodes[1:]:
            composer.check_cancelled()
            included = node.document
            subject = composer.label(node.key)
            if included.status == DocStatus.REVOKED:
                self._record(report, Finding(
                    severity, ErrorCode.DOCUMENT_REVOKED, subject,
                    f"Included document {subject} has been revoked",
                ))
            if included.status in (DocStatus.PUBLISHED, DocStatus.REVOKED):
                for error in self.verify(included).errors:
                    self._record(report, Finding.from_verification(error, severity, subject))
