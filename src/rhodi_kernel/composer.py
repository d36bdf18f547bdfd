"""
Include graph resolution.

The graph is walked depth first from the root document. Loaded documents
live in an arena keyed by canonical path; the recursion carries the chain
of ancestor keys as a tuple, so every branch has its own copy and a
diamond (two branches reaching the same file) is not mistaken for a cycle.
A shared document's own includes are walked again only when it is reached
deeper than before, where the depth limit may now apply.

Order of checks for every include edge, all before the target is read:
path containment, cycle, depth. Only then is the source fetched, its hash
compared (or, when locking, written) and the target parsed and walked.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Protocol

from .errors import (
    CancelledError,
    CycleError,
    DepthExceededError,
    ErrorCode,
    HashMismatchError,
    HashMissingError,
    InclusionDeniedError,
    PathTraversalError,
    RhodiError,
)
from .markdown import parse_document, replace_blocks
from .models import IncludeBlock, LocatedBlock, TraceBlock, TracedDocument, utc_now
from .resolver import SourceResolver
from .seal import HASH_ALGORITHM, compute_content_hash
from .sign import safe_equal
from .trace import TraceVerifier


logger = logging.getLogger(__name__)

ROOT_LABEL = "<root>"

# Failures that invalidate the graph itself; never downgraded by lifecycle.
STRUCTURAL_CODES = frozenset({
    ErrorCode.PATH_TRAVERSAL,
    ErrorCode.CYCLE,
    ErrorCode.DEPTH_EXCEEDED,
})


class CancellationToken(Protocol):
    def is_set(self) -> bool: ...


@dataclass(frozen=True)
class GraphProblem:
    subject: str
    error: RhodiError

    @property
    def structural(self) -> bool:
        return self.error.code in STRUCTURAL_CODES


ProblemSink = Callable[[GraphProblem], None]


def raise_problem(problem: GraphProblem) -> None:
    """Sink used when locking: every problem is fatal."""
    raise problem.error


@dataclass
class ResolvedNode:
    key: str | None
    document: TracedDocument
    depth: int


@dataclass
class ResolvedGraph:
    """
    Documents reached by the walk, in first-visit order, root first.
    """
    nodes: list[ResolvedNode] = field(default_factory=list)
    arena: dict[str, TracedDocument] = field(default_factory=dict)
    # Deepest level each document's includes were walked at.
    walked: dict[str, int] = field(default_factory=dict, repr=False)

    @property
    def root(self) -> ResolvedNode:
        return self.nodes[0]


class Composer:
    """
    Args:
        resolver: Source resolver
        max_depth: Deepest allowed include nesting (root is depth 0)
        cancel: Optional token checked at every recursive step
    """

    def __init__(
        self,
        resolver: SourceResolver,
        max_depth: int = 5,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.resolver = resolver
        self.max_depth = max_depth
        self.cancel = cancel
        self._sources: dict[str, bytes] = {}

    def label(self, key: str | None) -> str:
        if key is None:
            return ROOT_LABEL
        relative = getattr(self.resolver, "relative", None)
        return relative(key) if relative else key

    def check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise CancelledError("Include graph resolution was cancelled")

    def _fetch(self, key: str) -> bytes:
        if key not in self._sources:
            self._sources[key] = self.resolver.fetch(key)
        return self._sources[key]

    def resolve(
        self,
        document: TracedDocument,
        root_key: str | None,
        on_problem: ProblemSink,
    ) -> ResolvedGraph:
        """
        Walk the include graph of ``document``.

        Args:
            document: Root document
            root_key: Canonical key of the root document, if it has one;
                includes are resolved relative to it
            on_problem: Called for every failure, in walk order. It may
                raise to stop the walk.

        Raises:
            CancelledError: The cancellation token was set
        """
        graph = ResolvedGraph()
        graph.nodes.append(ResolvedNode(root_key, document, 0))
        if root_key is not None:
            graph.arena[root_key] = document
        self._walk(document, root_key, 0, (), graph, on_problem)
        logger.debug("resolved include graph of %s: %d document(s)", self.label(root_key), len(graph.nodes))
        return graph

    def _walk(
        self,
        document: TracedDocument,
        key: str | None,
        depth: int,
        ancestors: tuple[str, ...],
        graph: ResolvedGraph,
        on_problem: ProblemSink,
    ) -> None:
        self.check_cancelled()
        lineage = ancestors + ((key,) if key is not None else ())

        try:
            includes = document.includes
        except RhodiError as exc:
            on_problem(GraphProblem(self.label(key), exc))
            return

        for loc in includes:
            subject = f"{self.label(key)}: {loc.label}"
            child = self._follow(loc, key, depth, lineage, graph, subject, on_problem)
            if child is None:
                continue
            child_key, child_doc = child
            if graph.walked.get(child_key, -1) >= depth + 1:
                # Already walked at this depth or deeper.
                continue
            graph.walked[child_key] = depth + 1
            self._walk(child_doc, child_key, depth + 1, lineage, graph, on_problem)

    def _follow(
        self,
        loc: LocatedBlock,
        key: str | None,
        depth: int,
        lineage: tuple[str, ...],
        graph: ResolvedGraph,
        subject: str,
        on_problem: ProblemSink,
    ) -> tuple[str, TracedDocument] | None:
        block: IncludeBlock = loc.block
        self.check_cancelled()

        try:
            child_key = self.resolver.resolve_path(block.path, key)
        except PathTraversalError as exc:
            on_problem(GraphProblem(subject, exc))
            return None

        if child_key in lineage:
            chain = " -> ".join(self.label(k) for k in lineage + (child_key,))
            on_problem(GraphProblem(subject, CycleError(
                f"Circular include detected: {chain}", path=block.path,
            )))
            return None

        if depth + 1 > self.max_depth:
            on_problem(GraphProblem(subject, DepthExceededError(
                f"Maximum include depth ({self.max_depth}) exceeded at {block.path}",
                path=block.path,
                max_depth=self.max_depth,
            )))
            return None

        try:
            content = self._fetch(child_key)
        except RhodiError as exc:
            on_problem(GraphProblem(subject, exc))
            return None

        problem = self._check_hash(block, content)
        if problem is not None:
            on_problem(GraphProblem(subject, problem))

        child_doc = graph.arena.get(child_key)
        if child_doc is None:
            try:
                child_doc = parse_document(content, block.encoding)
            except RhodiError as exc:
                exc.details.setdefault("path", block.path)
                on_problem(GraphProblem(subject, exc))
                return None
            graph.arena[child_key] = child_doc
            graph.nodes.append(ResolvedNode(child_key, child_doc, depth + 1))

        if not child_doc.frontmatter.policy.allow_include:
            on_problem(GraphProblem(subject, InclusionDeniedError(
                f"Document {block.path} does not allow inclusion", path=block.path,
            )))
            return None

        return child_key, child_doc

    @staticmethod
    def _check_hash(block: IncludeBlock, content: bytes) -> RhodiError | None:
        if block.hash is None:
            return HashMissingError(f"Include {block.path} has no locked hash", path=block.path)
        algorithm = block.hash.partition(":")[0]
        if algorithm != HASH_ALGORITHM:
            return HashMismatchError(
                f"Unsupported hash algorithm {algorithm!r} for {block.path}", path=block.path,
            )
        computed = compute_content_hash(content)
        if not safe_equal(computed, block.hash):
            return HashMismatchError(
                f"Hash mismatch for include {block.path}",
                path=block.path,
                expected=block.hash,
                actual=computed,
            )
        return None

    def lock(
        self,
        document: TracedDocument,
        root_key: str | None,
        traces: TraceVerifier,
    ) -> TracedDocument:
        """
        Auto-lock: write the current hash and a timestamp into every include
        and trace block of the root document, then walk the locked graph with
        every problem treated as fatal.

        Returns:
            A new document; ``document`` is not modified

        Raises:
            RhodiError: Any resolution, traversal, cycle, depth or hash failure
        """
        self.check_cancelled()
        replacements: dict[int, IncludeBlock | TraceBlock] = {}
        for loc in document.blocks:
            block = loc.block
            if isinstance(block, IncludeBlock):
                child_key = self.resolver.resolve_path(block.path, root_key)
                content = self._fetch(child_key)
                replacements[loc.index] = replace(
                    block, hash=compute_content_hash(content), timestamp=utc_now(),
                )
            else:
                replacements[loc.index] = traces.lock(block, root_key)
            logger.debug("locked %s", loc.label)

        locked = document.clone()
        locked.body = replace_blocks(document.body, replacements)
        self.resolve(locked, root_key, raise_problem)
        return locked
