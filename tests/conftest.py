"""Shared fixtures for rhodi-kernel tests."""

import sys
from pathlib import Path

import pytest

# Add parent src to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rhodi_kernel import (
    Compiler,
    DocStatus,
    InMemoryResolver,
    KeyPair,
    TracedDocument,
    render_document,
)
from rhodi_kernel.markdown import render_block


@pytest.fixture
def keypair() -> KeyPair:
    return KeyPair.generate()


@pytest.fixture
def other_keypair() -> KeyPair:
    return KeyPair.generate()


@pytest.fixture
def resolver() -> InMemoryResolver:
    return InMemoryResolver()


@pytest.fixture
def compiler(resolver) -> Compiler:
    return Compiler(resolver)


@pytest.fixture
def make_tmd():
    """Build TMD file text: frontmatter, body, and the given blocks appended."""
    def _make(title: str = "Doc", body: str = "Body.", blocks=(), status: DocStatus = DocStatus.NOTES, allow_include: bool = True) -> str:
        parts = [body] + [render_block(b) for b in blocks]
        doc = TracedDocument.create(title, "\n\n".join(parts))
        doc.frontmatter.doc_status = status
        doc.frontmatter.policy.allow_include = allow_include
        return render_document(doc)
    return _make


@pytest.fixture
def make_doc():
    """Build a TracedDocument whose body holds the given blocks."""
    def _make(title: str = "Doc", body: str = "Body.", blocks=(), status: DocStatus = DocStatus.NOTES) -> TracedDocument:
        parts = [body] + [render_block(b) for b in blocks]
        doc = TracedDocument.create(title, "\n\n".join(parts))
        doc.frontmatter.doc_status = status
        return doc
    return _make


class SetToken:
    """Cancellation token that reports set after ``after`` checks."""

    def __init__(self, after: int = 0) -> None:
        self.after = after
        self.checks = 0

    def is_set(self) -> bool:
        self.checks += 1
        return self.checks > self.after


@pytest.fixture
def cancel_token():
    return SetToken
