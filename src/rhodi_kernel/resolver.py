"""
Source resolvers.

A resolver turns a reference written in a document (an include path or a
trace source) into a canonical key, then fetches the bytes for that key.
The two steps are separate so the composer can check containment and
cycles on the canonical key before anything is read.

Retries, caching and remote transports are the resolver's business; the
kernel treats ``fetch`` as an opaque synchronous call.
"""

import logging
import os
import posixpath
from pathlib import Path
from typing import Mapping, Protocol

from .errors import PathTraversalError, SourceNotFoundError


logger = logging.getLogger(__name__)


class SourceResolver(Protocol):
    def resolve_path(self, reference: str, base: str | None) -> str:
        """
        Canonicalize ``reference`` relative to the document identified by
        ``base`` (None for a document at the project root).

        Raises:
            PathTraversalError: The canonical path escapes the project root
        """
        ...

    def fetch(self, key: str) -> bytes:
        """
        Raises:
            SourceNotFoundError: Nothing exists at ``key``
            PathTraversalError: ``key`` is outside the project root
        """
        ...


def _reject_unsafe(reference: str) -> None:
    if "\x00" in reference:
        raise PathTraversalError(
            f"Reference contains a NUL byte: {reference!r}",
            path=reference,
        )
    if "://" in reference:
        raise PathTraversalError(
            f"Remote references are not resolvable by this resolver: {reference}",
            path=reference,
        )


class FileResolver:
    """
    Resolve references against a project root on the local file system.

    Containment is checked twice before any read: lexically (absolute paths
    and ``..`` segments that climb above the root), then on the real path so
    a symlink cannot point outside the root.
    """

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(os.path.realpath(root))

    def _inside_root(self, path: str) -> bool:
        try:
            return os.path.commonpath([str(self.root), path]) == str(self.root)
        except ValueError:
            # Different drives on Windows.
            return False

    def _realpath(self, path: str, reference: str) -> str:
        if "\x00" in path:
            raise PathTraversalError(f"Reference contains a NUL byte: {reference!r}", path=reference)
        try:
            return os.path.realpath(path)
        except (ValueError, OSError) as exc:
            raise PathTraversalError(
                f"Cannot resolve {reference!r}: {exc}",
                path=reference,
                root=str(self.root),
            ) from exc

    def resolve_path(self, reference: str, base: str | None) -> str:
        _reject_unsafe(reference)
        if os.path.isabs(reference):
            raise PathTraversalError(
                f"Absolute paths are not allowed: {reference}",
                path=reference,
                root=str(self.root),
            )
        base_dir = Path(base).parent if base else self.root
        joined = os.path.normpath(os.path.join(base_dir, reference))
        if not self._inside_root(joined):
            raise PathTraversalError(
                f"Path traversal detected: {reference} escapes {self.root}",
                path=reference,
                root=str(self.root),
            )
        canonical = self._realpath(joined, reference)
        if not self._inside_root(canonical):
            raise PathTraversalError(
                f"Path traversal detected: {reference} resolves outside {self.root}",
                path=reference,
                root=str(self.root),
            )
        return canonical

    def fetch(self, key: str) -> bytes:
        if not self._inside_root(self._realpath(key, key)):
            raise PathTraversalError(f"Refusing to read outside {self.root}: {key}", path=key)
        try:
            with open(key, "rb") as f:
                return f.read()
        except FileNotFoundError as exc:
            raise SourceNotFoundError(f"Source file not found: {key}", path=key) from exc
        except IsADirectoryError as exc:
            raise SourceNotFoundError(f"Source is a directory: {key}", path=key) from exc
        except OSError as exc:
            raise SourceNotFoundError(f"Cannot read source {key}: {exc.strerror}", path=key) from exc

    def relative(self, key: str) -> str:
        """Root-relative form of a key, for messages."""
        return os.path.relpath(key, self.root)


class InMemoryResolver:
    """
    Resolve references against an in-memory mapping of root-relative POSIX
    paths to bytes. Useful for embedding and for tests; applies the same
    containment rules as FileResolver (there are no symlinks to follow).
    """

    def __init__(self, files: Mapping[str, bytes | str] | None = None) -> None:
        self.files: dict[str, bytes] = {}
        self.fetched: list[str] = []
        for path, content in (files or {}).items():
            self.add(path, content)

    def add(self, path: str, content: bytes | str) -> None:
        key = posixpath.normpath(path.lstrip("/"))
        self.files[key] = content.encode("utf-8") if isinstance(content, str) else bytes(content)

    def resolve_path(self, reference: str, base: str | None) -> str:
        _reject_unsafe(reference)
        if reference.startswith("/"):
            raise PathTraversalError(f"Absolute paths are not allowed: {reference}", path=reference)
        base_dir = posixpath.dirname(base) if base else ""
        key = posixpath.normpath(posixpath.join(base_dir, reference))
        if key == ".." or key.startswith("../"):
            raise PathTraversalError(
                f"Path traversal detected: {reference} escapes the project root",
                path=reference,
            )
        return key

    def fetch(self, key: str) -> bytes:
        self.fetched.append(key)
        try:
            return self.files[key]
        except KeyError:
            raise SourceNotFoundError(f"Source not found: {key}", path=key) from None

    def relative(self, key: str) -> str:
        return key
