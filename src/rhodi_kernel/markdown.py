"""
TMD reader and writer.

A TMD file is YAML frontmatter between ``---`` lines followed by a Markdown
body. Fenced blocks tagged ``trace`` or ``include`` hold YAML metadata.
Other fenced blocks are skipped, so a ``trace`` example quoted inside a
``markdown`` fence is not treated as live evidence.
"""

import logging
from typing import Any

import yaml

from .errors import EncodingError, FormatError
from .models import Block, FrontMatter, IncludeBlock, LocatedBlock, TraceBlock, TracedDocument


logger = logging.getLogger(__name__)

FENCE = "```"
FRONTMATTER_DELIMITER = "---"

_BLOCK_TYPES: dict[str, type] = {
    IncludeBlock.KIND: IncludeBlock,
    TraceBlock.KIND: TraceBlock,
}


def parse_document(content: str | bytes, encoding: str = "utf-8") -> TracedDocument:
    """
    Parse TMD text into a TracedDocument.

    Args:
        content: File content, as text or raw bytes
        encoding: Codec used when ``content`` is bytes

    Raises:
        EncodingError: Bytes that do not decode with ``encoding``
        FormatError: Missing delimiters, invalid YAML, invalid fields
    """
    if isinstance(content, (bytes, bytearray)):
        try:
            text = bytes(content).decode(encoding)
        except LookupError as exc:
            raise EncodingError(f"Unknown encoding {encoding!r}", encoding=encoding) from exc
        except UnicodeDecodeError as exc:
            raise EncodingError(
                f"Document is not valid {encoding} at byte {exc.start}",
                encoding=encoding,
                offset=exc.start,
            ) from exc
    else:
        text = content

    if text.startswith("\ufeff"):
        text = text[1:]
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != FRONTMATTER_DELIMITER:
        raise FormatError("Invalid TMD format: missing opening '---' delimiter", line=1)

    for idx in range(1, len(lines)):
        if lines[idx].strip() == FRONTMATTER_DELIMITER:
            closing = idx
            break
    else:
        raise FormatError("Invalid TMD format: missing closing '---' delimiter")

    yaml_text = "".join(lines[1:closing])
    try:
        data = yaml.safe_load(yaml_text)
    except yaml.YAMLError as exc:
        raise FormatError(f"Failed to parse frontmatter: {exc}") from exc

    frontmatter = FrontMatter.from_mapping(data if data is not None else {})
    body = "".join(lines[closing + 1:]).lstrip("\r\n")
    return TracedDocument(frontmatter=frontmatter, body=body)


def _dump_yaml(data: dict[str, Any], sort_keys: bool) -> str:
    return yaml.safe_dump(data, sort_keys=sort_keys, allow_unicode=True, default_flow_style=False)


def render_document(document: TracedDocument) -> str:
    """Serialize a document back to TMD text."""
    fm_yaml = _dump_yaml(document.frontmatter.to_dict(), sort_keys=True)
    return f"{FRONTMATTER_DELIMITER}\n{fm_yaml}{FRONTMATTER_DELIMITER}\n\n{document.body}"


def render_block(block: Block) -> str:
    """Fenced text of a block, without a trailing newline."""
    return f"{FENCE}{block.KIND}\n{_dump_yaml(block.to_dict(), sort_keys=False)}{FENCE}"


def locate_blocks(body: str) -> list[LocatedBlock]:
    """
    Find and parse every trace/include block in a body.

    Raises:
        FormatError: A block is unterminated or holds invalid metadata;
            ``details['line']`` gives the opening fence line
    """
    located: list[LocatedBlock] = []
    offset = 0
    open_kind: str | None = None
    open_start = 0
    open_line = 0
    content: list[str] = []
    in_other_fence = False

    for lineno, raw in enumerate(body.splitlines(keepends=True), start=1):
        line = raw.rstrip("\r\n")
        stripped = line.strip()

        if open_kind is not None:
            if stripped == FENCE:
                block = _parse_block(open_kind, "".join(content), open_line)
                located.append(LocatedBlock(
                    index=len(located),
                    kind=open_kind,
                    start=open_start,
                    end=offset + len(line),
                    line=open_line,
                    block=block,
                ))
                open_kind = None
                content = []
            else:
                content.append(raw)
        elif in_other_fence:
            if stripped == FENCE:
                in_other_fence = False
        elif stripped.startswith(FENCE):
            info = stripped[len(FENCE):].strip()
            if info in _BLOCK_TYPES:
                open_kind = info
                open_start = offset + (len(line) - len(line.lstrip()))
                open_line = lineno
            else:
                in_other_fence = True

        offset += len(raw)

    if open_kind is not None:
        raise FormatError(f"Unterminated {open_kind} block", line=open_line)
    return located


def _parse_block(kind: str, yaml_text: str, line: int) -> Block:
    try:
        data = yaml.safe_load(yaml_text)
    except yaml.YAMLError as exc:
        raise FormatError(f"Invalid {kind} block at line {line}: {exc}", line=line) from exc
    try:
        return _BLOCK_TYPES[kind].from_mapping(data)
    except FormatError as exc:
        details = {**exc.details, "line": line}
        raise FormatError(f"Invalid {kind} block at line {line}: {exc.message}", **details) from exc


def replace_blocks(body: str, replacements: dict[int, Block]) -> str:
    """
    Rewrite the blocks whose index appears in ``replacements``; all other
    text is left byte-for-byte intact.
    """
    if not replacements:
        return body
    located = locate_blocks(body)
    result = body
    for loc in sorted(located, key=lambda b: b.start, reverse=True):
        block = replacements.get(loc.index)
        if block is None:
            continue
        result = result[:loc.start] + render_block(block) + result[loc.end:]
        logger.debug("rewrote %s at line %d", loc.label, loc.line)
    return result
