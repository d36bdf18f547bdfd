"""
Value extractors for trace verification.

An extractor is a plain callable ``(source_bytes, query) -> str`` registered
under a kind tag. Dispatch happens at call time through an
``ExtractorRegistry``; adding a kind means registering a function, not
subclassing anything.

Shipped kinds:
- ``regex``: first capture group, or the whole match
- ``jsonpath``: JSONPath over a JSON document (jsonpath-ng)
- ``csv``: ``<row>,<column>`` over the data rows of a CSV file with a
  header; column is a header name or a 0-based index
"""

import csv
import io
import json
import logging
import posixpath
import re
from typing import Any, Callable, Mapping

from jsonpath_ng import parse as parse_jsonpath
from jsonpath_ng.exceptions import JsonPathLexerError, JsonPathParserError

from .canonical import canonical_json
from .errors import EncodingError, ExtractionError
from .models import Selector, TraceBlock


logger = logging.getLogger(__name__)

Extractor = Callable[[bytes, str], str]

REGEX = "regex"
JSONPATH = "jsonpath"
CSV = "csv"

_EXTENSION_KINDS = {
    ".json": JSONPATH,
    ".csv": CSV,
}


def _decode(source: bytes) -> str:
    return source.decode("utf-8", errors="replace")


def extract_regex(source: bytes, query: str) -> str:
    try:
        pattern = re.compile(query, re.MULTILINE)
    except (re.error, OverflowError, RecursionError) as exc:
        raise ExtractionError(f"Invalid regex {query!r}: {exc}", ExtractionError.MALFORMED) from exc
    match = pattern.search(_decode(source))
    if match is None:
        raise ExtractionError(f"Regex {query!r} found no matches", ExtractionError.NOT_FOUND)
    if pattern.groups and match.group(1) is not None:
        return match.group(1)
    return match.group(0)


def _scalar_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float)):
        return json.dumps(value)
    try:
        return canonical_json(value)
    except EncodingError as exc:
        raise ExtractionError(f"Extracted value has no text form: {exc.message}") from exc


def extract_jsonpath(source: bytes, query: str) -> str:
    try:
        data = json.loads(source)
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
        raise ExtractionError(f"Invalid JSON for extraction: {exc}", ExtractionError.MALFORMED) from exc
    try:
        expression = parse_jsonpath(query)
    except (JsonPathLexerError, JsonPathParserError) as exc:
        raise ExtractionError(f"Invalid JSONPath {query!r}: {exc}", ExtractionError.MALFORMED) from exc

    try:
        matches = [m.value for m in expression.find(data)]
    except (ValueError, TypeError, RecursionError) as exc:
        raise ExtractionError(f"Cannot evaluate JSONPath {query!r}: {exc}", ExtractionError.MALFORMED) from exc
    if not matches:
        raise ExtractionError(f"JSONPath {query!r} found no matches", ExtractionError.NOT_FOUND)
    if len(matches) == 1:
        return _scalar_text(matches[0])
    return _scalar_text(matches)


def extract_csv(source: bytes, query: str) -> str:
    row_part, sep, column_part = query.partition(",")
    row_part, column_part = row_part.strip(), column_part.strip()
    if not sep or not row_part.isdigit() or not column_part:
        raise ExtractionError(
            f"CSV selector must be '<row>,<column>', got {query!r}", ExtractionError.MALFORMED
        )
    try:
        rows = list(csv.reader(io.StringIO(source.decode("utf-8-sig"))))
    except (UnicodeDecodeError, csv.Error) as exc:
        raise ExtractionError(f"Invalid CSV for extraction: {exc}", ExtractionError.MALFORMED) from exc
    if not rows:
        raise ExtractionError("CSV source is empty", ExtractionError.NOT_FOUND)

    header, data = rows[0], rows[1:]
    if column_part.isdigit():
        col = int(column_part)
    else:
        names = [h.strip() for h in header]
        if column_part not in names:
            raise ExtractionError(f"CSV column {column_part!r} not in header", ExtractionError.NOT_FOUND)
        col = names.index(column_part)

    row = int(row_part)
    if row >= len(data) or col >= len(data[row]):
        raise ExtractionError(f"CSV cell {query!r} is out of range", ExtractionError.NOT_FOUND)
    return data[row][col].strip()


class ExtractorRegistry:
    """Kind tag to extractor function, resolved at call time."""

    def __init__(self, extractors: Mapping[str, Extractor] | None = None) -> None:
        self._extractors: dict[str, Extractor] = {}
        for kind, fn in (extractors or {}).items():
            self.register(kind, fn)

    def register(self, kind: str, extractor: Extractor) -> None:
        self._extractors[kind.lower()] = extractor

    def kinds(self) -> list[str]:
        return sorted(self._extractors)

    def get(self, kind: str) -> Extractor:
        try:
            return self._extractors[kind.lower()]
        except KeyError:
            raise ExtractionError(
                f"Unknown extraction method: {kind}", ExtractionError.MALFORMED, kind=kind
            ) from None

    def extract(self, source: bytes, selector: Selector, kind: str) -> str:
        extractor = self.get(kind)
        logger.debug("extracting with %s: %s", kind, selector.query)
        return extractor(source, selector.query)


def default_extractors() -> ExtractorRegistry:
    return ExtractorRegistry({
        REGEX: extract_regex,
        JSONPATH: extract_jsonpath,
        CSV: extract_csv,
    })


def select_kind(trace: TraceBlock) -> str:
    """
    Kind for a trace: explicit ``extractor`` field, then the selector's own
    kind, then the source extension, then regex.
    """
    if trace.extractor:
        return trace.extractor.lower()
    if trace.selector is not None and trace.selector.kind:
        return trace.selector.kind.lower()
    ext = posixpath.splitext(trace.source.lower())[1]
    return _EXTENSION_KINDS.get(ext, REGEX)
