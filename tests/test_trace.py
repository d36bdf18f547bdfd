"""Trace evidence tests: extractors, value comparison, witnesses, agents."""

import json
from dataclasses import replace

import pytest

from rhodi_kernel import (
    ErrorCode,
    ExtractionError,
    ExtractorRegistry,
    InMemoryResolver,
    KeyPair,
    Selector,
    TraceBlock,
    TraceMethod,
    TraceVerifier,
    attach_witness,
    compute_content_hash,
    default_extractors,
)
from rhodi_kernel.extractors import extract_csv, extract_jsonpath, extract_regex, select_kind
from rhodi_kernel.models import AgentMetadata
from rhodi_kernel.trace import compare_values


REPORT = b"Quarterly report\nRevenue: 1,200 USD\nMargin: 85%\n"

METRICS = json.dumps({
    "totals": {"revenue": 120, "margin": 0.85, "label": "Q3"},
    "regions": [{"name": "north"}, {"name": "south"}],
}).encode("utf-8")

TABLE = b"region,revenue,margin\nnorth,700,80%\nsouth,500,90%\n"


class TestRegexExtractor:
    """First capture group, or the whole match."""

    def test_capture_group(self):
        assert extract_regex(REPORT, r"Revenue: ([\d,]+)") == "1,200"

    def test_whole_match(self):
        assert extract_regex(REPORT, r"\d+%") == "85%"

    def test_multiline_anchor(self):
        assert extract_regex(REPORT, r"^Margin: (.*)$") == "85%"

    def test_no_match(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_regex(REPORT, r"Profit: (\d+)")
        assert exc_info.value.reason == ExtractionError.NOT_FOUND

    def test_invalid_pattern(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_regex(REPORT, r"([unclosed")
        assert exc_info.value.reason == ExtractionError.MALFORMED

    def test_repetition_too_large(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_regex(REPORT, r"a{99999999999}")
        assert exc_info.value.reason == ExtractionError.MALFORMED


class TestJsonPathExtractor:
    """JSONPath over JSON sources."""

    def test_scalar(self):
        assert extract_jsonpath(METRICS, "$.totals.revenue") == "120"
        assert extract_jsonpath(METRICS, "$.totals.margin") == "0.85"
        assert extract_jsonpath(METRICS, "$.totals.label") == "Q3"

    def test_multiple_matches_serialized(self):
        assert extract_jsonpath(METRICS, "$.regions[*].name") == '["north","south"]'

    def test_object_match_serialized(self):
        assert extract_jsonpath(METRICS, "$.regions[0]") == '{"name":"north"}'

    def test_no_match(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_jsonpath(METRICS, "$.totals.profit")
        assert exc_info.value.reason == ExtractionError.NOT_FOUND

    def test_invalid_json(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_jsonpath(b"{not json", "$.a")
        assert exc_info.value.reason == ExtractionError.MALFORMED

    @pytest.mark.parametrize("query", ["$.totals[", "$.regions[0:2:0]"])
    def test_unusable_path(self, query):
        with pytest.raises(ExtractionError) as exc_info:
            extract_jsonpath(METRICS, query)
        assert exc_info.value.reason == ExtractionError.MALFORMED

    def test_deeply_nested_json(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_jsonpath(b"[" * 100000 + b"]" * 100000, "$[0]")
        assert exc_info.value.reason == ExtractionError.MALFORMED


class TestCsvExtractor:
    """Row/column coordinates over data rows."""

    def test_header_name(self):
        assert extract_csv(TABLE, "0,revenue") == "700"

    def test_column_index(self):
        assert extract_csv(TABLE, "1,2") == "90%"

    def test_out_of_range(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_csv(TABLE, "5,revenue")
        assert exc_info.value.reason == ExtractionError.NOT_FOUND

    def test_unknown_column(self):
        with pytest.raises(ExtractionError) as exc_info:
            extract_csv(TABLE, "0,profit")
        assert exc_info.value.reason == ExtractionError.NOT_FOUND

    @pytest.mark.parametrize("query", ["revenue", "x,revenue", "0,"])
    def test_malformed_selector(self, query):
        with pytest.raises(ExtractionError) as exc_info:
            extract_csv(TABLE, query)
        assert exc_info.value.reason == ExtractionError.MALFORMED


class TestExtractorRegistry:
    """Dispatch by kind tag at call time."""

    def test_default_kinds(self):
        assert default_extractors().kinds() == ["csv", "jsonpath", "regex"]

    def test_unknown_kind_is_malformed(self):
        with pytest.raises(ExtractionError) as exc_info:
            default_extractors().extract(REPORT, Selector("x"), "xpath")
        assert exc_info.value.reason == ExtractionError.MALFORMED

    def test_register_custom_kind(self):
        registry = ExtractorRegistry()
        registry.register("Lines", lambda source, query: source.decode().splitlines()[int(query)])
        assert registry.extract(REPORT, Selector("1"), "lines") == "Revenue: 1,200 USD"

    @pytest.mark.parametrize("trace,kind", [
        (TraceBlock(source="a.txt", expected="x", extractor="CSV", selector=Selector("q", kind="regex")), "csv"),
        (TraceBlock(source="a.txt", expected="x", selector=Selector("q", kind="jsonpath")), "jsonpath"),
        (TraceBlock(source="data/A.JSON", expected="x", selector=Selector("q")), "jsonpath"),
        (TraceBlock(source="table.csv", expected="x", selector=Selector("q")), "csv"),
        (TraceBlock(source="notes.md", expected="x", selector=Selector("q")), "regex"),
    ])
    def test_select_kind(self, trace, kind):
        assert select_kind(trace) == kind


class TestCompareValues:
    """Exact after trimming, or typed numeric comparison."""

    @pytest.mark.parametrize("actual,expected", [
        ("abc", " abc "),
        ("85%", "85.0 %"),
        ("1,200", "1200"),
        ("0.50", ".5"),
        ("-3", "-3.0"),
    ])
    def test_equal(self, actual, expected):
        assert compare_values(actual, expected)

    @pytest.mark.parametrize("actual,expected", [
        ("85%", "85"),
        ("12", "13"),
        ("abc", "abd"),
        ("1.2.3", "1.2"),
    ])
    def test_not_equal(self, actual, expected):
        assert not compare_values(actual, expected)


@pytest.fixture
def sources() -> InMemoryResolver:
    return InMemoryResolver({
        "report.txt": REPORT,
        "metrics.json": METRICS,
        "sub/table.csv": TABLE,
    })


def _locked(trace: TraceBlock, resolver: InMemoryResolver, key: str) -> TraceBlock:
    return replace(trace, hash=compute_content_hash(resolver.files[key]))


class TestTraceVerifier:
    """Full per-trace pipeline."""

    def test_verified_regex_trace(self, sources):
        trace = _locked(TraceBlock(source="report.txt", expected="1200", selector=Selector(r"Revenue: ([\d,]+)")), sources, "report.txt")
        outcome = TraceVerifier(sources).verify(trace, None)

        assert outcome.verified, outcome.problems
        assert outcome.actual == "1,200"

    def test_verified_jsonpath_trace(self, sources):
        trace = _locked(TraceBlock(source="metrics.json", expected="0.85", selector=Selector("$.totals.margin")), sources, "metrics.json")
        assert TraceVerifier(sources).verify(trace, None).verified

    def test_source_relative_to_document(self, sources):
        trace = _locked(TraceBlock(source="table.csv", expected="80%", selector=Selector("0,margin")), sources, "sub/table.csv")
        outcome = TraceVerifier(sources).verify(trace, "sub/doc.tmd")
        assert outcome.verified, outcome.problems

    def test_claim_mismatch(self, sources):
        trace = _locked(TraceBlock(source="report.txt", expected="1300", selector=Selector(r"Revenue: ([\d,]+)")), sources, "report.txt")
        outcome = TraceVerifier(sources).verify(trace, None)

        assert not outcome.verified
        assert [p.code for p in outcome.problems] == [ErrorCode.CLAIM_MISMATCH]
        assert outcome.problems[0].details["actual"] == "1,200"

    def test_missing_hash_still_extracts(self, sources):
        trace = TraceBlock(source="report.txt", expected="1200", selector=Selector(r"Revenue: ([\d,]+)"))
        outcome = TraceVerifier(sources).verify(trace, None)

        assert [p.code for p in outcome.problems] == [ErrorCode.HASH_MISSING]
        assert outcome.actual == "1,200"

    def test_hash_mismatch(self, sources):
        trace = TraceBlock(source="report.txt", expected="1200", hash="sha256:" + "1" * 64, selector=Selector(r"Revenue: ([\d,]+)"))
        outcome = TraceVerifier(sources).verify(trace, None)
        assert [p.code for p in outcome.problems] == [ErrorCode.HASH_MISMATCH]

    def test_missing_source(self, sources):
        outcome = TraceVerifier(sources).verify(TraceBlock(source="gone.txt", expected="1"), None)
        assert [p.code for p in outcome.problems] == [ErrorCode.SOURCE_MISSING]

    def test_traversal(self, sources):
        outcome = TraceVerifier(sources).verify(TraceBlock(source="../../etc/passwd", expected="root"), None)
        assert [p.code for p in outcome.problems] == [ErrorCode.PATH_TRAVERSAL]
        assert sources.fetched == []

    def test_extraction_failure(self, sources):
        trace = _locked(TraceBlock(source="report.txt", expected="1", selector=Selector(r"Profit: (\d+)")), sources, "report.txt")
        outcome = TraceVerifier(sources).verify(trace, None)

        assert [p.code for p in outcome.problems] == [ErrorCode.EXTRACTION_FAILED]
        assert outcome.problems[0].details["reason"] == ExtractionError.NOT_FOUND

    @pytest.mark.parametrize("source, query", [
        ("report.txt", r"a{99999999999}"),
        ("metrics.json", "$.regions[0:2:0]"),
    ])
    def test_selector_the_extractor_cannot_run(self, sources, source, query):
        trace = _locked(TraceBlock(source=source, expected="1", selector=Selector(query)), sources, source)
        outcome = TraceVerifier(sources).verify(trace, None)

        assert [p.code for p in outcome.problems] == [ErrorCode.EXTRACTION_FAILED]
        assert outcome.problems[0].details["reason"] == ExtractionError.MALFORMED

    def test_literal_claim_without_selector(self, sources):
        found = _locked(TraceBlock(source="report.txt", expected="Margin: 85%"), sources, "report.txt")
        missing = _locked(TraceBlock(source="report.txt", expected="Margin: 90%"), sources, "report.txt")
        verifier = TraceVerifier(sources)

        assert verifier.verify(found, None).verified
        assert [p.code for p in verifier.verify(missing, None).problems] == [ErrorCode.CLAIM_MISMATCH]

    def test_confidence_out_of_range(self, sources):
        trace = _locked(TraceBlock(source="report.txt", expected="Quarterly", confidence=1.5), sources, "report.txt")
        outcome = TraceVerifier(sources).verify(trace, None)
        assert [p.code for p in outcome.problems] == [ErrorCode.CONFIDENCE_OUT_OF_RANGE]

    def test_lock(self, sources):
        locked = TraceVerifier(sources).lock(TraceBlock(source="report.txt", expected="x"), None)
        assert locked.hash == compute_content_hash(REPORT)
        assert locked.timestamp is not None


class TestAgentTraces:
    """Agent metadata validation."""

    def _trace(self, sources, prompt_hash):
        return _locked(TraceBlock(
            source="report.txt",
            expected="Quarterly",
            method=TraceMethod.AGENT,
            confidence=0.8,
            agent_metadata=AgentMetadata(model="model-x", prompt_hash=prompt_hash),
        ), sources, "report.txt")

    def test_valid_prompt_hash(self, sources):
        outcome = TraceVerifier(sources).verify(self._trace(sources, "sha256:" + "a" * 64), None)
        assert outcome.verified, outcome.problems

    def test_missing_prompt_hash_allowed(self, sources):
        assert TraceVerifier(sources).verify(self._trace(sources, None), None).verified

    @pytest.mark.parametrize("prompt_hash", ["abc", "sha256:" + "A" * 64, "md5:" + "a" * 32])
    def test_invalid_prompt_hash(self, sources, prompt_hash):
        outcome = TraceVerifier(sources).verify(self._trace(sources, prompt_hash), None)
        assert [p.code for p in outcome.problems] == [ErrorCode.AGENT_METADATA_INVALID]


class TestManualTraces:
    """Manual traces are checked by witness signature, not extraction."""

    def _trace(self, sources):
        return _locked(TraceBlock(source="report.txt", expected="Signed off by auditor", method=TraceMethod.MANUAL), sources, "report.txt")

    def test_witnessed_trace_verifies(self, sources, keypair):
        trace = attach_witness(self._trace(sources), keypair)
        outcome = TraceVerifier(sources).verify(trace, None)

        assert outcome.verified, outcome.problems
        assert trace.witness.public_key == keypair.public_key_hex

    def test_missing_witness(self, sources):
        outcome = TraceVerifier(sources).verify(self._trace(sources), None)
        assert [p.code for p in outcome.problems] == [ErrorCode.WITNESS_INVALID]

    def test_witness_covers_expected(self, sources, keypair):
        trace = replace(attach_witness(self._trace(sources), keypair), expected="Something else")
        outcome = TraceVerifier(sources).verify(trace, None)
        assert [p.code for p in outcome.problems] == [ErrorCode.WITNESS_INVALID]

    def test_witness_covers_hash(self, sources, keypair):
        witnessed = attach_witness(self._trace(sources), keypair)
        sources.add("report.txt", REPORT + b"edited\n")
        relocked = _locked(witnessed, sources, "report.txt")

        outcome = TraceVerifier(sources).verify(relocked, None)
        assert [p.code for p in outcome.problems] == [ErrorCode.WITNESS_INVALID]

    def test_witness_from_other_key(self, sources, keypair):
        trace = attach_witness(self._trace(sources), keypair)
        other = KeyPair.generate()
        forged = replace(trace, witness=replace(trace.witness, public_key=other.public_key_hex))
        outcome = TraceVerifier(sources).verify(forged, None)
        assert [p.code for p in outcome.problems] == [ErrorCode.WITNESS_INVALID]
