"""Seal and verify tests: tamper detection, signature binding, version chain."""

from datetime import date

import pytest

from rhodi_kernel import (
    DocStatus,
    ErrorCode,
    IntegrityError,
    KeyPair,
    SigningError,
    TracedDocument,
    UnknownProtocolVersionError,
    compute_version_hash,
    parse_document,
    render_document,
    seal_document,
    verify_document,
)
from rhodi_kernel.sign import load_public_key, verify_signature


@pytest.fixture
def document() -> TracedDocument:
    return TracedDocument.create("T", "Body text.")


class TestSeal:
    """Sealing a document."""

    def test_end_to_end(self, document, keypair):
        sealed = seal_document(document, keypair)
        fm = sealed.frontmatter

        assert fm.doc_status == DocStatus.PUBLISHED
        assert fm.doc_version == 1
        assert fm.prev_version_hash is None
        assert len(fm.version_hash) == 64
        assert len(fm.signature) == 128
        assert fm.public_key == keypair.public_key_hex
        assert fm.modified_at is not None

        result = verify_document(sealed, keypair.public_key_hex)
        assert result.valid, f"Expected valid document, got: {result.errors}"

    def test_signature_covers_raw_digest(self, document, keypair):
        sealed = seal_document(document, keypair)
        digest = bytes.fromhex(sealed.frontmatter.version_hash)
        assert digest == compute_version_hash(sealed)
        assert verify_signature(keypair.public_key_hex, sealed.frontmatter.signature, digest)

    def test_original_untouched(self, document, keypair):
        before = document.clone()
        seal_document(document, keypair)
        assert document == before

    def test_original_untouched_on_failure(self, document):
        document.frontmatter.protocol_version = "9.9"
        before = document.clone()
        with pytest.raises(UnknownProtocolVersionError):
            seal_document(document, KeyPair.generate())
        assert document == before

    def test_rejects_non_keypair(self, document):
        with pytest.raises(SigningError):
            seal_document(document, "not-a-key")

    def test_revoked_stays_revoked(self, document, keypair):
        document.frontmatter.doc_status = DocStatus.REVOKED
        sealed = seal_document(document, keypair)
        assert sealed.frontmatter.doc_status == DocStatus.REVOKED

    def test_deterministic_for_same_content(self, document, keypair):
        sealed = seal_document(document, keypair)
        assert compute_version_hash(sealed) == compute_version_hash(sealed.clone())


class TestVersionChain:
    """Re-sealing advances the chain by exactly one."""

    def test_reseal_chains_to_previous_hash(self, document, keypair):
        first = seal_document(document, keypair)
        first.body += "\n\nMore text."
        second = seal_document(first, keypair)

        assert second.frontmatter.doc_version == 2
        assert second.frontmatter.prev_version_hash == first.frontmatter.version_hash
        assert second.frontmatter.version_hash != first.frontmatter.version_hash
        assert verify_document(second, keypair.public_key_hex).valid

    def test_chain_is_monotonic(self, document, keypair):
        current = document
        hashes = []
        for expected_version in range(1, 5):
            current = seal_document(current, keypair)
            assert current.frontmatter.doc_version == expected_version
            if hashes:
                assert current.frontmatter.prev_version_hash == hashes[-1]
            hashes.append(current.frontmatter.version_hash)

    def test_chain_fields_are_hashed(self, document, keypair):
        sealed = seal_document(document, keypair)
        sealed.frontmatter.doc_version = 7
        result = verify_document(sealed, keypair.public_key_hex)
        assert ErrorCode.INTEGRITY in result.codes


class TestTamperDetection:
    """Integrity and authenticity are reported independently."""

    def test_body_tamper_is_integrity_failure(self, document, keypair):
        sealed = seal_document(document, keypair)
        sealed.body = "Body text!"
        result = verify_document(sealed, keypair.public_key_hex)

        assert not result.valid
        assert ErrorCode.INTEGRITY in result.codes
        assert not result.integrity_ok
        assert result.authenticity_ok

    def test_frontmatter_tamper_is_integrity_failure(self, document, keypair):
        sealed = seal_document(document, keypair)
        sealed.frontmatter.title = "Other"
        assert ErrorCode.INTEGRITY in verify_document(sealed, keypair.public_key_hex).codes

    def test_protocol_version_is_bound(self, document, keypair):
        sealed = seal_document(document, keypair)
        sealed.frontmatter.protocol_version = "1.1"
        assert ErrorCode.INTEGRITY in verify_document(sealed, keypair.public_key_hex).codes

    def test_wrong_key_is_authenticity_failure(self, document, keypair, other_keypair):
        sealed = seal_document(document, keypair)
        result = verify_document(sealed, other_keypair.public_key_hex)

        assert ErrorCode.AUTHENTICITY in result.codes
        assert result.integrity_ok
        assert not result.authenticity_ok

    def test_both_failures_reported(self, document, keypair, other_keypair):
        sealed = seal_document(document, keypair)
        sealed.body = "changed"
        codes = verify_document(sealed, other_keypair.public_key_hex).codes
        assert ErrorCode.INTEGRITY in codes
        assert ErrorCode.AUTHENTICITY in codes

    def test_canonical_whitespace_changes_do_not_break_seal(self, document, keypair):
        sealed = seal_document(document, keypair)
        sealed.body = "Body text.   \r\n"
        assert verify_document(sealed, keypair.public_key_hex).valid

    def test_unsealed_document(self, document, keypair):
        result = verify_document(document, keypair.public_key_hex)
        assert ErrorCode.NOT_SEALED in result.codes
        assert ErrorCode.SIGNATURE_REQUIRED in result.codes

    def test_truncated_signature(self, document, keypair):
        sealed = seal_document(document, keypair)
        sealed.frontmatter.signature = sealed.frontmatter.signature[:64]
        assert ErrorCode.AUTHENTICITY in verify_document(sealed, keypair.public_key_hex).codes

    def test_invalid_public_key(self, document, keypair):
        sealed = seal_document(document, keypair)
        result = verify_document(sealed, "zz")
        assert ErrorCode.AUTHENTICITY in result.codes

    def test_raise_for_errors(self, document, keypair):
        sealed = seal_document(document, keypair)
        sealed.body = "changed"
        with pytest.raises(IntegrityError):
            verify_document(sealed, keypair.public_key_hex).raise_for_errors()


class TestProtocolGate:
    """Unknown versions abort before hashing."""

    def test_unknown_version_aborts(self, document, keypair):
        sealed = seal_document(document, keypair)
        sealed.frontmatter.protocol_version = "9.0"
        result = verify_document(sealed, keypair.public_key_hex)
        assert result.codes == [ErrorCode.UNKNOWN_PROTOCOL_VERSION]

    def test_v2_document_round_trip(self, document, keypair):
        document.frontmatter.protocol_version = "2.0"
        sealed = seal_document(document, keypair)
        sealed.body = "Body text.\n\n\n"
        assert verify_document(sealed, keypair.public_key_hex).valid


class TestFileRoundTrip:
    """A sealed document survives rendering and parsing."""

    def test_render_parse_verify(self, document, keypair):
        sealed = seal_document(document, keypair)
        reparsed = parse_document(render_document(sealed))

        assert reparsed.frontmatter == sealed.frontmatter
        assert verify_document(reparsed, keypair.public_key_hex).valid

    def test_unquoted_dates_in_extra(self, document, keypair):
        text = render_document(document).replace(
            "---\n",
            "---\nextra:\n  published_on: 2024-01-01\n  reviewed_at: 2024-02-03T04:05:06Z\n  history: [2023-12-31]\n",
            1,
        )
        parsed = parse_document(text)
        assert parsed.frontmatter.extra == {
            "published_on": "2024-01-01",
            "reviewed_at": "2024-02-03T04:05:06.000000Z",
            "history": ["2023-12-31"],
        }

        sealed = seal_document(parsed, keypair)
        reparsed = parse_document(render_document(sealed))

        assert reparsed.frontmatter == sealed.frontmatter
        assert verify_document(reparsed, keypair.public_key_hex).valid

    def test_date_objects_in_extra(self, keypair):
        document = TracedDocument.create("T", "Body text.", due=date(2024, 5, 1))
        sealed = seal_document(document, keypair)

        assert sealed.frontmatter.to_dict()["extra"] == {"due": "2024-05-01"}
        assert verify_document(sealed, keypair.public_key_hex).valid

    def test_pem_public_key_accepted(self, document, keypair):
        from cryptography.hazmat.primitives import serialization

        sealed = seal_document(document, keypair)
        pem = keypair.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("utf-8")
        assert load_public_key(pem).public_bytes_raw() == bytes.fromhex(keypair.public_key_hex)
        assert verify_document(sealed, pem).valid


class TestKeyPair:
    """Key material handling."""

    def test_seed_round_trip(self, keypair):
        restored = KeyPair.from_seed_hex(keypair.seed_hex())
        assert restored.public_key_hex == keypair.public_key_hex

    @pytest.mark.parametrize("seed", ["zz", "ab" * 16, ""])
    def test_bad_seed(self, seed):
        with pytest.raises(SigningError):
            KeyPair.from_seed_hex(seed)
