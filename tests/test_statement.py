from __future__ import annotations

import json
from pathlib import Path

import pytest

import bav_statement
from bav_config import VerificationPolicy
from bav_envelope import SignedEnvelope, load_legacy_envelope
from bav_errors import FormatError, PredicateMismatch, SubjectAbsent, SubjectDigestMismatch
from bav_statement import Statement, Subject, check_subjects, match, parse_statement

BLOB_SHA256 = "658781cd4ed9bca60dacd09f7bb914bb51502e8b5d619f57f39a1d652596cc24"
OTHER_SHA256 = "0da559c2f127230a1fabcfbb20d5db8dba765923c6efc6f483165119c4c2c5d4"


def _envelope(document: object, payload_type: str = "application/vnd.in-toto+json") -> SignedEnvelope:
    return SignedEnvelope(
        payload_type=payload_type,
        payload=json.dumps(document).encode("utf-8"),
        signatures=(),
    )


def _policy(**kwargs) -> VerificationPolicy:
    return VerificationPolicy(**kwargs)


def test_parse_cosign_statement(vectors: Path) -> None:
    statement = parse_statement(load_legacy_envelope(vectors / "multiple-subjects.dsse.json"))
    assert statement.type == "https://in-toto.io/Statement/v0.1"
    assert statement.predicate_type == "https://slsa.dev/provenance/v0.2"
    assert [s.name for s in statement.subjects] == ["blob", "other"]
    assert statement.predicate["buildType"] == "x"


def test_parse_rejects_non_intoto_payload_type(make_statement) -> None:
    with pytest.raises(FormatError, match="payloadType"):
        parse_statement(_envelope(make_statement(), payload_type="text/plain"))


def test_parse_rejects_malformed_json() -> None:
    envelope = SignedEnvelope("application/vnd.in-toto+json", b"{nope", ())
    with pytest.raises(FormatError):
        parse_statement(envelope)


def test_parse_requires_predicate_type(make_statement) -> None:
    document = make_statement()
    document.pop("predicateType")
    with pytest.raises(FormatError):
        parse_statement(_envelope(document))


def test_parse_rejects_non_string_digest(make_statement) -> None:
    document = make_statement([{"sha256": 12}])
    with pytest.raises(FormatError):
        parse_statement(_envelope(document))


def test_missing_subject_key_is_empty(make_statement) -> None:
    document = make_statement()
    document.pop("subject")
    assert parse_statement(_envelope(document)).subjects == ()


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("slsaprovenance", "https://slsa.dev/provenance/v0.2"),
        ("slsaprovenance1", "https://slsa.dev/provenance/v1"),
        ("custom", "https://cosign.sigstore.dev/attestation/v1"),
        ("https://example.com/p/v1", "https://example.com/p/v1"),
        ("", None),
        (None, None),
    ],
)
def test_resolve_predicate_type(value, expected) -> None:
    assert bav_statement.resolve_predicate_type(value) == expected


def test_predicate_filter_alias_matches(vectors: Path) -> None:
    envelope = load_legacy_envelope(vectors / "slsa-provenance.dsse.json")
    statement = match(envelope, BLOB_SHA256, "sha256", _policy(predicate_type="slsaprovenance"))
    assert statement.predicate_type == "https://slsa.dev/provenance/v0.2"


@pytest.mark.parametrize("predicate_filter", ["custom", "notreallyslsaprovenance"])
def test_predicate_filter_mismatch(vectors: Path, predicate_filter: str) -> None:
    envelope = load_legacy_envelope(vectors / "slsa-provenance.dsse.json")
    with pytest.raises(PredicateMismatch):
        match(envelope, BLOB_SHA256, "sha256", _policy(predicate_type=predicate_filter))


def test_predicate_filter_applies_without_claims(vectors: Path) -> None:
    envelope = load_legacy_envelope(vectors / "slsa-provenance.dsse.json")
    with pytest.raises(PredicateMismatch):
        match(envelope, None, "sha256", _policy(predicate_type="custom", check_claims=False))


def test_empty_subjects_is_subject_absent(vectors: Path) -> None:
    envelope = load_legacy_envelope(vectors / "empty-subject.dsse.json")
    with pytest.raises(SubjectAbsent):
        match(envelope, BLOB_SHA256, "sha256", _policy())


def test_subject_without_algorithm_is_mismatch_not_error(vectors: Path) -> None:
    envelope = load_legacy_envelope(vectors / "missing-sha256.dsse.json")
    with pytest.raises(SubjectDigestMismatch):
        match(envelope, BLOB_SHA256, "sha256", _policy())


def test_any_subject_may_match(vectors: Path) -> None:
    envelope = load_legacy_envelope(vectors / "multiple-subjects.dsse.json")
    match(envelope, BLOB_SHA256, "sha256", _policy())
    match(envelope, OTHER_SHA256, "sha256", _policy())


def test_no_subject_matches(vectors: Path) -> None:
    envelope = load_legacy_envelope(vectors / "multiple-subjects-invalid.dsse.json")
    with pytest.raises(SubjectDigestMismatch):
        match(envelope, BLOB_SHA256, "sha256", _policy())


def test_claims_disabled_ignores_subjects(vectors: Path) -> None:
    for name in ("empty-subject", "missing-sha256", "multiple-subjects-invalid"):
        envelope = load_legacy_envelope(vectors / f"{name}.dsse.json")
        match(envelope, None, "sha256", _policy(check_claims=False))


def test_digest_comparison_is_case_insensitive() -> None:
    statement = Statement(
        type="",
        predicate_type="x",
        subjects=(Subject("a", {"SHA256": BLOB_SHA256.upper()}),),
    )
    assert check_subjects(statement, BLOB_SHA256, "sha256").name == "a"


def test_skips_subjects_lacking_algorithm() -> None:
    statement = Statement(
        type="",
        predicate_type="x",
        subjects=(
            Subject("sha512-only", {"sha512": "ab" * 64}),
            Subject("match", {"sha256": BLOB_SHA256}),
        ),
    )
    assert check_subjects(statement, BLOB_SHA256, "sha256").name == "match"


def test_claims_require_digest(vectors: Path) -> None:
    envelope = load_legacy_envelope(vectors / "slsa-provenance.dsse.json")
    with pytest.raises(FormatError):
        match(envelope, None, "sha256", _policy())
