from __future__ import annotations

import pytest

import bav_config
from bav_config import (
    DEFAULT_MAX_ATTACHMENT_SIZE,
    MAX_ATTACHMENT_SIZE_ENV,
    VerificationPolicy,
    canonical_algorithm,
    max_attachment_size,
    parse_size,
)
from bav_errors import DigestAlgorithmUnsupported


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("128", 128),
        ("0", 0),
        ("64KiB", 64 * 1024),
        ("1kb", 1000),
        ("2 MiB", 2 * 1024 * 1024),
        ("1.5MB", 1_500_000),
        ("1GiB", 1024**3),
    ],
)
def test_parse_size(value: str, expected: int) -> None:
    assert parse_size(value) == expected


@pytest.mark.parametrize("value", ["-1", "abc", "12 parsecs", "1.2.3"])
def test_parse_size_rejects_garbage(value: str) -> None:
    with pytest.raises(ValueError):
        parse_size(value)


def test_max_attachment_size_defaults_when_unset() -> None:
    assert max_attachment_size({}) == DEFAULT_MAX_ATTACHMENT_SIZE
    assert max_attachment_size({MAX_ATTACHMENT_SIZE_ENV: "  "}) == DEFAULT_MAX_ATTACHMENT_SIZE


def test_max_attachment_size_reads_override() -> None:
    assert max_attachment_size({MAX_ATTACHMENT_SIZE_ENV: "128"}) == 128


def test_max_attachment_size_falls_back_on_unparsable(caplog) -> None:
    with caplog.at_level("WARNING", logger=bav_config.__name__):
        assert max_attachment_size({MAX_ATTACHMENT_SIZE_ENV: "lots"}) == DEFAULT_MAX_ATTACHMENT_SIZE
    assert MAX_ATTACHMENT_SIZE_ENV in caplog.text


def test_max_attachment_size_uses_process_environment(monkeypatch) -> None:
    monkeypatch.setenv(MAX_ATTACHMENT_SIZE_ENV, "1KiB")
    assert max_attachment_size() == 1024


def test_policy_explicit_ceiling_wins_over_environment() -> None:
    policy = VerificationPolicy.from_env(
        max_artifact_bytes=10, environ={MAX_ATTACHMENT_SIZE_ENV: "128"}
    )
    assert policy.max_artifact_bytes == 10


def test_policy_empty_predicate_filter_is_none() -> None:
    policy = VerificationPolicy.from_env(predicate_type="", environ={})
    assert policy.predicate_type is None
    assert policy.check_claims is True
    assert policy.ignore_tlog is False


def test_canonical_algorithm() -> None:
    assert canonical_algorithm(None) == "sha256"
    assert canonical_algorithm("SHA512") == "sha512"
    with pytest.raises(DigestAlgorithmUnsupported):
        canonical_algorithm("md5")


def test_cosign_size_setting_is_honoured() -> None:
    environ = {bav_config.COSIGN_MAX_ATTACHMENT_SIZE_ENV: "2KiB"}
    assert max_attachment_size(environ) == 2048


def test_bav_size_setting_wins_over_cosign() -> None:
    environ = {
        MAX_ATTACHMENT_SIZE_ENV: "128",
        bav_config.COSIGN_MAX_ATTACHMENT_SIZE_ENV: "2KiB",
    }
    assert max_attachment_size(environ) == 128


def test_unparsable_cosign_setting_names_it(caplog) -> None:
    environ = {bav_config.COSIGN_MAX_ATTACHMENT_SIZE_ENV: "lots"}
    with caplog.at_level("WARNING", logger=bav_config.__name__):
        assert max_attachment_size(environ) == DEFAULT_MAX_ATTACHMENT_SIZE
    assert "COSIGN_MAX_ATTACHMENT_SIZE" in caplog.text
