# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

import time
from typing import Any, Dict, List

import pytest
from pydantic import ValidationError

from coreason_dataguard.exceptions import FileTooLarge, UnsupportedFileType
from coreason_dataguard.models import FieldRule, FieldType, FileMeta, ThreatCategory
from coreason_dataguard.validation import ValidationEngine, sanitize


@pytest.fixture(scope="module")
def engine() -> ValidationEngine:
    return ValidationEngine(max_file_bytes=1024 * 1024)


# --- email ---


def test_email_normalizes_domain(engine: ValidationEngine) -> None:
    result = engine.validate_email("  John.Doe@Example.COM ")
    assert result.valid is True
    assert result.value == "John.Doe@example.com"


@pytest.mark.parametrize(
    "value, message",
    [
        ("", "required"),
        (None, "required"),
        ("a@@b.com", "exactly one @"),
        ("no-at-sign.com", "exactly one @"),
        ("john..doe@example.com", "consecutive dots"),
        ("@example.com", "local part is empty"),
        ("x" * 65 + "@example.com", "local part is too long"),
        ("a@" + "b" * 250 + ".com", "too long"),
        ("john@localhost", "domain is invalid"),
        ("john@exa_mple.com", "domain is invalid"),
        ("john@example.c0m", "domain is invalid"),
        (".john@example.com", "Invalid email format"),
        ("jo hn@example.com", "Invalid email format"),
    ],
)
def test_email_rejections(engine: ValidationEngine, value: Any, message: str) -> None:
    result = engine.validate_email(value)
    assert result.valid is False
    assert message in (result.error or "")


# --- phone ---


@pytest.mark.parametrize(
    "value, expected",
    [
        ("(555) 123-4567", "+1-555-123-4567"),
        ("555.123.4567", "+1-555-123-4567"),
        ("1 555 123 4567", "+1-555-123-4567"),
        ("+44 20 7946 0958", "+442079460958"),
        ("+49 30 1234567890", "+49301234567890"),
    ],
)
def test_phone_formats(engine: ValidationEngine, value: str, expected: str) -> None:
    result = engine.validate_phone(value)
    assert result.valid is True
    assert result.value == expected


@pytest.mark.parametrize(
    "value, message",
    [
        ("", "required"),
        ("555-1234", "too short"),
        ("+1 234 567 890 123 456", "too long"),
        ("555-CALL-NOW", "invalid characters"),
        ("555123456#7", "invalid characters"),
    ],
)
def test_phone_rejections(engine: ValidationEngine, value: str, message: str) -> None:
    result = engine.validate_phone(value)
    assert result.valid is False
    assert message in (result.error or "")


# --- url ---


def test_url_normalizes_scheme_and_host(engine: ValidationEngine) -> None:
    result = engine.validate_url("HTTPS://Example.COM/Path?q=1")
    assert result.valid is True
    assert result.value == "https://example.com/Path?q=1"


@pytest.mark.parametrize(
    "value, message",
    [
        ("", "required"),
        ("ftp://example.com", "HTTP or HTTPS"),
        ("example.com", "HTTP or HTTPS"),
        ("http://", "host is missing"),
        ("http://exa mple.com", "host is invalid"),
        ("http://example.com:99999", "Invalid URL format"),
        ("http://localhost:8000/admin", "Localhost"),
        ("http://127.0.0.1/", "Localhost"),
    ],
)
def test_url_rejections(engine: ValidationEngine, value: str, message: str) -> None:
    result = engine.validate_url(value)
    assert result.valid is False
    assert message in (result.error or "")


def test_local_urls_can_be_allowed() -> None:
    engine = ValidationEngine(allow_local_urls=True)
    assert engine.validate_url("http://localhost:8000").valid is True
    assert engine.validate_url("http://10.0.0.5/status").valid is True


# --- file ---


def test_file_accepted(engine: ValidationEngine) -> None:
    meta = FileMeta(filename="Report.PDF", mime_type="application/pdf", size_bytes=2048)
    result = engine.validate_file(meta)
    assert result.valid is True
    assert result.value == meta


@pytest.mark.parametrize(
    "filename, message",
    [
        ("malware.exe", "not allowed"),
        ("README", "not allowed"),
        ("invoice.exe.pdf", "dangerous"),
        ("../../etc/passwd.txt", "path traversal"),
        ("dir\\file.txt", "path traversal"),
        ("bad|name.txt", "invalid characters"),
    ],
)
def test_file_rejected_by_name(engine: ValidationEngine, filename: str, message: str) -> None:
    meta = FileMeta(filename=filename, size_bytes=10)
    with pytest.raises(UnsupportedFileType, match=message):
        engine.check_file(meta)
    result = engine.validate_file(meta)
    assert result.valid is False
    assert message in (result.error or "")


def test_file_too_large(engine: ValidationEngine) -> None:
    meta = FileMeta(filename="photo.png", size_bytes=5 * 1024 * 1024)
    with pytest.raises(FileTooLarge) as excinfo:
        engine.check_file(meta)
    assert excinfo.value.max_bytes == 1024 * 1024
    assert "exceeds maximum allowed size (1.0MB)" in excinfo.value.message


def test_file_mime_allow_list() -> None:
    engine = ValidationEngine(allowed_mime_types=["image/png"])
    assert engine.validate_file(FileMeta(filename="a.png", mime_type="image/png", size_bytes=1)).valid
    result = engine.validate_file(FileMeta(filename="a.png", mime_type="text/html", size_bytes=1))
    assert result.valid is False
    assert "text/html" in (result.error or "")


# --- object ---


@pytest.fixture
def schema() -> Dict[str, FieldRule]:
    return {
        "email": FieldRule(type=FieldType.EMAIL, required=True),
        "phone": FieldRule(type=FieldType.PHONE),
        "website": FieldRule(type=FieldType.URL),
        "name": FieldRule(type=FieldType.TEXT, required=True, min_length=2, max_length=20),
        "code": FieldRule(type=FieldType.TEXT, pattern=r"^[A-Z]{3}$"),
        "age": FieldRule(type=FieldType.NUMBER, min=18, max=120),
        "subscribed": FieldRule(type=FieldType.BOOLEAN),
    }


def test_validate_object_collects_every_error(engine: ValidationEngine, schema: Dict[str, FieldRule]) -> None:
    data = {
        "email": "not-an-email",
        "phone": "123",
        "website": "ftp://files.example.com",
        "name": "J",
        "code": "abc",
        "age": "17",
        "subscribed": "maybe",
        "ignored": "<b>not in schema</b>",
    }

    result = engine.validate_object(data, schema)

    assert result.valid is False
    assert set(result.errors) == {"email", "phone", "website", "name", "code", "age", "subscribed"}
    assert result.errors["name"] == "name must be at least 2 characters"
    assert result.errors["age"] == "age must be at least 18"
    assert "ignored" not in result.sanitized


def test_validate_object_success(engine: ValidationEngine, schema: Dict[str, FieldRule]) -> None:
    data = {
        "email": "Ann@Example.org",
        "phone": "555 123 4567",
        "name": "Ann <Lee>",
        "age": 42,
        "subscribed": "yes",
    }

    result = engine.validate_object(data, schema)

    assert result.valid is True
    assert result.errors == {}
    assert result.sanitized["email"] == "Ann@example.org"
    assert result.sanitized["phone"] == "+1-555-123-4567"
    assert result.sanitized["name"] == "Ann &lt;Lee&gt;"
    assert result.sanitized["age"] == 42
    assert result.sanitized["subscribed"] is True
    assert result.sanitized["website"] is None


def test_validate_object_required_fields(engine: ValidationEngine, schema: Dict[str, FieldRule]) -> None:
    result = engine.validate_object({}, schema)
    assert result.errors == {"email": "email is required", "name": "name is required"}


@pytest.mark.parametrize("value", ["abc", float("nan"), True])
def test_validate_object_rejects_non_numbers(engine: ValidationEngine, value: Any) -> None:
    result = engine.validate_object({"n": value}, {"n": FieldRule(type=FieldType.NUMBER)})
    assert result.errors == {"n": "n must be a number"}


# --- sanitize ---


@pytest.mark.parametrize("pattern", ["(", "[a-", "*a"])
def test_invalid_patterns_are_rejected_in_the_schema(pattern: str) -> None:
    with pytest.raises(ValidationError):
        FieldRule(type=FieldType.TEXT, pattern=pattern)


def test_backtracking_pattern_is_bounded(log_sink: List[str]) -> None:
    engine = ValidationEngine(pattern_timeout_seconds=0.05)
    schema = {"code": FieldRule(type=FieldType.TEXT, pattern=r"^(a+)+$")}

    started = time.monotonic()
    result = engine.validate_object({"code": "a" * 40 + "!"}, schema)

    assert time.monotonic() - started < 5
    assert result.errors == {"code": "code format is invalid"}


def test_unchecked_invalid_pattern_is_returned_as_error(engine: ValidationEngine) -> None:
    rule = FieldRule.model_construct(type=FieldType.TEXT, required=False, pattern="(")
    result = engine.validate_object({"code": "abc"}, {"code": rule})
    assert result.errors == {"code": "code format is invalid"}


def test_sanitize_removes_script_and_flags_threat(engine: ValidationEngine) -> None:
    raw = "<script>alert(1)</script>hello"

    cleaned = engine.sanitize(raw)
    threats = engine.detect_threats(raw)

    assert "<script>" not in cleaned
    assert cleaned.endswith("hello")
    assert any(t.category == ThreatCategory.XSS for t in threats)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("", ""),
        ("plain text", "plain text"),
        ("a\x00b\x07c\td\ne", "abc\td\ne"),
        ("e\u0301", "\u00e9"),
        ('"quoted" & \'single\'', "&quot;quoted&quot; &amp; &#x27;single&#x27;"),
        ("</a>", "&lt;&#x2F;a&gt;"),
        ("\x9bcsi", "csi"),
    ],
)
def test_sanitize(raw: str, expected: str) -> None:
    assert sanitize(raw) == expected
