# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

"""
Structural validation and sanitization of untrusted input.

All operations are pure and stateless: they return data describing what is
wrong and never raise for a bad value, so a caller validating ten fields
always sees ten results. Threat findings are returned, not logged; logging
them is an explicit, separate call on the audit sink.
"""

import html
import ipaddress
import re
import unicodedata
from typing import Any, Dict, Iterable, List, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

import regex

from coreason_dataguard.exceptions import FileTooLarge, FileValidationError, UnsupportedFileType
from coreason_dataguard.models import (
    FieldCheck,
    FieldRule,
    FieldType,
    FieldValidationError,
    FileMeta,
    ThreatEvent,
    ValidationResult,
)
from coreason_dataguard.threats import ThreatDetector
from coreason_dataguard.utils.logger import logger

EMAIL_MAX_LENGTH = 254
EMAIL_LOCAL_MAX_LENGTH = 64

_EMAIL_LOCAL_RE = re.compile(r"^[A-Za-z0-9!#$%&'*+/=?^_`{|}~.-]+$")
_DOMAIN_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_TLD_RE = re.compile(r"^[a-z]{2,63}$")
_PHONE_CHARS_RE = re.compile(r"^[\d\s\-.()+]+$")
_NON_DIGIT_RE = re.compile(r"\D")
# C0/C1 control characters except tab, newline and carriage return
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_FILENAME_INVALID_RE = re.compile(r'[<>:"|?*\x00-\x1f]')

DANGEROUS_EXTENSIONS = (".exe", ".bat", ".cmd", ".sh", ".php", ".js", ".vbs", ".ps1")
LOCAL_HOSTNAMES = ("localhost", "localhost.localdomain")


def _is_valid_hostname(host: str) -> bool:
    labels = host.split(".")
    if len(labels) < 2 or len(host) > 253:
        return False
    if not all(_DOMAIN_LABEL_RE.match(label) for label in labels):
        return False
    return bool(_TLD_RE.match(labels[-1]))


def sanitize(text: str) -> str:
    """
    Neutralizes text for safe storage and display.

    Normalizes to NFC first so decomposed or compatibility-encoded input
    cannot slip past the escaping, then drops null bytes and non-printable
    control characters, then escapes HTML-significant characters.

    Args:
        text: Untrusted input.

    Returns:
        The sanitized text.
    """
    if not text:
        return ""
    value = unicodedata.normalize("NFC", text)
    value = _CONTROL_CHARS_RE.sub("", value)
    value = html.escape(value, quote=True)
    return value.replace("/", "&#x2F;")


class ValidationEngine:
    """
    Validators for typed fields plus sanitization and threat detection.

    Policy (file allow-list, size ceiling, local URL handling) is
    configuration; the instance holds no other state and is safe to share
    across threads.
    """

    def __init__(
        self,
        allowed_extensions: Iterable[str] = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".pdf", ".txt", ".csv"),
        max_file_bytes: int = 10 * 1024 * 1024,
        allowed_mime_types: Optional[Iterable[str]] = None,
        allow_local_urls: bool = False,
        threat_detector: Optional[ThreatDetector] = None,
        pattern_timeout_seconds: float = 0.1,
    ) -> None:
        self.allowed_extensions = tuple(ext.lower() for ext in allowed_extensions)
        self.max_file_bytes = max_file_bytes
        self.allowed_mime_types = tuple(allowed_mime_types) if allowed_mime_types is not None else None
        self.allow_local_urls = allow_local_urls
        self.threat_detector = threat_detector or ThreatDetector()
        self.pattern_timeout_seconds = pattern_timeout_seconds

    def validate_email(self, value: Optional[str]) -> FieldCheck:
        """
        Structural email check; not full RFC 5322.

        Returns:
            On success the address with its domain lowercased, else the first problem found.
        """
        trimmed = (value or "").strip()
        if not trimmed:
            return FieldCheck(valid=False, error="Email is required")
        if len(trimmed) > EMAIL_MAX_LENGTH:
            return FieldCheck(valid=False, error=f"Email address is too long (max {EMAIL_MAX_LENGTH} characters)")
        if trimmed.count("@") != 1:
            return FieldCheck(valid=False, error="Email must contain exactly one @")

        local, domain = trimmed.split("@")
        domain = domain.lower()
        if not local:
            return FieldCheck(valid=False, error="Email local part is empty")
        if len(local) > EMAIL_LOCAL_MAX_LENGTH:
            return FieldCheck(
                valid=False, error=f"Email local part is too long (max {EMAIL_LOCAL_MAX_LENGTH} characters)"
            )
        if ".." in trimmed:
            return FieldCheck(valid=False, error="Email contains invalid consecutive dots")
        if local.startswith(".") or local.endswith(".") or not _EMAIL_LOCAL_RE.match(local):
            return FieldCheck(valid=False, error="Invalid email format")
        if not _is_valid_hostname(domain):
            return FieldCheck(valid=False, error="Email domain is invalid")

        return FieldCheck(valid=True, value=f"{local}@{domain}")

    def validate_phone(self, value: Optional[str]) -> FieldCheck:
        """Accepts 10-15 digits; formats US numbers as +1-XXX-XXX-XXXX, others as +<digits>."""
        trimmed = (value or "").strip()
        if not trimmed:
            return FieldCheck(valid=False, error="Phone number is required")
        if not _PHONE_CHARS_RE.match(trimmed):
            return FieldCheck(valid=False, error="Phone number contains invalid characters")

        digits = _NON_DIGIT_RE.sub("", trimmed)
        if len(digits) < 10:
            return FieldCheck(valid=False, error="Phone number is too short (minimum 10 digits)")
        if len(digits) > 15:
            return FieldCheck(valid=False, error="Phone number is too long (maximum 15 digits)")

        if len(digits) == 10:
            return FieldCheck(valid=True, value=f"+1-{digits[:3]}-{digits[3:6]}-{digits[6:]}")
        if len(digits) == 11 and digits.startswith("1"):
            return FieldCheck(valid=True, value=f"+1-{digits[1:4]}-{digits[4:7]}-{digits[7:]}")
        return FieldCheck(valid=True, value=f"+{digits}")

    def validate_url(self, value: Optional[str]) -> FieldCheck:
        """Requires an http(s) scheme and a parseable host."""
        trimmed = (value or "").strip()
        if not trimmed:
            return FieldCheck(valid=False, error="URL is required")

        try:
            parts = urlsplit(trimmed)
            host = parts.hostname
            # Accessing the port validates it
            _ = parts.port
        except ValueError:
            return FieldCheck(valid=False, error="Invalid URL format")

        if parts.scheme.lower() not in ("http", "https"):
            return FieldCheck(valid=False, error="URL must use HTTP or HTTPS protocol")
        if not host:
            return FieldCheck(valid=False, error="URL host is missing")

        if not self._is_valid_url_host(host):
            return FieldCheck(valid=False, error="URL host is invalid")
        if not self.allow_local_urls and self._is_local_host(host):
            return FieldCheck(valid=False, error="Localhost URLs are not allowed")

        normalized = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, parts.query, parts.fragment))
        return FieldCheck(valid=True, value=normalized)

    @staticmethod
    def _is_valid_url_host(host: str) -> bool:
        if host in LOCAL_HOSTNAMES:
            return True
        try:
            ipaddress.ip_address(host)
            return True
        except ValueError:
            return _is_valid_hostname(host)

    @staticmethod
    def _is_local_host(host: str) -> bool:
        if host in LOCAL_HOSTNAMES:
            return True
        try:
            return ipaddress.ip_address(host).is_loopback
        except ValueError:
            return False

    def check_file(self, meta: FileMeta) -> FileMeta:
        """
        Applies the file policy.

        Returns:
            The metadata unchanged when acceptable.

        Raises:
            UnsupportedFileType: Extension or MIME type not allowed, or an unsafe filename.
            FileTooLarge: Size above the configured ceiling.
        """
        filename = meta.filename
        if "/" in filename or "\\" in filename or ".." in filename:
            raise UnsupportedFileType("Filename contains path traversal characters")
        if _FILENAME_INVALID_RE.search(filename):
            raise UnsupportedFileType("Filename contains invalid characters")

        extension = meta.extension
        if extension not in self.allowed_extensions:
            raise UnsupportedFileType(
                f'File extension "{extension}" is not allowed. Allowed: {", ".join(self.allowed_extensions)}'
            )
        # Catches disguised executables such as invoice.exe.pdf
        lowered = filename.lower()
        if any(f"{dangerous}." in lowered for dangerous in DANGEROUS_EXTENSIONS):
            raise UnsupportedFileType("Filename contains potentially dangerous extension")
        if self.allowed_mime_types is not None and meta.mime_type not in self.allowed_mime_types:
            raise UnsupportedFileType(f'File type "{meta.mime_type}" is not allowed')

        if meta.size_bytes > self.max_file_bytes:
            raise FileTooLarge(meta.size_bytes, self.max_file_bytes)
        return meta

    def validate_file(self, meta: FileMeta) -> FieldCheck:
        """Data-returning form of `check_file`."""
        try:
            return FieldCheck(valid=True, value=self.check_file(meta))
        except FileValidationError as e:
            return FieldCheck(valid=False, error=e.message)

    def validate_object(self, data: Mapping[str, Any], schema: Mapping[str, FieldRule]) -> ValidationResult:
        """
        Validates every field declared in the schema and aggregates all failures.

        Args:
            data: Raw field values. Keys absent from the schema are ignored.
            schema: Rule per field.

        Returns:
            ValidationResult with one error per failing field and the sanitized values.
        """
        failures: List[FieldValidationError] = []
        sanitized: Dict[str, Any] = {}

        for field, rule in schema.items():
            value = data.get(field)
            if value is None or value == "":
                if rule.required:
                    failures.append(FieldValidationError(field=field, reason=f"{field} is required"))
                else:
                    sanitized[field] = value
                continue

            if rule.type in (FieldType.EMAIL, FieldType.PHONE, FieldType.URL, FieldType.TEXT):
                text = str(value)
                if rule.min_length is not None and len(text) < rule.min_length:
                    failures.append(
                        FieldValidationError(field=field, reason=f"{field} must be at least {rule.min_length} characters")
                    )
                if rule.max_length is not None and len(text) > rule.max_length:
                    failures.append(
                        FieldValidationError(field=field, reason=f"{field} must be at most {rule.max_length} characters")
                    )
                if rule.pattern is not None and not self._matches_pattern(field, rule.pattern, text):
                    failures.append(FieldValidationError(field=field, reason=f"{field} format is invalid"))

            if rule.type == FieldType.EMAIL:
                self._apply_check(field, self.validate_email(str(value)), failures, sanitized)
            elif rule.type == FieldType.PHONE:
                self._apply_check(field, self.validate_phone(str(value)), failures, sanitized)
            elif rule.type == FieldType.URL:
                self._apply_check(field, self.validate_url(str(value)), failures, sanitized)
            elif rule.type == FieldType.TEXT:
                sanitized[field] = sanitize(str(value))
            elif rule.type == FieldType.NUMBER:
                self._apply_number(field, value, rule, failures, sanitized)
            elif rule.type == FieldType.BOOLEAN:
                if isinstance(value, bool):
                    sanitized[field] = value
                elif str(value).lower() in ("true", "1", "yes", "on"):
                    sanitized[field] = True
                elif str(value).lower() in ("false", "0", "no", "off"):
                    sanitized[field] = False
                else:
                    failures.append(FieldValidationError(field=field, reason=f"{field} must be a boolean"))

        return ValidationResult.from_failures(failures, sanitized)

    def _matches_pattern(self, field: str, pattern: str, text: str) -> bool:
        # Caller-supplied patterns run under a deadline; a timeout counts as a mismatch
        try:
            return regex.search(pattern, text, timeout=self.pattern_timeout_seconds) is not None
        except TimeoutError:
            logger.warning(f"Pattern for field {field} timed out after {self.pattern_timeout_seconds}s")
            return False
        except regex.error as e:
            logger.warning(f"Pattern for field {field} is invalid: {e}")
            return False

    @staticmethod
    def _apply_check(
        field: str, check: FieldCheck, failures: List[FieldValidationError], sanitized: Dict[str, Any]
    ) -> None:
        if check.valid:
            sanitized[field] = check.value
        else:
            failures.append(FieldValidationError(field=field, reason=check.error or "invalid"))

    @staticmethod
    def _apply_number(
        field: str,
        value: Any,
        rule: FieldRule,
        failures: List[FieldValidationError],
        sanitized: Dict[str, Any],
    ) -> None:
        if isinstance(value, bool):
            failures.append(FieldValidationError(field=field, reason=f"{field} must be a number"))
            return
        try:
            number = float(value)
        except (TypeError, ValueError):
            failures.append(FieldValidationError(field=field, reason=f"{field} must be a number"))
            return
        if number != number or number in (float("inf"), float("-inf")):
            failures.append(FieldValidationError(field=field, reason=f"{field} must be a number"))
            return
        if rule.min is not None and number < rule.min:
            failures.append(FieldValidationError(field=field, reason=f"{field} must be at least {rule.min:g}"))
        if rule.max is not None and number > rule.max:
            failures.append(FieldValidationError(field=field, reason=f"{field} must be at most {rule.max:g}"))
        sanitized[field] = int(number) if number.is_integer() and not isinstance(value, float) else number

    def sanitize(self, text: str) -> str:
        return sanitize(text)

    def detect_threats(
        self,
        text: str,
        field_name: str = "input",
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[ThreatEvent]:
        return self.threat_detector.detect(text, field_name=field_name, ip=ip, user_agent=user_agent)
