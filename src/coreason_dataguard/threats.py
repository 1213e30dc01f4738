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
Pattern-based threat detection for XSS and SQL injection.

Each registered signature is wrapped in a Presidio PatternRecognizer. The
registry is built once and shared; recognizers compile their regex on the
warm-up pass, so detection never recompiles. Adding a signature is a data
change: append a `ThreatSignature` to `DEFAULT_SIGNATURES` or pass a custom
list to `ThreatDetector`.
"""

import re
from typing import List, NamedTuple, Optional, Sequence, Tuple

from presidio_analyzer import Pattern, PatternRecognizer

from coreason_dataguard.models import ThreatCategory, ThreatEvent, ThreatSeverity
from coreason_dataguard.utils.logger import logger

_REGEX_FLAGS = re.IGNORECASE | re.DOTALL | re.MULTILINE

_SEVERITY_SCORES = {
    ThreatSeverity.LOW: 0.4,
    ThreatSeverity.MEDIUM: 0.6,
    ThreatSeverity.HIGH: 0.85,
    ThreatSeverity.CRITICAL: 1.0,
}


class ThreatSignature(NamedTuple):
    name: str
    category: ThreatCategory
    regex: str
    severity: ThreatSeverity


DEFAULT_SIGNATURES: Tuple[ThreatSignature, ...] = (
    # XSS
    ThreatSignature("script_tag", ThreatCategory.XSS, r"<\s*/?\s*script\b", ThreatSeverity.CRITICAL),
    ThreatSignature("javascript_uri", ThreatCategory.XSS, r"(?:java|vb)script\s*:", ThreatSeverity.HIGH),
    ThreatSignature("event_handler", ThreatCategory.XSS, r"\bon[a-z]+\s*=", ThreatSeverity.HIGH),
    ThreatSignature("embedded_object", ThreatCategory.XSS, r"<\s*(?:iframe|object|embed)\b", ThreatSeverity.HIGH),
    ThreatSignature("meta_or_link_tag", ThreatCategory.XSS, r"<\s*(?:meta|link|base)\b", ThreatSeverity.MEDIUM),
    ThreatSignature("css_expression", ThreatCategory.XSS, r"\bexpression\s*\(", ThreatSeverity.HIGH),
    ThreatSignature("css_url", ThreatCategory.XSS, r"\burl\s*\(", ThreatSeverity.MEDIUM),
    ThreatSignature("html_comment", ThreatCategory.XSS, r"<!--|-->", ThreatSeverity.LOW),
    # SQL injection
    ThreatSignature("sql_comment", ThreatCategory.SQL_INJECTION, r"--|/\*|\*/", ThreatSeverity.MEDIUM),
    ThreatSignature("sql_statement_separator", ThreatCategory.SQL_INJECTION, r";", ThreatSeverity.LOW),
    ThreatSignature("sql_union", ThreatCategory.SQL_INJECTION, r"\bunion\b(?:\s+all)?(?:\s+select\b)?", ThreatSeverity.HIGH),
    ThreatSignature(
        "sql_numeric_tautology",
        ThreatCategory.SQL_INJECTION,
        r"\b(?:or|and)\b\s+(\d+)\s*=\s*\1\b",
        ThreatSeverity.CRITICAL,
    ),
    ThreatSignature(
        "sql_string_tautology",
        ThreatCategory.SQL_INJECTION,
        r"'\s*(?:or|and)\s+'([^']*)'\s*=\s*'\1",
        ThreatSeverity.CRITICAL,
    ),
    ThreatSignature(
        "sql_destructive_statement",
        ThreatCategory.SQL_INJECTION,
        r"\b(?:drop|truncate|alter)\s+table\b|\bdelete\s+from\b|\binsert\s+into\b",
        ThreatSeverity.CRITICAL,
    ),
    ThreatSignature(
        "sql_function_call",
        ThreatCategory.SQL_INJECTION,
        r"\b(?:n?char|n?varchar|cast|convert|load_file|sleep|benchmark)\s*\(",
        ThreatSeverity.MEDIUM,
    ),
)


class ThreatDetector:
    """
    Runs the immutable signature set over untrusted text.

    Detection is pure: it returns findings and never blocks. The caller
    decides whether to reject, sanitize and continue, or only log.
    """

    def __init__(
        self,
        signatures: Optional[Sequence[ThreatSignature]] = None,
        max_input_chars: int = 500,
    ) -> None:
        """
        Args:
            signatures: Signature registry. Defaults to `DEFAULT_SIGNATURES`.
            max_input_chars: Length of the input excerpt kept on each event.
        """
        self.signatures: Tuple[ThreatSignature, ...] = tuple(
            DEFAULT_SIGNATURES if signatures is None else signatures
        )
        self.max_input_chars = max_input_chars
        self._recognizers: Tuple[Tuple[ThreatSignature, PatternRecognizer], ...] = tuple(
            (signature, self._build_recognizer(signature)) for signature in self.signatures
        )
        self._warm_up()

    @staticmethod
    def _build_recognizer(signature: ThreatSignature) -> PatternRecognizer:
        try:
            re.compile(signature.regex, _REGEX_FLAGS)
        except re.error as e:
            raise ValueError(f"Invalid threat signature {signature.name}: {e}") from e
        pattern = Pattern(name=signature.name, regex=signature.regex, score=_SEVERITY_SCORES[signature.severity])
        return PatternRecognizer(
            supported_entity=signature.category.value.upper(),
            name=signature.name,
            patterns=[pattern],
            global_regex_flags=_REGEX_FLAGS,
        )

    def _warm_up(self) -> None:
        # First analyze call compiles and caches each pattern's regex
        for _, recognizer in self._recognizers:
            recognizer.analyze(text="", entities=recognizer.supported_entities)
        logger.debug(f"Threat detector ready with {len(self._recognizers)} signatures.")

    def detect(
        self,
        text: str,
        field_name: str = "input",
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[ThreatEvent]:
        """
        Scans text against every signature.

        Args:
            text: Raw, unsanitized input.
            field_name: Name of the field the text came from.
            ip: Caller ip, recorded on each event.
            user_agent: Caller user agent, recorded on each event.

        Returns:
            One ThreatEvent per matching signature, in registry order.
        """
        if not text:
            return []

        excerpt = text[: self.max_input_chars]
        events: List[ThreatEvent] = []
        for signature, recognizer in self._recognizers:
            results = recognizer.analyze(text=text, entities=recognizer.supported_entities)
            if not results:
                continue
            events.append(
                ThreatEvent(
                    pattern=signature.name,
                    category=signature.category,
                    severity=signature.severity,
                    field_name=field_name,
                    truncated_input=excerpt,
                    ip=ip,
                    user_agent=user_agent,
                )
            )
        return events
