"""Local PII detection and redaction for transcript text.

Every rule scans the original text independently. Overlapping candidates are
resolved by priority, then by length, then by position, and the survivors are
spliced right-to-left so replacement tokens are never scanned again.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Literal, Sequence, Tuple

PIIType = Literal[
    "email",
    "phone",
    "ssn",
    "credit_card",
    "ip_address",
    "street_address",
    "date_of_birth",
    "person_name",
    "account_identifier",
]


@dataclass(frozen=True)
class PIIDetection:
    type: PIIType
    original: str
    replacement: str
    start: int
    end: int


@dataclass(frozen=True)
class RedactionResult:
    redacted_text: str
    detections: List[PIIDetection]


@dataclass(frozen=True)
class _Rule:
    type: PIIType
    pattern: re.Pattern
    replacement: str
    priority: int
    group: int = 0


_RULES: Tuple[_Rule, ...] = (
    _Rule(
        "email",
        re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
        "[EMAIL_REDACTED]",
        120,
    ),
    _Rule(
        "ssn",
        re.compile(r"\b(?!000|666|9\d{2})\d{3}([-\s])(?!00)\d{2}\1(?!0000)\d{4}\b"),
        "[SSN_REDACTED]",
        115,
    ),
    _Rule(
        "credit_card",
        re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),
        "[CC_REDACTED]",
        110,
    ),
    _Rule(
        "phone",
        re.compile(r"(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"),
        "[PHONE_REDACTED]",
        100,
    ),
    _Rule(
        "ip_address",
        re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),
        "[IP_REDACTED]",
        95,
    ),
    _Rule(
        "street_address",
        re.compile(
            r"\b\d{1,6}\s+[A-Za-z0-9.\-'\s]{2,40}\s"
            r"(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Lane|Ln|Drive|Dr|Court|Ct|Way|Place|Pl)\b"
            r"(?:,\s*[A-Za-z .'-]{2,30})?(?:,\s*[A-Z]{2})?(?:\s+\d{5}(?:-\d{4})?)?",
            re.IGNORECASE,
        ),
        "[ADDRESS_REDACTED]",
        92,
    ),
    _Rule(
        "date_of_birth",
        re.compile(
            r"(?:date of birth|DOB|born on)[:\s]+\d{1,2}[/-]\d{1,2}[/-]\d{2,4}",
            re.IGNORECASE,
        ),
        "[DOB_REDACTED]",
        90,
    ),
    # Names must be capitalized; only the introducing phrase ignores case.
    _Rule(
        "person_name",
        re.compile(
            r"\b(?i:my name is|name is|this is|i am|i'm|spoke with|met with|contact is)"
            r"\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,2})\b"
        ),
        "[NAME_REDACTED]",
        86,
        group=1,
    ),
    _Rule(
        "account_identifier",
        re.compile(
            r"\b(?:customer|employee|member|account|case|ticket)\s*(?:id|identifier)"
            r"[:#\s-]*([A-Z0-9][A-Z0-9\-]{5,})\b",
            re.IGNORECASE,
        ),
        "[ID_REDACTED]",
        84,
        group=1,
    ),
)


def _collect_candidates(text: str) -> List[Tuple[int, PIIDetection]]:
    candidates: List[Tuple[int, PIIDetection]] = []
    for rule in _RULES:
        for match in rule.pattern.finditer(text):
            start, end = match.span(rule.group)
            if start < 0 or end <= start:
                continue
            candidates.append(
                (
                    rule.priority,
                    PIIDetection(
                        type=rule.type,
                        original=text[start:end],
                        replacement=rule.replacement,
                        start=start,
                        end=end,
                    ),
                )
            )
    return candidates


def _overlaps(a: PIIDetection, b: PIIDetection) -> bool:
    return a.start < b.end and b.start < a.end


def detect_pii(text: str) -> List[PIIDetection]:
    if not text:
        return []
    candidates = _collect_candidates(text)
    candidates.sort(
        key=lambda item: (-item[0], -(item[1].end - item[1].start), item[1].start)
    )
    selected: List[PIIDetection] = []
    for _priority, candidate in candidates:
        if any(_overlaps(candidate, existing) for existing in selected):
            continue
        selected.append(candidate)
    selected.sort(key=lambda detection: detection.start)
    return selected


def redact(text: str) -> RedactionResult:
    detections = detect_pii(text)
    if not detections:
        return RedactionResult(redacted_text=text, detections=[])

    redacted = text
    for detection in reversed(detections):
        redacted = redacted[: detection.start] + detection.replacement + redacted[detection.end :]
    return RedactionResult(redacted_text=redacted, detections=detections)


def mask_pii(text: str) -> str:
    return redact(text).redacted_text


def contains_pii(text: str) -> bool:
    return bool(detect_pii(text))


def redact_chunks(chunks: Sequence[str]) -> Tuple[List[str], List[PIIDetection]]:
    redacted_chunks: List[str] = []
    all_detections: List[PIIDetection] = []
    for chunk in chunks:
        result = redact(chunk)
        redacted_chunks.append(result.redacted_text)
        all_detections.extend(result.detections)
    return redacted_chunks, all_detections
