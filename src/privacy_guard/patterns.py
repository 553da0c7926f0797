"""Regex detectors for structured sensitive data.

Every data type is one ``DataTypeRule`` row: its regex, the risk weight,
the privacy setting that gates it, and how to score and mask a match.
Adding a type means adding a row, not touching the scan loop.
"""

from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Callable

from .types import DataType, Detection, PrivacySettings

BASE_CONFIDENCE = 85
PHI_CONFIDENCE = 90
DEFAULT_WEIGHT = 5
MAX_RISK = 100.0

RISK_WEIGHTS: dict[DataType, int] = {
    DataType.PHI: 25,
    DataType.SSN: 20,
    DataType.CREDIT_CARD: 20,
    DataType.FINANCIAL: 15,
    DataType.PII: 10,
    DataType.EMAIL: 5,
    DataType.PHONE: 5,
    DataType.IP_ADDRESS: 3,
}

_DIGIT = re.compile(r"\d")
_STRICT_SSN = re.compile(r"\d{3}-\d{2}-\d{4}")


# ── Validators ───────────────────────────────────────────────────────

def luhn_valid(value: str) -> bool:
    """Luhn checksum over the digits of value."""
    digits = [int(c) for c in value if c.isdigit()]
    if not digits:
        return False
    total = 0
    for i, d in enumerate(reversed(digits)):
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


# ── Masks ────────────────────────────────────────────────────────────

def mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    return f"{local[:1]}***@{domain}"


def mask_keep_last_four(value: str) -> str:
    """Replace every digit with '*' except the last four digits."""
    keep_from = len(_DIGIT.findall(value)) - 4
    out: list[str] = []
    seen = 0
    for ch in value:
        if ch.isdigit():
            out.append(ch if seen >= keep_from else "*")
            seen += 1
        else:
            out.append(ch)
    return "".join(out)


def mask_ssn(value: str) -> str:
    digits = "".join(_DIGIT.findall(value))
    return f"***-**-{digits[-4:]}"


def mask_ip(value: str) -> str:
    parts = value.split(".")
    return f"{parts[0]}.*.*.{parts[-1]}"


def mask_all_digits(value: str) -> str:
    return _DIGIT.sub("*", value)


def mask_default(value: str) -> str:
    return "*" * min(len(value), 8)


# ── Confidence ───────────────────────────────────────────────────────

def _email_confidence(value: str) -> int:
    local, at, domain = value.partition("@")
    if at and local and "." in domain and "@" not in domain:
        return 95
    return BASE_CONFIDENCE


def _ssn_confidence(value: str) -> int:
    return 98 if _STRICT_SSN.fullmatch(value) else BASE_CONFIDENCE


def _card_confidence(value: str) -> int:
    return 97 if luhn_valid(value) else BASE_CONFIDENCE


def _base_confidence(value: str) -> int:
    return BASE_CONFIDENCE


@dataclass(frozen=True, slots=True)
class DataTypeRule:
    data_type: DataType
    pattern: re.Pattern
    setting: str                         # PrivacySettings flag that enables it
    confidence: Callable[[str], int]
    mask: Callable[[str], str]

    @property
    def weight(self) -> int:
        return RISK_WEIGHTS.get(self.data_type, DEFAULT_WEIGHT)


# Scan order is significant: it is the order detections are reported in.
RULES: list[DataTypeRule] = [
    DataTypeRule(
        DataType.EMAIL,
        re.compile(r"\b[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}\b"),
        "mask_pii", _email_confidence, mask_email,
    ),
    DataTypeRule(
        DataType.PHONE,
        re.compile(
            r"(?<!\d)"
            r"(?:\+?1[\-.\s]?)?"
            r"\(?\d{3}\)?[\-.\s]?\d{3}[\-.\s]?\d{4}\b"
        ),
        "mask_pii", _base_confidence, mask_keep_last_four,
    ),
    DataTypeRule(
        DataType.SSN,
        re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b"),
        "mask_pii", _ssn_confidence, mask_ssn,
    ),
    DataTypeRule(
        DataType.CREDIT_CARD,
        re.compile(r"\b(?:\d{4}[\-\s]?){3}\d{4}\b"),
        "mask_financial", _card_confidence, mask_keep_last_four,
    ),
    DataTypeRule(
        DataType.IP_ADDRESS,
        re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),
        "mask_pii", _base_confidence, mask_ip,
    ),
    DataTypeRule(
        DataType.FINANCIAL,
        re.compile(r"\$[\d,]+\.?\d{0,2}|\b\d+\.\d{2}\s*(?:USD|EUR|GBP)\b"),
        "mask_financial", _base_confidence, mask_all_digits,
    ),
]

# Medical record numbers, diagnosis/procedure codes, prescription references.
PHI_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("medical_record", re.compile(
        r"\b(?:MRN|Medical Record|Patient ID)[\s:#]*\d+\b", re.IGNORECASE)),
    ("diagnosis", re.compile(
        r"\b(?:ICD-10|ICD-9|CPT)[\s:]*[A-Z0-9.\-]+\b", re.IGNORECASE)),
    ("prescription", re.compile(
        r"\b(?:Rx|Prescription)[\s:]*[A-Za-z0-9 \t]+\b", re.IGNORECASE)),
]


def risk_contribution(data_type: DataType, confidence: int) -> float:
    return RISK_WEIGHTS.get(data_type, DEFAULT_WEIGHT) * confidence / 100


def mask_for(data_type: DataType) -> Callable[[str], str]:
    for rule in RULES:
        if rule.data_type == data_type:
            return rule.mask
    return mask_default


def scan_regex(text: str, settings: PrivacySettings) -> list[Detection]:
    """Run every enabled pattern.  Returns every match in discovery order
    (type by type, left to right within a type).  Matches may overlap."""
    found: list[Detection] = []
    for rule in RULES:
        if not getattr(settings, rule.setting):
            continue
        for m in rule.pattern.finditer(text):
            value = m.group()
            found.append(Detection(
                data_type=rule.data_type,
                confidence=rule.confidence(value),
                original_value=value,
                masked_value=rule.mask(value),
                start=m.start(),
                end=m.end(),
            ))

    if settings.mask_phi:
        for _name, pattern in PHI_PATTERNS:
            for m in pattern.finditer(text):
                value = m.group()
                found.append(Detection(
                    data_type=DataType.PHI,
                    confidence=PHI_CONFIDENCE,
                    original_value=value,
                    masked_value=mask_default(value),
                    start=m.start(),
                    end=m.end(),
                ))

    return found


def overlap_groups(detections: list[Detection]) -> list[list[int]]:
    """Indices of detections grouped into runs of overlapping spans, in text order."""
    groups: list[list[int]] = []
    run_end = -1
    for i in sorted(range(len(detections)), key=lambda i: detections[i].start):
        d = detections[i]
        if groups and d.start < run_end:
            groups[-1].append(i)
            run_end = max(run_end, d.end)
        else:
            groups.append([i])
            run_end = d.end
    return groups


def mask_text(text: str, detections: list[Detection]) -> str:
    """Replace every detected span in text.

    A run of overlapping spans is masked as one piece with the rule of its
    riskiest member (ties: longer span, then earlier discovery), so no
    matched character is left in clear.
    """
    out: list[str] = []
    cursor = 0
    for group in overlap_groups(detections):
        start = min(detections[i].start for i in group)
        end = max(detections[i].end for i in group)
        if len(group) == 1:
            masked = detections[group[0]].masked_value
        else:
            lead = min(group, key=lambda i: (
                -risk_contribution(detections[i].data_type, detections[i].confidence),
                -(detections[i].end - detections[i].start),
                i,
            ))
            masked = mask_for(detections[lead].data_type)(text[start:end])
        out.append(text[cursor:start])
        out.append(masked)
        cursor = end
    out.append(text[cursor:])
    return "".join(out)
