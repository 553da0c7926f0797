"""Tests for the regex detectors, masks, confidences and overlap handling."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import pytest

from privacy_guard.patterns import (
    RULES,
    luhn_valid,
    mask_default,
    mask_email,
    mask_ip,
    mask_keep_last_four,
    mask_ssn,
    mask_text,
    overlap_groups,
    risk_contribution,
    scan_regex,
)
from privacy_guard.types import DataType, Detection, PrivacySettings

STRICT = PrivacySettings()


def _types(detections):
    return [d.data_type for d in detections]


# ── Masks ────────────────────────────────────────────────────────────

def test_mask_email_keeps_first_char_and_domain():
    assert mask_email("jane.doe@example.com") == "j***@example.com"


def test_mask_keep_last_four_preserves_separators():
    assert mask_keep_last_four("555-123-4567") == "***-***-4567"
    assert mask_keep_last_four("(555) 123-4567") == "(***) ***-4567"
    assert mask_keep_last_four("4111 1111 1111 1111") == "**** **** **** 1111"


def test_mask_ssn_uses_last_four_digits():
    assert mask_ssn("123-45-6789") == "***-**-6789"
    assert mask_ssn("123456789") == "***-**-6789"


def test_mask_ip_keeps_outer_octets():
    assert mask_ip("192.168.1.100") == "192.*.*.100"


def test_mask_default_is_at_most_eight_stars():
    assert mask_default("ab") == "**"
    assert mask_default("MRN: 4455667") == "********"


# ── Detection ────────────────────────────────────────────────────────

def test_email_detection():
    found = scan_regex("Contact alice@example.com please", STRICT)
    assert _types(found) == [DataType.EMAIL]
    assert found[0].confidence == 95
    assert found[0].masked_value == "a***@example.com"


def test_email_without_dotted_domain_scores_base():
    email_rule = next(r for r in RULES if r.data_type == DataType.EMAIL)
    assert email_rule.confidence("bob@localhost") == 85
    assert email_rule.confidence("bob@mail.example.org") == 95


def test_strict_ssn_confidence():
    found = scan_regex("SSN: 123-45-6789", STRICT)
    assert _types(found) == [DataType.SSN]
    assert found[0].confidence == 98
    assert found[0].masked_value == "***-**-6789"


def test_unformatted_ssn_scores_base():
    found = scan_regex("ssn 123456789 on file", STRICT)
    assert _types(found) == [DataType.SSN]
    assert found[0].confidence == 85
    assert found[0].masked_value.endswith("6789")


def test_luhn():
    assert luhn_valid("4111111111111111")
    assert luhn_valid("4111 1111 1111 1111")
    assert not luhn_valid("4111111111111112")
    assert not luhn_valid("")


def test_credit_card_confidence_depends_on_luhn():
    valid = scan_regex("Card: 4111 1111 1111 1111", STRICT)
    invalid = scan_regex("Card: 4111 1111 1111 1112", STRICT)
    assert _types(valid) == [DataType.CREDIT_CARD]
    assert _types(invalid) == [DataType.CREDIT_CARD]
    assert valid[0].confidence == 97
    assert invalid[0].confidence == 85
    assert valid[0].masked_value == "**** **** **** 1111"
    assert invalid[0].masked_value == "**** **** **** 1112"


def test_ip_detection():
    found = scan_regex("Server at 192.168.1.100", STRICT)
    assert _types(found) == [DataType.IP_ADDRESS]
    assert found[0].masked_value == "192.*.*.100"
    assert found[0].confidence == 85


def test_financial_amounts():
    found = scan_regex("Invoice total $1,250.00 or 99.50 USD", STRICT)
    assert _types(found) == [DataType.FINANCIAL, DataType.FINANCIAL]
    assert found[0].masked_value == "$*,***.**"
    assert found[1].masked_value == "**.** USD"


def test_phi_detection_fixed_confidence():
    found = scan_regex("Patient MRN: 4455667 and ICD-10: E11.9", STRICT)
    assert _types(found) == [DataType.PHI, DataType.PHI]
    assert all(d.confidence == 90 for d in found)
    assert all(d.masked_value == "********" for d in found)


def test_no_matches_on_clean_text():
    assert scan_regex("The weather is nice today in Melbourne", STRICT) == []
    assert scan_regex("", STRICT) == []


def test_offsets_point_into_original():
    text = "mail jane@example.com now"
    (d,) = scan_regex(text, STRICT)
    assert text[d.start:d.end] == "jane@example.com"
    assert d.position == (5, 21)


def test_discovery_order_is_type_then_position():
    text = "call 555-123-4567 or mail b@example.com or a@example.com"
    found = scan_regex(text, STRICT)
    assert _types(found) == [DataType.EMAIL, DataType.EMAIL, DataType.PHONE]
    assert [d.original_value for d in found[:2]] == ["b@example.com", "a@example.com"]


# ── Settings gating ──────────────────────────────────────────────────

def test_mask_pii_off_skips_pii_types():
    settings = PrivacySettings(mask_pii=False)
    found = scan_regex("a@example.com 555-123-4567 123-45-6789 card 4111 1111 1111 1111", settings)
    assert _types(found) == [DataType.CREDIT_CARD]


def test_mask_financial_off_skips_cards_and_amounts():
    settings = PrivacySettings(mask_financial=False)
    found = scan_regex("card 4111 1111 1111 1111 for $20.00", settings)
    assert found == []


def test_mask_phi_off_skips_phi():
    assert scan_regex("MRN: 4455667", PrivacySettings(mask_phi=False)) == []


# ── Risk ─────────────────────────────────────────────────────────────

def test_risk_contribution_uses_weight_table():
    assert risk_contribution(DataType.EMAIL, 95) == pytest.approx(4.75)
    assert risk_contribution(DataType.PHI, 90) == pytest.approx(22.5)
    assert risk_contribution(DataType.IP_ADDRESS, 100) == pytest.approx(3.0)


# ── Overlaps ─────────────────────────────────────────────────────────

def _det(data_type, confidence, start, end):
    return Detection(data_type, confidence, "x" * (end - start), "*", start, end)


@pytest.mark.parametrize("text, types", [
    ("Patient ID 555-123-4567", [DataType.PHONE, DataType.PHI]),
    ("MRN: 123-45-6789", [DataType.SSN, DataType.PHI]),
])
def test_overlapping_matches_are_all_reported(text, types):
    found = scan_regex(text, STRICT)
    assert _types(found) == types
    for d in found:
        assert text[d.start:d.end] == d.original_value


@pytest.mark.parametrize("text, tail", [
    ("Patient ID 555-123-4567", "4567"),
    ("MRN: 123-45-6789", "6789"),
])
def test_overlap_leaves_no_matched_digit_in_clear(text, tail):
    masked = mask_text(text, scan_regex(text, STRICT))
    assert masked == "********"
    assert tail not in masked


def test_overlap_is_masked_by_riskiest_member():
    text = "4111 1111 1111 1111"
    phone = _det(DataType.PHONE, 85, 0, 12)
    card = _det(DataType.CREDIT_CARD, 97, 0, 19)
    assert mask_text(text, [phone, card]) == "**** **** **** 1111"


def test_overlap_groups_merge_chained_spans():
    a = _det(DataType.EMAIL, 95, 20, 30)
    b = _det(DataType.SSN, 98, 0, 11)
    c = _det(DataType.PHONE, 85, 25, 35)
    d = _det(DataType.PHONE, 85, 34, 40)
    assert overlap_groups([a, b, c, d]) == [[1], [0, 2, 3]]


def test_mask_text_keeps_separate_spans_apart():
    text = "ab cd ef"
    assert mask_text(text, [_det(DataType.PII, 90, 6, 8), _det(DataType.PII, 90, 0, 2)]) == "* cd *"
    assert mask_text(text, []) == text
