import pytest

from fiscalflow.validation.fiscal_rules import (
    analyze_document,
    check_icms_consistency,
    extract_codes,
    format_brl,
    parse_localized_number,
    run_fiscal_checks,
)

from conftest import NFE_HIGH_VALUE, NFE_XML_DIVERGENT, SERVICE_RECEIPT


# ─── ICMS consistency ─────────────────────────────────────

def test_icms_consistent_when_reported_matches_expected():
    check = check_icms_consistency(1000, 18, 180)
    assert check.expected == 180.00
    assert check.difference == 0.00
    assert check.consistent is True


def test_icms_inconsistent_outside_tolerance():
    check = check_icms_consistency(1000, 18, 150)
    assert check.expected == 180.00
    assert check.difference == 30.00
    assert check.tolerance == 3.6
    assert check.consistent is False


def test_icms_tolerance_never_below_one_unit():
    # 2% of 10.00 is 0.20, the floor of 1.00 applies
    assert check_icms_consistency(100, 10, 10.9).consistent is True
    assert check_icms_consistency(100, 10, 11.5).consistent is False


def test_icms_without_base_or_rate_is_unknown():
    check = check_icms_consistency(None, 18, 180)
    assert check.expected is None
    assert check.consistent is None


def test_icms_without_reported_value_has_only_expected():
    check = check_icms_consistency(1000, 12, None)
    assert check.expected == 120.00
    assert check.consistent is None


# ─── Numbers ──────────────────────────────────────────────

@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1.234,56", 1234.56),
        ("R$ 180,00", 180.0),
        ("18%", 18.0),
        ("1234.56", 1234.56),
        ("1.000", 1000.0),
        ("18.0000", 18.0),
        ("1.234.567", 1234567.0),
        (42, 42.0),
    ],
)
def test_parse_localized_number(raw, expected):
    assert parse_localized_number(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "abc", "1,2,3", True])
def test_parse_localized_number_rejects_garbage(raw):
    assert parse_localized_number(raw) is None


def test_format_brl():
    assert format_brl(1234.5) == "1.234,50"
    assert format_brl(100000) == "100.000,00"


# ─── Codes ────────────────────────────────────────────────

def test_anchored_codes_are_found():
    codes = extract_codes(NFE_HIGH_VALUE)
    assert codes.cfops == ["5102"]
    assert codes.csts == ["000"]
    assert codes.ncms == ["10019900"]


def test_invalid_codes_are_kept_apart_from_missing():
    codes = extract_codes("CFOP 8102\nCST 1\n")
    assert codes.cfops == []
    assert codes.invalid_cfops == ["8102"]
    assert codes.csts == []
    assert codes.invalid_csts == ["1"]


def test_fallback_patterns_only_when_no_label():
    codes = extract_codes("Operacao 5.102 item 8471.30.12\nSituacao Tributaria: 060")
    assert codes.cfops == ["5102"]
    assert codes.ncms == ["84713012"]
    assert codes.csts == ["060"]


def test_money_is_not_mistaken_for_cfop():
    codes = extract_codes("Valor: R$ 2.500,00")
    assert codes.cfops == []
    assert codes.invalid_cfops == []


# ─── Documents and batches ────────────────────────────────

def test_clean_document_has_no_observations():
    doc = analyze_document("nfe-1001.txt", NFE_HIGH_VALUE)
    assert doc.icms_base == 150000.0
    assert doc.icms_rate == 18.0
    assert doc.icms_reported == 27000.0
    assert doc.icms_consistent is True
    assert doc.observations == []


def test_xml_divergence_is_reported():
    doc = analyze_document("nfe-2002.xml", NFE_XML_DIVERGENT)
    assert doc.cfops == ["1102"]
    assert doc.csts == ["00"]
    assert doc.icms_expected == 180.0
    assert doc.icms_consistent is False
    assert any("ICMS divergence" in o for o in doc.observations)


def test_icms_mentioned_without_values():
    doc = analyze_document("memo.txt", "CFOP 5102 CST 00 NCM 1001.99.00 ICMS destacado")
    assert doc.icms_consistent is None
    assert doc.observations == ["ICMS mentioned but no base, rate or value could be read."]


def test_partial_icms_fields_are_reported_as_incomplete():
    doc = analyze_document("memo.txt", "CFOP 5102\nCST 00\nNCM 10019900\nValor do ICMS: 50,00")
    assert doc.icms_consistent is None
    assert doc.observations == ["Incomplete ICMS data, cannot verify consistency: base, rate not found."]


def test_batch_summary_counts():
    result = run_fiscal_checks([
        ("nfe-1001.txt", NFE_HIGH_VALUE),
        ("nfe-2002.xml", NFE_XML_DIVERGENT),
        ("recibo-3003.txt", SERVICE_RECEIPT),
    ])
    summary = result["summary"]

    assert summary["documentsAnalyzed"] == 3
    assert summary["consistentIcmsCount"] == 1
    assert summary["inconsistentIcmsCount"] == 1
    assert summary["documentsWithMissingCfop"] == 1
    assert summary["documentsWithMissingCst"] == 1
    assert summary["documentsWithMissingNcm"] == 1
    assert summary["flaggedDocuments"] == 2
    assert [d["fileName"] for d in result["documents"]] == ["nfe-1001.txt", "nfe-2002.xml", "recibo-3003.txt"]
