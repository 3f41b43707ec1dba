"""Unit tests for the tracking tag codec."""
from datetime import date, datetime

import pytest

from src.revrecon_core.attribution.identifiers import (
    ParseError,
    Sub1Kind,
    classify_sub1,
    extract_data_set_code_from_segment,
    is_cpm_offer,
    is_valid_volume_key,
    offer_type,
    parse_campaign_name,
    parse_sub1,
    parse_sub1_date,
    parse_sub2,
    parse_timestamp,
    resolve_partner_group,
)


def test_parse_sub1_full_tag():
    """Test parsing a tag with property, offer, date and mailing id."""
    parsed = parse_sub1("TDIH_407_3926_01262026_3219537162")

    assert parsed.property_code == "TDIH"
    assert parsed.property_name == "thisdayinhistory.co"
    assert parsed.offer_id == "407"
    assert parsed.date == "01262026"
    assert parsed.mailing_id == "3219537162"
    assert parsed.has_known_property


def test_parse_sub1_lowercase_property():
    """Test property codes are matched case-insensitively."""
    parsed = parse_sub1("hro_1944_02052025_3219000001")

    assert parsed.property_code == "HRO"
    assert parsed.mailing_id == "3219000001"


def test_parse_sub1_missing_property():
    """Test a numeric first segment leaves the property empty."""
    parsed = parse_sub1("400_3875_01262026_3219015617")

    assert parsed.property_code is None
    assert parsed.offer_id == "400"
    assert parsed.mailing_id == "3219015617"


def test_parse_sub1_unknown_property_kept():
    """Test an unrecognised alphabetic prefix is kept as the property code."""
    parsed = parse_sub1("xyz_400_01262026_3219015617")

    assert parsed.property_code == "XYZ"
    assert parsed.property_name == "XYZ"
    assert not parsed.has_known_property


def test_parse_sub1_mailing_id_without_date():
    """Test the last long numeric token is used when there is no date."""
    parsed = parse_sub1("HRO_400_98765")

    assert parsed.date is None
    assert parsed.mailing_id == "98765"


def test_parse_sub1_errors():
    """Test empty and single-segment tags raise ParseError."""
    with pytest.raises(ParseError):
        parse_sub1("")
    with pytest.raises(ParseError):
        parse_sub1("HRO")


@pytest.mark.parametrize(
    "raw,kind",
    [
        ("", Sub1Kind.EMPTY),
        ("garbage", Sub1Kind.PARSE_ERROR),
        ("HRO_400_12", Sub1Kind.NO_MAILING_ID),
        ("ZZZ_400_01262026_3219015617", Sub1Kind.UNKNOWN_PROPERTY),
        ("HRO_400_01262026_3219015617", Sub1Kind.KNOWN),
    ],
)
def test_classify_sub1(raw, kind):
    """Test every sub1 outcome maps to a classification."""
    assert classify_sub1(raw).kind == kind


def test_parse_sub2_partner_code():
    """Test trailing underscores are stripped and the partner resolved."""
    parsed = parse_sub2(" M77_WIT_ ")

    assert parsed.data_set_code == "M77_WIT"
    assert parsed.partner_prefix == "M77"
    assert parsed.partner_name == "Media717"
    assert not parsed.is_email_hash


def test_parse_sub2_email_hash():
    """Test a 10-char hex value is flagged as an email hash with no partner."""
    parsed = parse_sub2("a1b2c3d4e5")

    assert parsed.is_email_hash
    assert parsed.partner_prefix == ""
    assert parsed.partner_name == ""


@pytest.mark.parametrize("raw", ["", "   ", "{{sub2}}", "N/A", "null", "undefined", "TEST", "wmry"])
def test_parse_sub2_placeholders_and_sentinels(raw):
    """Test placeholders and sentinel values yield no partner."""
    assert parse_sub2(raw) is None


def test_resolve_partner_group_overrides_and_default():
    """Test override table, prefix table and internal default."""
    assert resolve_partner_group("MAS_SP") == ("M77", "Media717")
    assert resolve_partner_group("GLB_BR") == ("IGN", "Ignite")
    assert resolve_partner_group("ATT_FIN") == ("ATT", "Attribits")
    assert resolve_partner_group("RANDOM_CODE") == ("IGN", "Ignite")


def test_parse_campaign_name():
    """Test splitting a sending-platform campaign name."""
    parts = parse_campaign_name("02052025_HRO_1944_FidelityLife_OPENERS")

    assert parts.date == "02052025"
    assert parts.property == "HRO"
    assert parts.offer_id == "1944"
    assert parts.offer_name == "FidelityLife"
    assert parts.segment == "OPENERS"


def test_parse_campaign_name_too_short():
    """Test names with fewer than three segments raise ParseError."""
    with pytest.raises(ParseError):
        parse_campaign_name("HRO_1944")


def test_parse_sub1_date():
    """Test mmddyyyy parsing and rejection of invalid dates."""
    assert parse_sub1_date("01262026") == date(2026, 1, 26)
    with pytest.raises(ParseError):
        parse_sub1_date("13402026")


def test_parse_timestamp_formats():
    """Test tracking-network timestamps with a zone token."""
    assert parse_timestamp("01/27/2026 00:06:13 PST") == datetime(2026, 1, 27, 0, 6, 13)
    assert parse_timestamp("2026-01-27") == datetime(2026, 1, 27)
    assert parse_timestamp("") is None
    with pytest.raises(ParseError):
        parse_timestamp("not a time")


def test_offer_helpers():
    """Test CPM detection and pricing model extraction."""
    assert is_cpm_offer("Acme Insurance CPM")
    assert not is_cpm_offer("Acme Insurance CPA")
    assert offer_type("Acme cpl lead") == "CPL"
    assert offer_type("Acme") == "OTHER"


def test_volume_key_and_segment_helpers():
    """Test volume key validation and segment suffix stripping."""
    assert is_valid_volume_key("M77_WIT")
    assert not is_valid_volume_key("{{data_set}}")
    assert not is_valid_volume_key("n/a")
    assert extract_data_set_code_from_segment("M77_WIT_OPENERS") == "M77_WIT"
    assert extract_data_set_code_from_segment("GLB_FIN_30D") == "GLB_FIN"
