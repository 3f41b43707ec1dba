"""Tracking tag codec.

sub1 carries campaign identity, e.g.::

    TDIH_407_3926_01262026_3219537162   property_offer_?_mmddyyyy_mailing
    400_3875_01262026_3219015617        property code missing

sub2 carries the data-set code of the audience partner, e.g. ``M77_WIT_``,
or a 10-char hex email hash that is not a partner at all.

Parsing is a best-effort convention. ``classify_sub1`` turns every outcome,
including failures, into a variant so aggregation never has to catch.
"""
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


PROPERTY_MAPPING = {
    "FTT": "FinancialTipsToday",
    "DHF": "dailyhistoryfacts.org",
    "SFT": "savvyfinancetips.net",
    "EHG": "everydayhealthguide.net",
    "BPG": "bestpropertyguides.net",
    "JOTD": "jokeoftheday.info",
    "SH": "sportshistory.info",
    "NPY": "newproductsforyou.com",
    "FNI": "e.financialsinfo.com",
    "AFI": "affordinginsurance.com",
    "SBD": "secretbeautydiscounts.com",
    "OTD": "theoftheday.com",
    "HRO": "horoscopeinfo.com",
    "TDIH": "thisdayinhistory.co",
    "OTDD": "onthisdaydaily.com",
    "FMO": "financial-money.com",
    "ALC": "alcatrazblog.com",
    "MHH": "myhealthyhabitsblog.net",
    "GHH": "goodhomehub.org",
    "DIH": "dayinhistory.org",
    "FTD": "financialtipsdaily.net",
    "FYF": "findyourfit.net",
    "IGN": "ignitemedia.com",
}

# External data partners only; any other prefix is internal traffic.
DATA_PARTNER_MAPPING = {
    "ATT": "Attribits",
    "GLB": "GlobeUSA",
    "SCO": "Suited Connector",
    "M77": "Media717",
}

INTERNAL_PARTNER = ("IGN", "Ignite")

PARTNER_GROUP_NAMES = {**DATA_PARTNER_MAPPING, INTERNAL_PARTNER[0]: INTERNAL_PARTNER[1]}

# Data-set codes that do not follow the prefix rule.
DATA_SET_CODE_OVERRIDES = {
    "ATT": "IGN",
    "GLB_BR": "IGN",
    "SCO_BATH": "IGN",
    "M77_HW": "IGN",
    "BANKRUPTCYSEND": "ATT",
    "HAR_HOME_09232024": "GLB",
    "MAS_SP": "M77",
    "SENIOR_SIGNAL": "IGN",
}

# Segment-name prefixes that identify partner audiences on the sending side.
KNOWN_SEGMENT_PREFIXES = ("ATT", "GLB", "SCO", "M77", "IGN", "HAR", "EVS", "MAS")

SEGMENT_SUFFIXES = (
    "_OPENERS",
    "_CLICKERS",
    "_ALL",
    "_ACTIVE",
    "_INACTIVE",
    "_ABS",
    "_CAB",
    "_OPENS",
    "_CLICKS",
    "_ENGAGED",
    "_UNENGAGED",
    "_30D",
    "_60D",
    "_90D",
    "_7D",
    "_14D",
)

OFFER_TYPES = ("CPM", "CPA", "CPL", "CPS", "CPC", "CPV")

_SUB2_SENTINELS = {"N/A", "NA", "NULL", "UNDEFINED", "TEST", "TESTDATASET", "WMRY"}
_VOLUME_KEY_SENTINELS = {"N/A", "NA", "WMRY", "NULL", "TESTDATASET"}

_DATE_TOKEN = re.compile(r"^\d{8}$")
_EMAIL_HASH = re.compile(r"^[a-f0-9]{10}$")

_TIMESTAMP_FORMATS = (
    "%m/%d/%Y %H:%M:%S %Z",
    "%m/%d/%Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


class ParseError(ValueError):
    """Raised when a tracking tag or campaign name is malformed."""


@dataclass(frozen=True)
class ParsedSub1:
    """Structured campaign tag."""

    raw: str
    property_code: Optional[str] = None
    property_name: Optional[str] = None
    offer_id: Optional[str] = None
    date: Optional[str] = None
    mailing_id: Optional[str] = None

    @property
    def has_known_property(self) -> bool:
        return is_known_property(self.property_code)


@dataclass(frozen=True)
class ParsedSub2:
    """Structured partner tag."""

    raw: str
    data_set_code: str = ""
    partner_prefix: str = ""
    partner_name: str = ""
    is_email_hash: bool = False


@dataclass(frozen=True)
class CampaignNameParts:
    date: str = ""
    property: str = ""
    offer_id: str = ""
    offer_name: str = ""
    segment: str = ""


class Sub1Kind(str, Enum):
    """Outcome categories of sub1 parsing."""

    EMPTY = "empty"
    PARSE_ERROR = "parse_error"
    NO_MAILING_ID = "no_mailing_id"
    UNKNOWN_PROPERTY = "unknown_property"
    KNOWN = "known"


@dataclass(frozen=True)
class Sub1Classification:
    kind: Sub1Kind
    parsed: Optional[ParsedSub1] = None
    error: Optional[str] = None


def _is_numeric(value: str) -> bool:
    return bool(value) and value.isascii() and value.isdigit()


def is_known_property(code: Optional[str]) -> bool:
    return bool(code) and code.upper() in PROPERTY_MAPPING


def get_property_name(code: str) -> str:
    """Full property name, or the code itself when unknown."""
    return PROPERTY_MAPPING.get(code, code)


def parse_sub1(raw: str) -> ParsedSub1:
    """Parse a sub1 campaign tag.

    Raises:
        ParseError: On empty input or fewer than two underscore segments
    """
    if not raw:
        raise ParseError("empty sub1")

    parts = raw.split("_")
    if len(parts) < 2:
        raise ParseError(f"invalid sub1 format, not enough parts: {raw}")

    first = parts[0].upper()
    property_code: Optional[str] = None
    property_name: Optional[str] = None
    if first in PROPERTY_MAPPING:
        property_code = first
        property_name = get_property_name(first)
        parts = parts[1:]
    elif not _is_numeric(parts[0]):
        # Unknown property, kept for later resolution
        property_code = first
        property_name = first
        parts = parts[1:]

    offer_id = parts[0] if parts and _is_numeric(parts[0]) else None

    date_token: Optional[str] = None
    mailing_id: Optional[str] = None
    for i, part in enumerate(parts):
        if _DATE_TOKEN.match(part):
            date_token = part
            if i + 1 < len(parts):
                mailing_id = parts[i + 1]
            break

    if not mailing_id and parts:
        last = parts[-1]
        if _is_numeric(last) and len(last) >= 5:
            mailing_id = last

    return ParsedSub1(
        raw=raw,
        property_code=property_code,
        property_name=property_name,
        offer_id=offer_id,
        date=date_token,
        mailing_id=mailing_id or None,
    )


def classify_sub1(raw: str) -> Sub1Classification:
    """Classify a sub1 tag for bucketing."""
    if not raw:
        return Sub1Classification(Sub1Kind.EMPTY)
    try:
        parsed = parse_sub1(raw)
    except ParseError as e:
        return Sub1Classification(Sub1Kind.PARSE_ERROR, error=str(e))

    if not parsed.mailing_id:
        return Sub1Classification(Sub1Kind.NO_MAILING_ID, parsed)
    if not parsed.has_known_property:
        return Sub1Classification(Sub1Kind.UNKNOWN_PROPERTY, parsed)
    return Sub1Classification(Sub1Kind.KNOWN, parsed)


def resolve_partner_group(data_set_code: str) -> tuple[str, str]:
    """Resolve a data-set code to (group prefix, group name).

    Full-code overrides win, then the prefix before the first underscore,
    then the internal partner.
    """
    upper = data_set_code.upper()

    group_key = DATA_SET_CODE_OVERRIDES.get(upper)
    if group_key is not None:
        return group_key, PARTNER_GROUP_NAMES.get(group_key, group_key)

    prefix = upper
    idx = upper.find("_")
    if idx > 0:
        prefix = upper[:idx]
    if prefix in DATA_PARTNER_MAPPING:
        return prefix, DATA_PARTNER_MAPPING[prefix]

    return INTERNAL_PARTNER


def get_data_partner_name(code: str) -> str:
    return resolve_partner_group(code)[1]


def parse_sub2(raw: str) -> Optional[ParsedSub2]:
    """Parse a sub2 partner tag.

    Returns:
        None for empty, placeholder or sentinel values; a ParsedSub2 with
        ``is_email_hash`` set and no partner for hashed emails.
    """
    value = (raw or "").strip()
    if not value:
        return None

    if _EMAIL_HASH.match(value):
        return ParsedSub2(raw=value, is_email_hash=True)

    if "{{" in value or "}}" in value:
        return None

    code = value.rstrip("_")
    if not code or code.upper() in _SUB2_SENTINELS:
        return None

    prefix, name = resolve_partner_group(code)
    return ParsedSub2(
        raw=value,
        data_set_code=code,
        partner_prefix=prefix,
        partner_name=name,
    )


def parse_campaign_name(name: str) -> CampaignNameParts:
    """Parse ``[DATE]_[PROPERTY]_[OFFERID]_[OFFERNAME]_[SEGMENT]``.

    Example: ``02052025_HRO_1944_FidelityLife_OPENERS``.

    Raises:
        ParseError: On empty input or fewer than three segments
    """
    if not name:
        raise ParseError("empty campaign name")

    parts = name.split("_")
    if len(parts) < 3:
        raise ParseError(f"invalid campaign name format: {name}")

    date_token = ""
    if _DATE_TOKEN.match(parts[0]):
        date_token = parts[0]
        parts = parts[1:]

    property_code = ""
    if parts:
        property_code = parts[0].upper()
        parts = parts[1:]

    offer_id = ""
    if parts and _is_numeric(parts[0]):
        offer_id = parts[0]
        parts = parts[1:]

    offer_name = ""
    segment = ""
    if len(parts) >= 2:
        offer_name = "_".join(parts[:-1])
        segment = parts[-1]
    elif parts:
        offer_name = parts[0]

    return CampaignNameParts(
        date=date_token,
        property=property_code,
        offer_id=offer_id,
        offer_name=offer_name,
        segment=segment,
    )


def parse_sub1_date(value: str) -> date:
    """Parse the mmddyyyy date token of a sub1 tag."""
    if len(value) != 8 or not _is_numeric(value):
        raise ParseError(f"invalid date format: {value}")
    try:
        return date(int(value[4:8]), int(value[0:2]), int(value[2:4]))
    except ValueError as e:
        raise ParseError(f"invalid date format: {value}") from e


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse tracking-network timestamps like ``01/27/2026 00:06:13 PST``.

    Returns None for empty input.

    Raises:
        ParseError: When no known format matches
    """
    if not value:
        return None

    head, _, zone = value.rpartition(" ")
    if head and zone.isalpha():
        # strptime only knows UTC/GMT and the local zone names
        value = head

    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue

    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ParseError(f"unable to parse timestamp: {value}") from e


def unix_to_date(ts: int, tz=timezone.utc) -> date:
    return datetime.fromtimestamp(ts, tz).date()


def is_cpm_offer(offer_name: str) -> bool:
    return "CPM" in (offer_name or "").upper()


def offer_type(offer_name: str) -> str:
    """Pricing model token found in the offer name, else OTHER."""
    upper = (offer_name or "").upper()
    for kind in OFFER_TYPES:
        if kind in upper:
            return kind
    return "OTHER"


def is_valid_volume_key(key: str) -> bool:
    if "{{" in key or "}}" in key:
        return False
    return key.upper() not in _VOLUME_KEY_SENTINELS


def matches_segment_prefix(name: str) -> bool:
    upper = name.upper()
    return any(upper == prefix or upper.startswith(prefix + "_") for prefix in KNOWN_SEGMENT_PREFIXES)


def extract_data_set_code_from_segment(name: str) -> str:
    """Strip engagement suffixes: ``M77_WIT_OPENERS`` -> ``M77_WIT``."""
    result = name
    for suffix in SEGMENT_SUFFIXES:
        if result.endswith(suffix):
            result = result[: -len(suffix)]
    return result.rstrip("_")


def normalize_esp_name(name: str) -> str:
    """Group ESP connection variants under one display name."""
    if name in ("SparkPost", "SparkPost Enterprise", "SparkPost Momentum"):
        return "SparkPost"
    return name
