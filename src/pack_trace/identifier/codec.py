"""GS1 product identity codec.

Maps {gtin, lot, expiry, optional serial} to the two text forms carried by a pack label:

* human form   ``(01)<gtin14>[(21)<serial>](10)<lot>(17)<YYMMDD>``
* machine form ``01<gtin14>[21<serial><GS>]10<lot><GS>17<YYMMDD>`` (GS = ASCII 29)

Expiry days are bounded by 1-31 without checking the month's length, so labels that were
already printed with such dates keep decoding.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import re
from typing import Any

from pack_trace.errors import MalformedIdentifierError


GS = "\x1d"
GTIN_LENGTHS: tuple[int, ...] = (8, 12, 13, 14)
MAX_FIELD_LENGTH = 20
SYMBOLOGY_PREFIXES: tuple[str, ...] = ("]d2", "]c1", "]q3")

FIELD_RE = re.compile(r"^[A-Za-z0-9\-_.+/]{1,20}$")
DIGITS_RE = re.compile(r"^[0-9]+$")
ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
COMPACT_DATE_RE = re.compile(r"^\d{6}$")
HUMAN_RE = re.compile(r"\(01\)(\d{14})(?:\(21\)([^()]+))?\(10\)([^()]+)\(17\)(\d{6})")
MACHINE_RE = re.compile(
    r"^01(\d{14})(?:21([^\x1d]{1,20})\x1d)?10([^\x1d]{1,20})\x1d?17(\d{6})$"
)


@dataclass(frozen=True)
class GS1Identity:
    gtin14: str
    lot: str
    expiry_iso: str
    expiry_compact: str
    machine_form: str
    human_form: str
    serial: str | None = None

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.gtin14, self.lot, self.expiry_iso)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "gtin14": self.gtin14,
            "lot": self.lot,
            "expiryIso": self.expiry_iso,
            "expiryCompact": self.expiry_compact,
            "machineForm": self.machine_form,
            "humanForm": self.human_form,
        }
        if self.serial is not None:
            payload["serial"] = self.serial
        return payload


def gtin_check_digit(body: str) -> int:
    """GS1 mod-10 check digit: weights 3,1,3,1... from the rightmost body digit."""
    if not DIGITS_RE.match(body or ""):
        raise MalformedIdentifierError("GTIN body must contain only digits")
    total = 0
    for index, char in enumerate(reversed(body)):
        weight = 3 if index % 2 == 0 else 1
        total += int(char) * weight
    return (10 - total % 10) % 10


def normalize_gtin(gtin: str) -> str:
    digits = str(gtin or "").strip()
    if not DIGITS_RE.match(digits):
        raise MalformedIdentifierError("GTIN must contain only digits (8, 12, 13, or 14 characters)")
    if len(digits) not in GTIN_LENGTHS:
        raise MalformedIdentifierError(
            f"GTIN must be 8, 12, 13, or 14 digits; received {len(digits)}"
        )
    if len(digits) == 14:
        return digits
    body = digits.rjust(13, "0")
    return f"{body}{gtin_check_digit(body)}"


def expiry_iso_to_compact(value: str | date) -> str:
    text = value.isoformat() if isinstance(value, date) else str(value or "").strip()
    match = ISO_DATE_RE.match(text)
    if not match:
        raise MalformedIdentifierError("expiry must use YYYY-MM-DD")
    year, month, day = match.groups()
    if not 2000 <= int(year) <= 2099:
        raise MalformedIdentifierError("expiry year must be between 2000 and 2099")
    _check_month_day(int(month), int(day))
    return f"{year[-2:]}{month}{day}"


def expiry_compact_to_iso(value: str) -> str:
    text = str(value or "").strip()
    if not COMPACT_DATE_RE.match(text):
        raise MalformedIdentifierError("expiry YYMMDD value must contain exactly six digits")
    yy, mm, dd = int(text[0:2]), int(text[2:4]), int(text[4:6])
    _check_month_day(mm, dd)
    return f"{2000 + yy:04d}-{mm:02d}-{dd:02d}"


def encode(
    *,
    gtin: str,
    lot: str,
    expiry: str | date,
    serial: str | None = None,
) -> GS1Identity:
    gtin14 = normalize_gtin(gtin)
    lot_value = _check_field(lot, "lot")
    serial_value = _check_field(serial, "serial") if serial not in (None, "") else None
    expiry_compact = expiry_iso_to_compact(expiry)
    expiry_iso = expiry_compact_to_iso(expiry_compact)
    return _build(gtin14, lot_value, expiry_iso, expiry_compact, serial_value)


def decode(raw: str) -> GS1Identity:
    """Parse a scanned or pasted code in either text form."""
    text = str(raw or "").strip()
    if not text:
        raise MalformedIdentifierError("scanned value is empty")

    human = HUMAN_RE.search(text)
    if human:
        gtin, serial, lot, expiry = human.groups()
        return _from_groups(gtin, serial, lot, expiry)

    machine = MACHINE_RE.match(_strip_symbology_prefix(text).strip())
    if machine:
        gtin, serial, lot, expiry = machine.groups()
        return _from_groups(gtin, serial, lot, expiry)

    raise MalformedIdentifierError("unable to parse GS1 content")


def _from_groups(gtin: str, serial: str | None, lot: str, expiry: str) -> GS1Identity:
    gtin14 = normalize_gtin(gtin)
    lot_value = _check_field(lot, "lot")
    serial_value = _check_field(serial, "serial") if serial else None
    expiry_iso = expiry_compact_to_iso(expiry)
    return _build(gtin14, lot_value, expiry_iso, expiry, serial_value)


def _build(
    gtin14: str,
    lot: str,
    expiry_iso: str,
    expiry_compact: str,
    serial: str | None,
) -> GS1Identity:
    serial_machine = f"21{serial}{GS}" if serial else ""
    serial_human = f"(21){serial}" if serial else ""
    return GS1Identity(
        gtin14=gtin14,
        lot=lot,
        expiry_iso=expiry_iso,
        expiry_compact=expiry_compact,
        machine_form=f"01{gtin14}{serial_machine}10{lot}{GS}17{expiry_compact}",
        human_form=f"(01){gtin14}{serial_human}(10){lot}(17){expiry_compact}",
        serial=serial,
    )


def _strip_symbology_prefix(value: str) -> str:
    if value[:3].lower() in SYMBOLOGY_PREFIXES:
        return value[3:]
    return value


def _check_field(value: Any, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise MalformedIdentifierError(f"{field_name} is required")
    if len(text) > MAX_FIELD_LENGTH:
        raise MalformedIdentifierError(f"{field_name} must be {MAX_FIELD_LENGTH} characters or fewer")
    if not FIELD_RE.match(text):
        raise MalformedIdentifierError(f"{field_name} may only contain letters, numbers and -_.+/")
    return text


def _check_month_day(month: int, day: int) -> None:
    if month < 1 or month > 12:
        raise MalformedIdentifierError("expiry month must be between 01 and 12")
    if day < 1 or day > 31:
        raise MalformedIdentifierError("expiry day must be between 01 and 31")
