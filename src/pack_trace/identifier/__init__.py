"""GS1 identifier codec surfaces."""

from .codec import (
    GS,
    GS1Identity,
    decode,
    encode,
    expiry_compact_to_iso,
    expiry_iso_to_compact,
    gtin_check_digit,
    normalize_gtin,
)

__all__ = [
    "GS",
    "GS1Identity",
    "decode",
    "encode",
    "expiry_compact_to_iso",
    "expiry_iso_to_compact",
    "gtin_check_digit",
    "normalize_gtin",
]
