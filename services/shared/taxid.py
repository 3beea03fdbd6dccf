"""Spanish tax identifier (NIF/CIF/NIE) normalization and validation.

Both functions are total: they never raise, whatever the input.
"""

import re

_DNI_PATTERN = re.compile(r"^[0-9]{8}[A-Z]$")
_CIF_PATTERN = re.compile(r"^[ABCDEFGHJNPQRSUVW][0-9]{7}[0-9A-J]$")
_NIE_PATTERN = re.compile(r"^[XYZ][0-9]{7}[A-Z]$")

_SEPARATORS = re.compile(r"[\s\-/.]")


def normalize_tax_id(raw: str | None) -> str | None:
    """Canonicalize a tax identifier.

    Uppercases, drops a leading ``ES`` country prefix and removes blanks,
    dashes, slashes and dots. ``"ES-A12345678"`` becomes ``"A12345678"``.

    Args:
        raw: Identifier as printed on the document

    Returns:
        Canonical identifier, or None for empty input
    """
    if not raw or not isinstance(raw, str):
        return None
    cleaned = raw.strip().upper()
    if cleaned.startswith("ES"):
        cleaned = cleaned[2:]
    cleaned = _SEPARATORS.sub("", cleaned)
    return cleaned or None


def is_valid_tax_id(value: str | None) -> bool:
    """Check whether a value is a well-formed DNI, CIF or NIE.

    Only the format is checked; control characters are not verified.
    """
    if not value or not isinstance(value, str):
        return False
    candidate = _SEPARATORS.sub("", value.upper())
    return bool(
        _DNI_PATTERN.match(candidate)
        or _CIF_PATTERN.match(candidate)
        or _NIE_PATTERN.match(candidate)
    )
