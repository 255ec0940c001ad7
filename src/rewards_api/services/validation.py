"""Input checks that run before any transaction is opened."""

from __future__ import annotations

import re

from rewards_api.services.errors import ConceptRequired, InvalidAmount, InvalidName, InvalidPhone

_NON_DIGITS = re.compile(r"\D")
PHONE_DIGITS = 10
# Numbers shared with a country prefix (+52...) are stored by their last ten digits.
_COUNTRY_PREFIXES = ("52", "1")


def normalize_phone(raw: object) -> str:
    digits = _NON_DIGITS.sub("", str(raw or ""))
    if len(digits) > PHONE_DIGITS:
        for prefix in _COUNTRY_PREFIXES:
            if digits.startswith(prefix) and len(digits) - len(prefix) == PHONE_DIGITS:
                digits = digits[len(prefix):]
                break
    if len(digits) != PHONE_DIGITS:
        raise InvalidPhone()
    return digits


def validate_display_name(raw: object) -> str:
    name = str(raw or "").strip()
    if len(name) < 3:
        raise InvalidName()
    return name


def coerce_points(raw: object, *, allow_negative: bool = True) -> int:
    """Accept ints and integral strings/floats; reject zero, bools and fractions."""

    if isinstance(raw, bool) or raw is None:
        raise InvalidAmount()
    if isinstance(raw, int):
        value = raw
    else:
        try:
            as_float = float(str(raw).strip())
        except ValueError as exc:
            raise InvalidAmount() from exc
        if not as_float.is_integer():
            raise InvalidAmount()
        value = int(as_float)
    if value == 0 or (value < 0 and not allow_negative):
        raise InvalidAmount()
    return value


def require_concept(raw: object) -> str:
    concept = str(raw or "").strip()
    if not concept:
        raise ConceptRequired()
    return concept
