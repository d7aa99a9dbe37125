"""Ledger account names and the persona naming rule."""

import re

from .errors import ValidationError

NAME_CHARS = ".12345abcdefghijklmnopqrstuvwxyz"
NAME_PATTERN = re.compile(r"^[.1-5a-z]{0,12}[.1-5a-j]?$")

PERSONA_SUFFIX = ".ai"
PERSONA_BASE_LENGTH = 9
PERSONA_BASE_PATTERN = re.compile(r"^[a-z1-5]{%d}$" % PERSONA_BASE_LENGTH)


def _symbol(char: str) -> int:
    if "a" <= char <= "z":
        return ord(char) - ord("a") + 6
    if "1" <= char <= "5":
        return ord(char) - ord("1") + 1
    return 0


def validate_account_name(name: str) -> str:
    if not isinstance(name, str) or not name:
        raise ValidationError(f"account name must be a non-empty string, got {name!r}")
    if len(name) > 13 or not NAME_PATTERN.match(name):
        raise ValidationError(f"invalid account name {name!r}")
    return name


def name_to_int(name: str) -> int:
    validate_account_name(name)
    value = 0
    for idx in range(13):
        symbol = _symbol(name[idx]) if idx < len(name) else 0
        if idx < 12:
            value |= (symbol & 0x1F) << (64 - 5 * (idx + 1))
        else:
            value |= symbol & 0x0F
    return value


def int_to_name(value: int) -> str:
    if value < 0 or value >= 1 << 64:
        raise ValidationError(f"name value out of range: {value}")
    chars = []
    tmp = value
    for idx in range(13):
        if idx == 0:
            chars.append(NAME_CHARS[tmp & 0x0F])
            tmp >>= 4
        else:
            chars.append(NAME_CHARS[tmp & 0x1F])
            tmp >>= 5
    return "".join(reversed(chars)).rstrip(".")


def persona_account_name(name: str) -> str:
    """Normalise a persona name to its ledger account (``<9 symbols>.ai``).

    The bare nine-symbol base is accepted and gets the suffix appended.
    """
    if not isinstance(name, str):
        raise ValidationError(f"persona name must be a string, got {name!r}")
    candidate = name.strip().lower()
    base = candidate[: -len(PERSONA_SUFFIX)] if candidate.endswith(PERSONA_SUFFIX) else candidate
    if not PERSONA_BASE_PATTERN.match(base):
        raise ValidationError(
            f"persona name {name!r} must be {PERSONA_BASE_LENGTH} characters of a-z and 1-5"
            f" followed by {PERSONA_SUFFIX}"
        )
    return validate_account_name(base + PERSONA_SUFFIX)


def is_persona_name(name: str) -> bool:
    try:
        persona_account_name(name)
    except ValidationError:
        return False
    return True
