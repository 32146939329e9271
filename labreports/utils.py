"""Utility functions shared across pipeline stages.

Provides string normalization for values read from the registration view and
phone number formatting for WhatsApp delivery."""

from __future__ import annotations

import re
from typing import Any, Mapping

DEFAULT_COUNTRY_CODE = "+20"

_PHONE_SEPARATORS = re.compile(r"[\s\-().]")
_SECRET_ASSIGNMENT = re.compile(r"^(userid=)([^/@]*)/[^@]*(@.*)?$", re.IGNORECASE)


def string_or_empty(value: Any) -> str:
    """Safely convert value to string, returning empty string for None.

    Parameters
    ----------
    value : Any
        Value to convert (may be None, empty string, or any type)

    Returns
    -------
    str
        Stringified value or empty string for None values
    """
    if value is None:
        return ""
    return str(value).strip()


def format_phone_number(
    patient_no: Any, default_country_code: str = DEFAULT_COUNTRY_CODE
) -> str | None:
    """Convert a raw patient contact to E.164 form.

    The registration table stores numbers as typed at reception, so the
    format is not validated at the source.

    Parameters
    ----------
    patient_no : Any
        Raw contact value from ``reg.patient_no``.
    default_country_code : str
        Country prefix applied to local numbers.

    Returns
    -------
    str | None
        Number in ``+<country><subscriber>`` form, or None when there is no
        usable digit sequence.

    Examples
    --------
    >>> format_phone_number("01016666348")
    '+201016666348'
    >>> format_phone_number("+201016666348")
    '+201016666348'
    >>> format_phone_number("1016666348")
    '+201016666348'
    """
    raw = _PHONE_SEPARATORS.sub("", string_or_empty(patient_no))
    if not raw:
        return None

    if raw.startswith("+"):
        number = raw
    elif raw.startswith("0"):
        number = default_country_code + raw[1:]
    else:
        number = default_country_code + raw

    if not number[1:].isdigit():
        return None
    return number


def redact_argv(argv: list[str]) -> list[str]:
    """Mask the password in a ``userid=user/password@db`` argument."""
    redacted = []
    for arg in argv:
        match = _SECRET_ASSIGNMENT.match(arg)
        if match:
            arg = f"{match.group(1)}{match.group(2)}/****{match.group(3) or ''}"
        redacted.append(arg)
    return redacted


def format_parameters(parameters: Mapping[str, str]) -> str:
    """Render report parameters for log lines in a stable order."""
    return ", ".join(f"{key}={value}" for key, value in parameters.items())
