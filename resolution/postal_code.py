"""
Postal code validation.
"""

import re
from typing import Any

from .errors import InputError


ZIP_PATTERN = re.compile(r"[0-9]{5}")


def validate_postal_code(raw: Any, region_min: int = 75000, region_max: int = 79999) -> str:
    """
    Validate a ZIP code for the operating region.

    Surrounding whitespace is ignored. ZIP+4 and anything other than
    exactly five digits is rejected.

    Args:
        raw: Caller-supplied value
        region_min: Lowest ZIP in the operating region (inclusive)
        region_max: Highest ZIP in the operating region (inclusive)

    Returns:
        The 5-digit ZIP string

    Raises:
        InputError: INVALID_ZIP_FORMAT or NOT_IN_REGION
    """
    if not isinstance(raw, str):
        raise InputError(InputError.INVALID_ZIP_FORMAT, "ZIP code must be a string of 5 digits")

    zip_code = raw.strip()
    if not ZIP_PATTERN.fullmatch(zip_code):
        raise InputError(
            InputError.INVALID_ZIP_FORMAT,
            f"Invalid ZIP code format: {raw!r}. Expected 5 digits.",
        )

    if not region_min <= int(zip_code) <= region_max:
        raise InputError(
            InputError.NOT_IN_REGION,
            f"ZIP code {zip_code} is outside the service region ({region_min}-{region_max})",
        )

    return zip_code
