"""Numeric parsing shared by the normalizer and rule conditions."""
import math


def parse_number(value):
    """Return value as a finite float, or None when it is not cleanly numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None
