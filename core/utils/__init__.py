"""
Core Utilities Package

Modules:
    - time: Timestamp normalization (everything becomes integer milliseconds)
    - formatting: Symbol spelling conversions, precision rounding, client order ids
"""

from core.utils.time import to_milliseconds, ms_to_iso
from core.utils.formatting import (
    to_unified_symbol,
    format_number,
)

__all__ = [
    "to_milliseconds",
    "ms_to_iso",
    "to_unified_symbol",
    "format_number",
]
