"""
Normalizers for names, emails and dates.
"""

from dedup_engine.normalizers.dates import parse_date, parse_datetime, utcnow
from dedup_engine.normalizers.names import (
    normalize_company_name,
    normalize_email,
    normalize_string,
)

__all__ = [
    "normalize_company_name",
    "normalize_email",
    "normalize_string",
    "parse_date",
    "parse_datetime",
    "utcnow",
]
