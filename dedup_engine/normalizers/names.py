"""Text normalization for matching and deduplication."""

import re
import unicodedata

# Legal-form suffixes stripped from company names, longest first
LEGAL_SUFFIXES = (
    "corporation",
    "incorporated",
    "limited",
    "company",
    "corp",
    "inc",
    "llc",
    "ltd",
    "plc",
    "gmbh",
    "co",
)

_SUFFIX_PATTERN = re.compile(r"(?:\s+(?:" + "|".join(LEGAL_SUFFIXES) + r"))+$")


def normalize_string(value: str | None) -> str:
    """Normalize a string for comparison.

    Applies the following transformations:
    - Unicode NFKD normalization with diacritics removed
    - Case folding
    - Removes punctuation
    - Collapses whitespace

    Args:
        value: The string to normalize

    Returns:
        Normalized string, or empty string if input is empty/None
    """
    if not value or not isinstance(value, str):
        return ""

    value = unicodedata.normalize("NFKD", value)
    value = "".join(c for c in value if not unicodedata.combining(c))

    value = value.casefold()
    value = re.sub(r"[^\w\s]", " ", value)
    value = re.sub(r"\s+", " ", value)

    return value.strip()


def normalize_company_name(name: str | None) -> str:
    """Normalize a name and strip trailing legal suffixes ("Inc", "Corp", ...).

    A name that consists only of a suffix ("Inc.") normalizes to the suffix
    itself rather than to an empty string.
    """
    normalized = normalize_string(name)
    stripped = _SUFFIX_PATTERN.sub("", normalized).strip()
    return stripped or normalized


def normalize_email(email: str | None) -> str:
    """Lowercase and trim an email address."""
    if not email or not isinstance(email, str):
        return ""
    return email.strip().lower()
