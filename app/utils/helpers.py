"""
Common utility functions and helpers.
"""
from datetime import datetime, timezone
from typing import Optional
import hashlib
import re
import unicodedata


def normalize_tag(tag: str) -> str:
    """
    Normalize a field tag for fuzzy comparison.

    Args:
        tag: Raw tag ("VIN_Number", "numer-vin", "Wartość")

    Returns:
        Lowercase tag without separators, whitespace or diacritics
    """
    tag = tag.lower()
    tag = re.sub(r'[_\-]', '', tag)
    tag = re.sub(r'\s+', '', tag)
    tag = unicodedata.normalize('NFD', tag)
    return re.sub('[\u0300-\u036f]', '', tag)


def safe_filename(name: str) -> str:
    """
    Make a name safe for storage keys and download filenames.

    Args:
        name: Template or document name

    Returns:
        Name with every character outside [a-zA-Z0-9_-] replaced by "_"
    """
    return re.sub(r'[^a-zA-Z0-9_-]', '_', name)


def storage_timestamp(now: Optional[datetime] = None) -> str:
    """
    Timestamp used in generated file names.

    Args:
        now: Moment to format (defaults to the current UTC time)

    Returns:
        "YYYYMMDD_HHMMSS"
    """
    return (now or datetime.now(timezone.utc)).strftime('%Y%m%d_%H%M%S')


def generate_hash(data: bytes) -> str:
    """
    Generate SHA256 hash of raw bytes.

    Args:
        data: Bytes to hash

    Returns:
        Hex digest of hash
    """
    return hashlib.sha256(data).hexdigest()
