"""Shared validation utilities"""

from typing import Optional


def clean_optional_text(value: Optional[str], max_length: int = 2000) -> Optional[str]:
    """
    Strip free text; blank becomes None.

    Raises:
        ValueError: If the text is longer than max_length
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if len(value) > max_length:
        raise ValueError(f"Must be at most {max_length} characters")
    return value


def require_text(value: Optional[str], field_name: str, max_length: int = 2000) -> str:
    """Like clean_optional_text, but blank is an error"""
    cleaned = clean_optional_text(value, max_length)
    if cleaned is None:
        raise ValueError(f"{field_name} is required")
    return cleaned
