"""
Utility for formatting API keys and provider tokens for display in logs.

Keys are bearer secrets, so logs only ever carry their last 6 characters.
"""

from typing import Optional


def format_key_for_display(key: Optional[str]) -> str:
    """
    Format an opaque API key for display in logs.

    Args:
        key: The API key string

    Returns:
        A display-safe string representation of the key

    Examples:
        >>> format_key_for_display("md2doc_0123456789abcdef")
        "...abcdef"
        >>> format_key_for_display("abc")
        "...abc"
    """
    if not key:
        return "<none>"
    return f"...{key[-6:]}"


def mask_secret(value: Optional[str]) -> str:
    """Report only whether a provider token is present."""
    return "***EXISTS***" if value else "MISSING"
