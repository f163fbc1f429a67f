"""Utility functions and helpers."""

from .exceptions import raise_bad_request, raise_not_found, raise_unprocessable
from .text import derive_merchant, normalize_description, normalize_text

__all__ = [
    "derive_merchant",
    "normalize_description",
    "normalize_text",
    "raise_bad_request",
    "raise_not_found",
    "raise_unprocessable",
]
