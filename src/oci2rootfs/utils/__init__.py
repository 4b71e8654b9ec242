"""Utility functions for the OCI image to rootfs converter."""

from .digest import (
    assert_file_digest,
    calculate_digest,
    parse_digest,
    validate_digest,
    verify_digest,
)

__all__ = [
    "assert_file_digest",
    "calculate_digest",
    "parse_digest",
    "validate_digest",
    "verify_digest",
]
