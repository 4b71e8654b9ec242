"""Digest parsing, calculation and verification utilities."""

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from ..exceptions import (
    DigestFormatError,
    DigestMismatchError,
    UnsupportedDigestAlgorithmError,
)

# Regex pattern for valid digest format (algorithm:hex)
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+:[a-f0-9]+$")
SHA256_HEX_PATTERN = re.compile(r"^[a-fA-F0-9]{64}$")

SUPPORTED_ALGORITHM = "sha256"
_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class ParsedDigest:
    """A digest split into algorithm and lowercase hex."""

    algorithm: str
    hex: str

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"


def parse_digest(value: str) -> ParsedDigest:
    """Parse and validate a digest string.

    Args:
        value: Digest string such as ``sha256:<hex>``

    Returns:
        ParsedDigest with the hex normalised to lowercase

    Raises:
        DigestFormatError: If the digest is malformed
        UnsupportedDigestAlgorithmError: If the algorithm is not sha256
    """
    hint = "Expected digest format: sha256:<hex>"
    if not isinstance(value, str):
        raise DigestFormatError(f"Invalid digest '{value}'.", [hint])

    parts = value.split(":")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise DigestFormatError(f"Invalid digest '{value}'.", [hint])

    algorithm, hex_part = parts
    if algorithm != SUPPORTED_ALGORITHM:
        raise UnsupportedDigestAlgorithmError(
            f"Unsupported digest algorithm '{algorithm}'.",
            ["Only sha256 digests are supported."],
        )

    if not SHA256_HEX_PATTERN.match(hex_part):
        raise DigestFormatError(
            f"Invalid sha256 digest '{value}'.",
            ["Digest hex must be exactly 64 hexadecimal characters."],
        )

    return ParsedDigest(algorithm=algorithm, hex=hex_part.lower())


def calculate_digest(data: Union[bytes, bytearray]) -> str:
    """Calculate the sha256 digest of data.

    Args:
        data: Data to hash

    Returns:
        Digest string in format "sha256:hex"

    Raises:
        ValueError: If data is not bytes-like
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise ValueError("Data must be bytes or bytearray")

    return f"{SUPPORTED_ALGORITHM}:{hashlib.sha256(data).hexdigest()}"


def sha256_file(path: Union[str, Path]) -> str:
    """Return the hex sha256 of a file, read in chunks."""
    hasher = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def validate_digest(digest: str) -> bool:
    """Validate digest format.

    Args:
        digest: Digest string to validate

    Returns:
        True if the digest is a well-formed sha256 digest
    """
    if not isinstance(digest, str):
        return False

    if not DIGEST_PATTERN.match(digest):
        return False

    algorithm, hex_part = digest.split(":", 1)
    return algorithm == SUPPORTED_ALGORITHM and len(hex_part) == 64


def _mismatch(
    label: str, expected: ParsedDigest, actual_hex: str, hint: str
) -> DigestMismatchError:
    return DigestMismatchError(
        f"Digest mismatch for {label} {expected}.",
        expected=str(expected),
        actual=f"{expected.algorithm}:{actual_hex}",
        hints=[
            f"Expected {expected}",
            f"Actual   {expected.algorithm}:{actual_hex}",
            hint,
        ],
    )


def verify_digest(
    data: Union[bytes, bytearray], expected_digest: str, label: str = "blob"
) -> None:
    """Verify data matches expected digest.

    Args:
        data: Data to verify
        expected_digest: Expected digest string
        label: What the data is, used in the error message

    Raises:
        DigestFormatError: If digest format is invalid
        DigestMismatchError: If data does not hash to the digest
    """
    expected = parse_digest(expected_digest)
    actual_hex = hashlib.sha256(data).hexdigest()
    if actual_hex != expected.hex:
        raise _mismatch(
            label,
            expected,
            actual_hex,
            "Retry the command. If it persists, check upstream content consistency.",
        )


def assert_file_digest(path: Union[str, Path], expected_digest: str) -> None:
    """Verify a file on disk matches expected digest.

    Raises:
        DigestFormatError: If digest format is invalid
        DigestMismatchError: If the file does not hash to the digest
    """
    expected = parse_digest(expected_digest)
    actual_hex = sha256_file(path)
    if actual_hex != expected.hex:
        raise _mismatch(
            "blob",
            expected,
            actual_hex,
            "Clear the cache and retry if the local blob may be corrupted.",
        )
