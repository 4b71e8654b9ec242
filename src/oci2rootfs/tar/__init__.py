"""Tar archive decoding and safe extraction."""

from .extract import extract_tar_to_directory, sanitize_tar_path
from .models import TarEntry, TarEntryType
from .reader import decompress_layer, parse_tar_bytes, read_tar_or_tar_gz

__all__ = [
    "TarEntry",
    "TarEntryType",
    "decompress_layer",
    "extract_tar_to_directory",
    "parse_tar_bytes",
    "read_tar_or_tar_gz",
    "sanitize_tar_path",
]
