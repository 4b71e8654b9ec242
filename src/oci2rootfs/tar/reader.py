"""Tar archive decoding."""

import gzip
import io
import logging
import tarfile
import zlib
from pathlib import Path
from typing import Union

from ..core.media_types import Compression
from ..exceptions import UnsupportedLayerMediaTypeError, UsageError
from .models import TarEntry, TarEntryType

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"

_ENTRY_TYPES = {
    tarfile.REGTYPE: TarEntryType.FILE,
    tarfile.AREGTYPE: TarEntryType.FILE,
    tarfile.CONTTYPE: TarEntryType.FILE,
    tarfile.LNKTYPE: TarEntryType.HARDLINK,
    tarfile.SYMTYPE: TarEntryType.SYMLINK,
    tarfile.DIRTYPE: TarEntryType.DIRECTORY,
}


def looks_like_gzip(data: bytes) -> bool:
    return data[:2] == GZIP_MAGIC


def parse_tar_bytes(data: bytes) -> list[TarEntry]:
    """Decode an uncompressed tar stream into ordered entries.

    PAX and GNU long-name headers are folded into the entries they describe.
    Device nodes, FIFOs and other member types are dropped. An empty stream,
    or one holding only end-of-archive zero blocks, has no entries.

    Args:
        data: Raw tar bytes

    Returns:
        Entries in archive order

    Raises:
        UsageError: If the data is not a readable tar archive
    """
    entries: list[TarEntry] = []
    if not data.strip(b"\0"):
        return entries

    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
            for member in tar:
                entry_type = _ENTRY_TYPES.get(member.type)
                if entry_type is None:
                    logger.debug(
                        "Ignoring tar member %s of type %r", member.name, member.type
                    )
                    continue

                content = None
                if entry_type is TarEntryType.FILE:
                    file_obj = tar.extractfile(member)
                    content = file_obj.read() if file_obj is not None else b""

                entries.append(
                    TarEntry(
                        name=member.name,
                        type=entry_type,
                        mode=member.mode,
                        size=member.size,
                        link_name=member.linkname,
                        content=content,
                    )
                )
    except tarfile.TarError as e:
        raise UsageError(
            f"Failed to read tar archive: {e}",
            ["Ensure the archive is a valid tar stream."],
        ) from e

    return entries


def decompress_layer(data: bytes, compression: Compression) -> bytes:
    """Return the tar stream of a layer blob.

    Raises:
        UnsupportedLayerMediaTypeError: If a gzip layer lacks the gzip header
            or cannot be decompressed
    """
    if compression == "none":
        return data

    if not looks_like_gzip(data):
        raise UnsupportedLayerMediaTypeError(
            "Layer is expected to be gzip-compressed, but gzip header was not found.",
            ["Ensure the image uses gzip-compressed layers."],
        )

    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as e:
        raise UnsupportedLayerMediaTypeError(
            f"Failed to decompress gzip layer: {e}",
            ["The layer blob appears to be truncated or corrupt."],
        ) from e


def read_tar_or_tar_gz(path: Union[str, Path]) -> bytes:
    """Read a tar file, transparently gunzipping it if needed."""
    data = Path(path).read_bytes()
    if looks_like_gzip(data):
        return decompress_layer(data, "gzip")
    return data
