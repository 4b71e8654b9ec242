"""Data models for tar archive handling."""

import enum
from dataclasses import dataclass
from typing import Optional


class TarEntryType(enum.Enum):
    """Archive member types the converter understands."""

    FILE = "file"
    HARDLINK = "hardlink"
    SYMLINK = "symlink"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class TarEntry:
    """One archive member with its buffered content."""

    name: str
    type: TarEntryType
    mode: int
    size: int
    link_name: str = ""
    content: Optional[bytes] = None  # None for non-regular entries
