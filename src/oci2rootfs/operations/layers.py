"""Apply image layers onto a rootfs directory with union-filesystem semantics."""

import logging
import os
import posixpath
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..core.config import Settings
from ..core.media_types import layer_compression
from ..core.scope import ResourceScope
from ..core.types import AppliedRootfs, PulledImage
from ..exceptions import UnsupportedLayerMediaTypeError
from ..tar.extract import sanitize_tar_path
from ..tar.models import TarEntry, TarEntryType
from ..tar.reader import decompress_layer, parse_tar_bytes
from ..utils.fs import (
    ensure_parents_are_not_symlinks,
    list_directory,
    path_exists,
    resolve_inside_root,
)
from .base_rootfs import extract_base_rootfs_tree
from .puller import extract_runtime_metadata

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
OPAQUE_WHITEOUT = ".wh..wh..opq"

BaseRootfsExtractor = Callable[[Path], None]


@dataclass(frozen=True)
class AdvisoryResult:
    """Outcome of a best-effort operation that never fails the run."""

    path: str
    operation: str
    ok: bool
    error: Optional[str] = None


def _advisory_chmod(path: str, mode: int, operation: str) -> AdvisoryResult:
    try:
        os.chmod(path, mode)
    except OSError as e:
        logger.debug("%s failed for %s: %s", operation, path, e)
        return AdvisoryResult(path=path, operation=operation, ok=False, error=str(e))
    return AdvisoryResult(path=path, operation=operation, ok=True)


class PermissionJournal:
    """Original modes of directories widened while applying one layer.

    The first recorded mode of a directory wins. ``restore()`` puts every
    recorded mode back, longest path first, so a restored read-only parent
    never blocks restoring a child.
    """

    def __init__(self) -> None:
        self._modes: dict[str, int] = {}

    def __contains__(self, path: object) -> bool:
        return path in self._modes

    def __len__(self) -> int:
        return len(self._modes)

    @property
    def modes(self) -> dict[str, int]:
        return dict(self._modes)

    def record(self, path: str, mode: int) -> None:
        self._modes.setdefault(path, mode)

    def override(self, path: str, mode: int) -> bool:
        """Replace the mode to restore for an already recorded directory."""
        if path not in self._modes:
            return False
        self._modes[path] = mode
        return True

    def make_owner_writable(self, directory: str) -> None:
        """Add u+rwx to a real directory, recording its original mode."""
        try:
            st = os.lstat(directory)
        except FileNotFoundError:
            return
        if not stat.S_ISDIR(st.st_mode):
            return

        current = stat.S_IMODE(st.st_mode)
        writable = current | 0o700
        if current == writable:
            return

        self.record(directory, current)
        _advisory_chmod(directory, writable, "widen")

    def restore(self) -> list[AdvisoryResult]:
        results = []
        for directory, mode in sorted(
            self._modes.items(), key=lambda item: len(item[0]), reverse=True
        ):
            try:
                st = os.lstat(directory)
            except FileNotFoundError:
                continue
            if not stat.S_ISDIR(st.st_mode):
                continue
            results.append(_advisory_chmod(directory, mode, "restore"))
        self._modes.clear()
        return results


def _is_within(root: str, candidate: str) -> bool:
    return candidate == root or candidate.startswith(root.rstrip(os.sep) + os.sep)


def ensure_writable_directory_chain(
    rootfs_dir: Path, directory: str, journal: PermissionJournal
) -> None:
    """Make root and every directory from root down to directory owner-writable.

    The root may be reached through a different real path (e.g. a symlinked
    temp dir); paths under either spelling are handled. Paths outside the
    root are left alone.
    """
    root_alias = os.path.abspath(rootfs_dir)
    try:
        real_root = os.path.realpath(rootfs_dir)
    except OSError:
        real_root = root_alias

    normalized = os.path.abspath(directory)
    if not _is_within(real_root, normalized):
        if real_root != root_alias and _is_within(root_alias, normalized):
            normalized = os.path.join(real_root, os.path.relpath(normalized, root_alias))
        else:
            return

    journal.make_owner_writable(real_root)

    relative = os.path.relpath(normalized, real_root)
    if relative == ".":
        return

    current = real_root
    for segment in relative.split(os.sep):
        if not segment:
            continue
        current = os.path.join(current, segment)
        journal.make_owner_writable(current)


def ensure_writable_directory_and_resolved_target(
    rootfs_dir: Path, directory: Path, journal: PermissionJournal
) -> None:
    ensure_writable_directory_chain(rootfs_dir, str(directory), journal)
    if not path_exists(directory):
        return
    ensure_writable_directory_chain(rootfs_dir, os.path.realpath(directory), journal)


def ensure_writable_tree(target: Path, journal: PermissionJournal) -> None:
    """Make target and every directory below it owner-writable."""
    if target.is_symlink() or not target.is_dir():
        return
    journal.make_owner_writable(str(target))
    for child in os.listdir(target):
        ensure_writable_tree(target / child, journal)


def _remove(target: Path) -> None:
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()


def remove_path_for_layer(
    rootfs_dir: Path, target: Path, journal: PermissionJournal
) -> None:
    """Remove whatever is at target, widening permissions as needed.

    A permission error triggers one pass that makes the whole subtree
    writable; a second failure propagates.
    """
    if not path_exists(target):
        return

    ensure_writable_directory_and_resolved_target(rootfs_dir, target.parent, journal)
    try:
        _remove(target)
    except PermissionError:
        ensure_writable_tree(target, journal)
        _remove(target)


def prepare_target(
    rootfs_dir: Path, target: Path, is_directory: bool, journal: PermissionJournal
) -> None:
    """Clear target unless it is a directory that a directory entry can reuse."""
    if not path_exists(target):
        return
    if is_directory and target.is_dir() and not target.is_symlink():
        return
    remove_path_for_layer(rootfs_dir, target, journal)


def apply_mode_if_present(target: Path, mode: int) -> Optional[AdvisoryResult]:
    normalized = mode & 0o7777
    if normalized == 0:
        return None
    return _advisory_chmod(str(target), normalized, "chmod")


def apply_whiteout(
    rootfs_dir: Path, relative_path: str, journal: PermissionJournal
) -> None:
    """Apply a ``.wh.`` marker.

    ``.wh..wh..opq`` empties its directory; ``.wh.<name>`` removes the
    sibling ``<name>``. A missing target is not an error.
    """
    marker_path = resolve_inside_root(rootfs_dir, relative_path)
    ensure_parents_are_not_symlinks(rootfs_dir, marker_path)

    parent = marker_path.parent
    basename = posixpath.basename(relative_path)
    ensure_writable_directory_and_resolved_target(rootfs_dir, parent, journal)

    if basename == OPAQUE_WHITEOUT:
        for child in list_directory(parent):
            remove_path_for_layer(rootfs_dir, parent / child, journal)
        return

    name = basename[len(WHITEOUT_PREFIX) :]
    if not name or name in (".", ".."):
        return

    parent_relative = posixpath.dirname(relative_path)
    target = resolve_inside_root(rootfs_dir, posixpath.join(parent_relative, name))
    remove_path_for_layer(rootfs_dir, target, journal)


def apply_tar_entry(
    rootfs_dir: Path, entry: TarEntry, journal: PermissionJournal
) -> None:
    """Apply one archive entry onto the rootfs.

    Raises:
        PathTraversalError: If the entry or its link target escapes the root
        SymlinkParentError: If the entry would be written through a symlink
    """
    relative_path = sanitize_tar_path(entry.name)
    if relative_path is None:
        return

    if posixpath.basename(relative_path).startswith(WHITEOUT_PREFIX):
        apply_whiteout(rootfs_dir, relative_path, journal)
        return

    target = resolve_inside_root(rootfs_dir, relative_path)
    ensure_parents_are_not_symlinks(rootfs_dir, target)

    parent = target.parent
    ensure_writable_directory_and_resolved_target(rootfs_dir, parent, journal)

    if entry.type is TarEntryType.DIRECTORY:
        prepare_target(rootfs_dir, target, True, journal)
        target.mkdir(parents=True, exist_ok=True)
        mode = entry.mode & 0o7777
        # A directory widened earlier in this layer keeps u+rwx until the
        # journal is drained; it then gets the mode the entry declares.
        if mode and journal.override(os.path.realpath(target), mode):
            return
        apply_mode_if_present(target, entry.mode)
        return

    if entry.type is TarEntryType.SYMLINK:
        remove_path_for_layer(rootfs_dir, target, journal)
        parent.mkdir(parents=True, exist_ok=True)
        os.symlink(entry.link_name, target)
        return

    if entry.type is TarEntryType.HARDLINK:
        link_relative = sanitize_tar_path(entry.link_name)
        if link_relative is None:
            return

        link_target = resolve_inside_root(rootfs_dir, link_relative)
        ensure_parents_are_not_symlinks(rootfs_dir, link_target)
        if not path_exists(link_target):
            logger.debug(
                "Skipping hard link %s: target %s is missing", entry.name, entry.link_name
            )
            return

        remove_path_for_layer(rootfs_dir, target, journal)
        parent.mkdir(parents=True, exist_ok=True)
        try:
            os.link(link_target, target, follow_symlinks=False)
        except OSError:
            shutil.copyfile(link_target, target, follow_symlinks=False)
        return

    if entry.type is TarEntryType.FILE:
        remove_path_for_layer(rootfs_dir, target, journal)
        parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(entry.content or b"")
        apply_mode_if_present(target, entry.mode)


def apply_layer(rootfs_dir: Path, layer_blob_path: Path, media_type: str) -> int:
    """Apply one layer blob onto rootfs_dir.

    Widened directory modes are restored once the whole layer is applied,
    including when an entry fails.

    Returns:
        Number of archive entries processed

    Raises:
        UnsupportedLayerMediaTypeError: If the media type or compression is wrong
        SecurityError: If any entry is unsafe; the layer is abandoned
    """
    compression = layer_compression(media_type)
    if compression is None:
        raise UnsupportedLayerMediaTypeError(
            f"Unsupported layer media type '{media_type}'.",
            ["Supported layer media types are tar and tar+gzip."],
        )

    tar_bytes = decompress_layer(Path(layer_blob_path).read_bytes(), compression)
    entries = parse_tar_bytes(tar_bytes)
    journal = PermissionJournal()

    try:
        for entry in entries:
            apply_tar_entry(rootfs_dir, entry, journal)
    finally:
        journal.restore()

    return len(entries)


def apply_layers(
    pulled: PulledImage,
    scope: ResourceScope,
    base_rootfs: Optional[BaseRootfsExtractor] = None,
    settings: Optional[Settings] = None,
) -> AppliedRootfs:
    """Compose the rootfs: base tree first, then every layer in manifest order.

    Args:
        pulled: Output of the puller
        scope: Owns the working directory
        base_rootfs: Populates the fresh rootfs directory before layers are
            applied. Default: debugfs extraction of the configured base image
        settings: Supplies the base image for the default extractor.
            Default: from environment

    Returns:
        AppliedRootfs pointing at the composed tree
    """
    work_dir = scope.make_temp_dir("rootfs")
    rootfs_dir = work_dir / "rootfs"
    rootfs_dir.mkdir()

    if base_rootfs is not None:
        base_rootfs(rootfs_dir)
    else:
        extract_base_rootfs_tree(rootfs_dir, settings)

    for index, layer in enumerate(pulled.layers, start=1):
        count = apply_layer(rootfs_dir, layer.blob_path, layer.descriptor.media_type)
        logger.debug(
            "Applied layer %d/%d %s (%d entries)",
            index,
            len(pulled.layers),
            layer.descriptor.digest,
            count,
        )

    logger.info("Applied %d layers onto %s", len(pulled.layers), rootfs_dir)
    return AppliedRootfs(
        descriptor=pulled.descriptor,
        config=pulled.config,
        runtime_metadata=extract_runtime_metadata(pulled.config),
        rootfs_dir=rootfs_dir,
        temp_paths=pulled.descriptor.temp_paths + (work_dir,),
    )
