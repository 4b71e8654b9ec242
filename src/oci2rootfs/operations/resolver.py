"""Resolve an input source to one platform-specific image manifest."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional, Sequence

from ..core.config import Settings
from ..core.media_types import (
    OCI_IMAGE_MANIFEST,
    SUPPORTED_LAYER_MEDIA_TYPES,
    is_index_media_type,
    is_manifest_media_type,
    is_supported_config_media_type,
)
from ..core.reference import parse_image_reference
from ..core.registry_client import RegistryClient
from ..core.scope import ResourceScope
from ..core.types import (
    ArchiveSource,
    Descriptor,
    ImageSource,
    InputSource,
    LayoutSource,
    LayoutSourceDetails,
    RegistrySourceDetails,
    ResolvedImageDescriptor,
    SupportedPlatform,
    parse_platform,
)
from ..exceptions import (
    CyclicManifestError,
    ManifestFormatError,
    PlatformNotFoundError,
    UnsupportedMediaTypeError,
)
from ..tar.extract import extract_tar_to_directory
from ..tar.reader import parse_tar_bytes, read_tar_or_tar_gz
from ..utils.digest import verify_digest
from ..utils.fs import assert_directory_exists, assert_file_exists, layout_blob_path

logger = logging.getLogger(__name__)

MAX_INDEX_DEPTH = 8


# Document parsing


def parse_json(raw: bytes, label: str) -> Any:
    """Parse a JSON document.

    Raises:
        ManifestFormatError: If the document is not valid JSON
    """
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise ManifestFormatError(f"Failed to parse {label} JSON.", [str(e)]) from e


def as_index_document(value: Any, label: str) -> list[Descriptor]:
    """Validate an image index and return its manifest descriptors."""
    if not isinstance(value, dict):
        raise ManifestFormatError(f"Invalid {label}: expected object.")

    manifests = value.get("manifests")
    if value.get("schemaVersion") != 2 or not isinstance(manifests, list):
        raise ManifestFormatError(
            f"Invalid {label}: expected schemaVersion 2 with manifests array."
        )

    return [Descriptor.from_dict(item, f"{label} entry") for item in manifests]


def as_manifest_document(
    value: Any, label: str
) -> tuple[Descriptor, tuple[Descriptor, ...]]:
    """Validate an image manifest and return its config and layer descriptors."""
    if not isinstance(value, dict):
        raise ManifestFormatError(f"Invalid {label}: expected object.")

    config = value.get("config")
    layers = value.get("layers")
    if value.get("schemaVersion") != 2 or not config or not isinstance(layers, list):
        raise ManifestFormatError(
            f"Invalid {label}: expected schemaVersion 2 with config and layers."
        )

    return (
        Descriptor.from_dict(config, f"{label} config"),
        tuple(Descriptor.from_dict(layer, f"{label} layer") for layer in layers),
    )


def validate_manifest_contents(
    config: Descriptor, layers: Sequence[Descriptor]
) -> None:
    """Reject unknown config and layer media types before any blob is fetched.

    Raises:
        UnsupportedMediaTypeError: If the config or any layer is unsupported
    """
    if not is_supported_config_media_type(config.media_type):
        raise UnsupportedMediaTypeError(
            f"Unsupported config media type '{config.media_type}'.",
            ["Expected OCI or Docker image config media type."],
        )

    for layer in layers:
        if layer.media_type not in SUPPORTED_LAYER_MEDIA_TYPES:
            raise UnsupportedMediaTypeError(
                f"Unsupported layer media type '{layer.media_type}'.",
                ["Only tar and tar+gzip layer media types are supported."],
            )


def select_manifest_for_platform(
    descriptors: Sequence[Descriptor], platform: SupportedPlatform
) -> Descriptor:
    """Pick the descriptor matching platform.

    A single descriptor without platform information is accepted as is.
    Otherwise the first exact os/architecture match wins.

    Raises:
        PlatformNotFoundError: If nothing matches; lists what is available
    """
    target_os, target_arch = platform.split("/", 1)

    if len(descriptors) == 1 and descriptors[0].platform is None:
        return descriptors[0]

    for descriptor in descriptors:
        info = descriptor.platform
        if info and info.os == target_os and info.architecture == target_arch:
            return descriptor

    available = [
        str(descriptor.platform) if descriptor.platform else "(unknown)"
        for descriptor in descriptors
    ]
    raise PlatformNotFoundError(
        f"No manifest matched requested platform '{platform}'.",
        available=available,
        hints=[
            f"Available platforms: {', '.join(available) or 'none'}",
            "Request one of the available platforms.",
        ],
    )


# Registry images


async def resolve_from_registry(
    source: ImageSource,
    platform: SupportedPlatform,
    settings: Optional[Settings] = None,
) -> ResolvedImageDescriptor:
    """Resolve an image reference against its registry."""
    settings = settings or Settings.from_env()
    parsed = parse_image_reference(source.ref)
    config = settings.registry_config(parsed.registry_api_host)

    async with RegistryClient(parsed, config) as client:
        top_level = await client.fetch_manifest(parsed.reference)
        selected_descriptor = top_level.descriptor
        selected_json = parse_json(top_level.body, "registry manifest")

        if is_index_media_type(top_level.media_type):
            entries = as_index_document(selected_json, "registry manifest index")
            selected_descriptor = select_manifest_for_platform(entries, platform)

            resolved = await client.fetch_manifest(selected_descriptor.digest)
            if not is_manifest_media_type(resolved.media_type):
                raise UnsupportedMediaTypeError(
                    f"Unsupported resolved manifest media type '{resolved.media_type}'.",
                    ["Expected an OCI or Docker v2 image manifest."],
                )
            selected_json = parse_json(
                resolved.body, f"manifest {selected_descriptor.digest}"
            )
        elif not is_manifest_media_type(top_level.media_type):
            raise UnsupportedMediaTypeError(
                f"Unsupported manifest media type '{top_level.media_type}'.",
                ["Expected an OCI/Docker manifest or manifest list."],
            )

    config_descriptor, layers = as_manifest_document(
        selected_json, "registry image manifest"
    )
    validate_manifest_contents(config_descriptor, layers)

    manifest_descriptor = selected_descriptor
    if not manifest_descriptor.media_type:
        manifest_descriptor = Descriptor(
            media_type=OCI_IMAGE_MANIFEST,
            digest=selected_descriptor.digest,
            size=selected_descriptor.size,
            platform=selected_descriptor.platform,
            annotations=selected_descriptor.annotations,
        )

    return ResolvedImageDescriptor(
        source=source,
        platform=platform,
        manifest_descriptor=manifest_descriptor,
        config_descriptor=config_descriptor,
        layer_descriptors=layers,
        source_digest=selected_descriptor.digest,
        source_details=RegistrySourceDetails(
            registry=parsed.registry_api_host,
            repository=parsed.repository,
            reference=parsed.reference,
        ),
    )


# OCI layouts


def read_layout_blob(layout_path: Path, digest: str) -> bytes:
    """Read a blob from an OCI layout and verify it against its digest."""
    data = layout_blob_path(layout_path, digest).read_bytes()
    verify_digest(data, digest, label="layout blob")
    return data


def resolve_manifest_descriptor_from_layout(
    layout_path: Path,
    descriptor: Descriptor,
    platform: SupportedPlatform,
    visited: Optional[frozenset[str]] = None,
) -> Descriptor:
    """Follow nested indexes in a layout down to a manifest descriptor.

    Raises:
        CyclicManifestError: If an index is revisited or nesting is too deep
        UnsupportedMediaTypeError: If a descriptor is neither index nor manifest
    """
    if is_manifest_media_type(descriptor.media_type):
        return descriptor

    if not is_index_media_type(descriptor.media_type):
        raise UnsupportedMediaTypeError(
            f"Unsupported descriptor media type '{descriptor.media_type}'.",
            ["Expected OCI manifest or OCI index descriptor in layout."],
        )

    visited = visited or frozenset()
    if descriptor.digest in visited:
        raise CyclicManifestError(
            f"Index {descriptor.digest} references itself.",
            ["The OCI layout contains a cyclic index chain."],
        )
    if len(visited) >= MAX_INDEX_DEPTH:
        raise CyclicManifestError(
            f"Index nesting deeper than {MAX_INDEX_DEPTH} levels.",
            ["The OCI layout contains an unreasonably deep index chain."],
        )

    index_json = parse_json(
        read_layout_blob(layout_path, descriptor.digest), f"index {descriptor.digest}"
    )
    nested = as_index_document(index_json, f"index {descriptor.digest}")
    selected = select_manifest_for_platform(nested, platform)
    return resolve_manifest_descriptor_from_layout(
        layout_path, selected, platform, visited | {descriptor.digest}
    )


def resolve_from_layout(
    source: InputSource,
    layout_path: Path,
    platform: SupportedPlatform,
    temp_paths: tuple[Path, ...] = (),
) -> ResolvedImageDescriptor:
    """Resolve an OCI layout directory."""
    assert_directory_exists(layout_path, "OCI layout directory")
    index_path = layout_path / "index.json"
    assert_file_exists(index_path, "OCI layout index.json")

    index_json = parse_json(index_path.read_bytes(), "OCI layout index.json")
    manifests = as_index_document(index_json, "OCI layout index")
    if not manifests:
        raise ManifestFormatError(
            "OCI layout index has no manifests.",
            [f"Path: {index_path}", "Ensure the OCI layout is complete and valid."],
        )

    top_descriptor = select_manifest_for_platform(manifests, platform)
    manifest_descriptor = resolve_manifest_descriptor_from_layout(
        layout_path, top_descriptor, platform
    )
    manifest_json = parse_json(
        read_layout_blob(layout_path, manifest_descriptor.digest),
        f"manifest {manifest_descriptor.digest}",
    )
    config_descriptor, layers = as_manifest_document(manifest_json, "OCI image manifest")
    validate_manifest_contents(config_descriptor, layers)

    return ResolvedImageDescriptor(
        source=source,
        platform=platform,
        manifest_descriptor=manifest_descriptor,
        config_descriptor=config_descriptor,
        layer_descriptors=layers,
        source_digest=manifest_descriptor.digest,
        source_details=LayoutSourceDetails(layout_path=layout_path),
        temp_paths=temp_paths,
    )


def resolve_from_archive(
    source: ArchiveSource, platform: SupportedPlatform, scope: ResourceScope
) -> ResolvedImageDescriptor:
    """Extract an OCI tar archive to a scoped temp dir and resolve it as a layout."""
    archive_path = Path(source.path)
    assert_file_exists(archive_path, "OCI tar archive")

    layout_dir = scope.make_temp_dir("layout")
    entries = parse_tar_bytes(read_tar_or_tar_gz(archive_path))
    extract_tar_to_directory(entries, layout_dir)
    logger.debug("Extracted %d archive entries to %s", len(entries), layout_dir)

    return resolve_from_layout(source, layout_dir, platform, (layout_dir,))


async def resolve_image_descriptor(
    source: InputSource,
    platform: str,
    scope: ResourceScope,
    settings: Optional[Settings] = None,
) -> ResolvedImageDescriptor:
    """Resolve any input source to one concrete image manifest.

    Args:
        source: Registry image, OCI layout directory or OCI tar archive
        platform: Target platform, ``linux/amd64`` or ``linux/arm64``
        scope: Receives every temporary path created while resolving
        settings: Registry settings. Default: loaded from the environment

    Returns:
        ResolvedImageDescriptor with layers in manifest order

    Raises:
        UsageError: For invalid references, platforms, media types or documents
        ProtocolError: If the registry cannot be queried
        NotFoundError: If a local layout, archive or blob is missing
        SecurityError: If an archive contains unsafe paths
    """
    target = parse_platform(platform)
    loop = asyncio.get_running_loop()

    if isinstance(source, ImageSource):
        resolved = await resolve_from_registry(source, target, settings)
    elif isinstance(source, LayoutSource):
        resolved = await loop.run_in_executor(
            None, resolve_from_layout, source, Path(source.path), target
        )
    elif isinstance(source, ArchiveSource):
        resolved = await loop.run_in_executor(
            None, resolve_from_archive, source, target, scope
        )
    else:
        raise TypeError(f"Unknown input source: {source!r}")

    logger.info(
        "Resolved %s to %s (%d layers)",
        source.kind,
        resolved.source_digest,
        len(resolved.layer_descriptors),
    )
    return resolved
