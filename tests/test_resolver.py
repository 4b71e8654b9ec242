"""Tests for manifest resolution from registries, layouts and archives."""

import pytest

from oci2rootfs.core.media_types import (
    DOCKER_LAYER_TAR_GZIP,
    OCI_IMAGE_CONFIG,
    OCI_IMAGE_MANIFEST,
)
from oci2rootfs.core.scope import ResourceScope
from oci2rootfs.core.types import (
    ArchiveSource,
    Descriptor,
    ImageSource,
    LayoutSource,
    LayoutSourceDetails,
    PlatformInfo,
    RegistrySourceDetails,
)
from oci2rootfs.exceptions import (
    BlobNotFoundError,
    CyclicManifestError,
    DigestMismatchError,
    LayoutNotFoundError,
    ManifestFormatError,
    PathTraversalError,
    PlatformNotFoundError,
    UnsupportedMediaTypeError,
    UnsupportedPlatformError,
)
from oci2rootfs.operations.resolver import (
    MAX_INDEX_DEPTH,
    as_manifest_document,
    resolve_image_descriptor,
    resolve_manifest_descriptor_from_layout,
    select_manifest_for_platform,
)
from tests.helpers import build_tar, sha256_digest, tar_file

LAYER_A = build_tar([tar_file("a.txt", b"a")], compress=True)
LAYER_B = build_tar([tar_file("b.txt", b"b")], compress=True)


def desc(platform=None, digest_char="a"):
    info = None
    if platform:
        os_name, arch = platform.split("/")
        info = PlatformInfo(os=os_name, architecture=arch)
    return Descriptor(
        media_type=OCI_IMAGE_MANIFEST,
        digest="sha256:" + digest_char * 64,
        size=1,
        platform=info,
    )


# Platform selection


def test_select_single_descriptor_without_platform():
    """Test the single-platform image shortcut."""
    only = desc()

    assert select_manifest_for_platform([only], "linux/arm64") is only


def test_select_exact_match_first_wins():
    """Test exact os/architecture matching in list order."""
    amd = desc("linux/amd64", "a")
    arm = desc("linux/arm64", "b")
    arm_again = desc("linux/arm64", "c")

    assert select_manifest_for_platform([amd, arm, arm_again], "linux/arm64") is arm


def test_select_reports_available_platforms():
    """Test that a miss lists every available platform."""
    with pytest.raises(PlatformNotFoundError) as exc_info:
        select_manifest_for_platform(
            [desc("linux/amd64", "a"), desc("windows/amd64", "b")], "linux/arm64"
        )

    assert exc_info.value.available == ("linux/amd64", "windows/amd64")
    assert "linux/amd64, windows/amd64" in exc_info.value.hints[0]


def test_select_single_descriptor_with_other_platform():
    """Test that a lone descriptor with a different platform is not accepted."""
    with pytest.raises(PlatformNotFoundError):
        select_manifest_for_platform([desc("linux/amd64")], "linux/arm64")


# Manifest validation


def test_manifest_requires_schema_version_2():
    """Test manifest shape validation."""
    with pytest.raises(ManifestFormatError):
        as_manifest_document({"schemaVersion": 1, "config": {}, "layers": []}, "m")

    with pytest.raises(ManifestFormatError):
        as_manifest_document({"schemaVersion": 2, "layers": []}, "m")


# OCI layouts


@pytest.mark.asyncio
async def test_resolve_layout_single_manifest(layout):
    """Test a layout whose index lists one manifest without platform."""
    manifest = layout.add_image([LAYER_A, LAYER_B])
    layout.write_index([manifest])

    with ResourceScope() as scope:
        resolved = await resolve_image_descriptor(
            LayoutSource(path=str(layout.root)), "linux/amd64", scope
        )

    assert resolved.source_digest == manifest["digest"]
    assert resolved.platform == "linux/amd64"
    assert resolved.config_descriptor.media_type == OCI_IMAGE_CONFIG
    assert [layer.digest for layer in resolved.layer_descriptors] == [
        sha256_digest(LAYER_A),
        sha256_digest(LAYER_B),
    ]
    assert isinstance(resolved.source_details, LayoutSourceDetails)
    assert resolved.source_details.layout_path == layout.root
    assert resolved.temp_paths == ()


@pytest.mark.asyncio
async def test_resolve_layout_multi_platform(layout):
    """Test platform selection from a layout index."""
    amd = layout.add_image([LAYER_A], platform="linux/amd64")
    arm = layout.add_image([LAYER_B], platform="linux/arm64")
    layout.write_index([amd, arm])

    with ResourceScope() as scope:
        resolved = await resolve_image_descriptor(
            LayoutSource(path=str(layout.root)), "linux/arm64", scope
        )

    assert resolved.source_digest == arm["digest"]


@pytest.mark.asyncio
async def test_resolve_layout_nested_index(layout):
    """Test that nested indexes are followed to a manifest."""
    amd = layout.add_image([LAYER_A], platform="linux/amd64")
    arm = layout.add_image([LAYER_B], platform="linux/arm64")
    nested = layout.add_index([amd, arm])
    layout.write_index([nested])

    with ResourceScope() as scope:
        resolved = await resolve_image_descriptor(
            LayoutSource(path=str(layout.root)), "linux/amd64", scope
        )

    assert resolved.source_digest == amd["digest"]
    assert resolved.manifest_descriptor.platform == PlatformInfo("linux", "amd64")


def test_resolve_layout_index_depth_bound(layout):
    """Test that an unreasonably deep index chain is refused."""
    current = layout.add_image([LAYER_A])
    for _ in range(MAX_INDEX_DEPTH + 1):
        current = layout.add_index([current])

    with pytest.raises(CyclicManifestError):
        resolve_manifest_descriptor_from_layout(
            layout.root, Descriptor.from_dict(current), "linux/amd64"
        )


def test_resolve_layout_revisited_index(layout):
    """Test that an index already on the resolution path is refused."""
    manifest = layout.add_image([LAYER_A])
    index = Descriptor.from_dict(layout.add_index([manifest]))

    with pytest.raises(CyclicManifestError):
        resolve_manifest_descriptor_from_layout(
            layout.root, index, "linux/amd64", frozenset({index.digest})
        )


@pytest.mark.asyncio
async def test_resolve_layout_unsupported_layer(layout):
    """Test that unknown layer media types fail resolution."""
    manifest = layout.add_image(
        [LAYER_A], layer_media_type="application/vnd.oci.image.layer.v1.tar+zstd"
    )
    layout.write_index([manifest])

    with ResourceScope() as scope:
        with pytest.raises(UnsupportedMediaTypeError):
            await resolve_image_descriptor(
                LayoutSource(path=str(layout.root)), "linux/amd64", scope
            )


@pytest.mark.asyncio
async def test_resolve_layout_accepts_docker_layers(layout):
    """Test that Docker legacy layer media types are accepted."""
    manifest = layout.add_image([LAYER_A], layer_media_type=DOCKER_LAYER_TAR_GZIP)
    layout.write_index([manifest])

    with ResourceScope() as scope:
        resolved = await resolve_image_descriptor(
            LayoutSource(path=str(layout.root)), "linux/amd64", scope
        )

    assert resolved.layer_descriptors[0].media_type == DOCKER_LAYER_TAR_GZIP


@pytest.mark.asyncio
async def test_resolve_layout_tampered_manifest(layout):
    """Test that a manifest blob not matching its digest is rejected."""
    manifest = layout.add_image([LAYER_A])
    layout.write_index([manifest])
    layout.blob_path(manifest["digest"]).write_bytes(b'{"schemaVersion": 2}')

    with ResourceScope() as scope:
        with pytest.raises(DigestMismatchError):
            await resolve_image_descriptor(
                LayoutSource(path=str(layout.root)), "linux/amd64", scope
            )


@pytest.mark.asyncio
async def test_resolve_layout_missing_manifest_blob(layout):
    """Test that a missing manifest blob is reported."""
    manifest = layout.add_image([LAYER_A])
    layout.write_index([manifest])
    layout.blob_path(manifest["digest"]).unlink()

    with ResourceScope() as scope:
        with pytest.raises(BlobNotFoundError):
            await resolve_image_descriptor(
                LayoutSource(path=str(layout.root)), "linux/amd64", scope
            )


@pytest.mark.asyncio
async def test_resolve_layout_empty_index(layout):
    """Test that an index with no manifests is a format error."""
    layout.write_index([])

    with ResourceScope() as scope:
        with pytest.raises(ManifestFormatError):
            await resolve_image_descriptor(
                LayoutSource(path=str(layout.root)), "linux/amd64", scope
            )


@pytest.mark.asyncio
async def test_resolve_layout_missing_directory(tmp_path):
    """Test that a missing layout directory is reported."""
    with ResourceScope() as scope:
        with pytest.raises(LayoutNotFoundError):
            await resolve_image_descriptor(
                LayoutSource(path=str(tmp_path / "missing")), "linux/amd64", scope
            )


@pytest.mark.asyncio
async def test_resolve_unsupported_platform(layout):
    """Test that only linux/amd64 and linux/arm64 are accepted."""
    with ResourceScope() as scope:
        with pytest.raises(UnsupportedPlatformError):
            await resolve_image_descriptor(
                LayoutSource(path=str(layout.root)), "windows/amd64", scope
            )


# OCI archives


@pytest.mark.asyncio
@pytest.mark.parametrize("compress", [False, True])
async def test_resolve_archive(layout, tmp_path, compress):
    """Test that an archive is extracted to a scoped directory and resolved."""
    manifest = layout.add_image([LAYER_A])
    layout.write_index([manifest])
    archive = layout.to_archive(tmp_path / "image.tar", compress=compress)

    scope = ResourceScope()
    with scope:
        resolved = await resolve_image_descriptor(
            ArchiveSource(path=str(archive)), "linux/amd64", scope
        )
        extracted = resolved.source_details.layout_path

        assert resolved.source_digest == manifest["digest"]
        assert resolved.temp_paths == (extracted,)
        assert extracted in scope.paths
        assert (extracted / "index.json").is_file()

    assert not extracted.exists()


@pytest.mark.asyncio
async def test_resolve_archive_with_traversal(tmp_path):
    """Test that an archive escaping its extraction directory is refused."""
    archive = tmp_path / "evil.tar"
    archive.write_bytes(build_tar([tar_file("../../evil", b"x")]))

    with ResourceScope() as scope:
        with pytest.raises(PathTraversalError):
            await resolve_image_descriptor(
                ArchiveSource(path=str(archive)), "linux/amd64", scope
            )


@pytest.mark.asyncio
async def test_resolve_missing_archive(tmp_path):
    """Test that a missing archive is reported."""
    with ResourceScope() as scope:
        with pytest.raises(LayoutNotFoundError):
            await resolve_image_descriptor(
                ArchiveSource(path=str(tmp_path / "missing.tar")), "linux/amd64", scope
            )


# Registry images


@pytest.mark.asyncio
async def test_resolve_registry_index(registry, registry_settings):
    """Test index selection and re-fetch of the platform manifest."""
    amd = registry.add_image("app", [LAYER_A], tags=(), platform="linux/amd64")
    arm = registry.add_image("app", [LAYER_B], tags=(), platform="linux/arm64")
    registry.add_index("app", [amd, arm], tags=("1.0",))

    with ResourceScope() as scope:
        resolved = await resolve_image_descriptor(
            ImageSource(ref=f"{registry.host}/app:1.0"),
            "linux/arm64",
            scope,
            registry_settings,
        )

    assert resolved.source_digest == arm["digest"]
    assert resolved.manifest_descriptor.media_type == OCI_IMAGE_MANIFEST
    assert resolved.layer_descriptors[0].digest == sha256_digest(LAYER_B)
    assert resolved.source_details == RegistrySourceDetails(
        registry=registry.host, repository="app", reference="1.0"
    )
    assert f"manifest app {arm['digest']}" in registry.requests


@pytest.mark.asyncio
async def test_resolve_registry_single_manifest(registry, registry_settings):
    """Test a tag that points directly at a manifest."""
    manifest = registry.add_image("org/app", [LAYER_A])

    with ResourceScope() as scope:
        resolved = await resolve_image_descriptor(
            ImageSource(ref=f"{registry.host}/org/app"),
            "linux/amd64",
            scope,
            registry_settings,
        )

    assert resolved.source_digest == manifest["digest"]
    assert len(resolved.layer_descriptors) == 1


@pytest.mark.asyncio
async def test_resolve_registry_platform_not_found(registry, registry_settings):
    """Test that a registry index without the platform fails with the choices."""
    amd = registry.add_image("app", [LAYER_A], tags=(), platform="linux/amd64")
    registry.add_index("app", [amd])

    with ResourceScope() as scope:
        with pytest.raises(PlatformNotFoundError) as exc_info:
            await resolve_image_descriptor(
                ImageSource(ref=f"{registry.host}/app"),
                "linux/arm64",
                scope,
                registry_settings,
            )

    assert exc_info.value.available == ("linux/amd64",)
