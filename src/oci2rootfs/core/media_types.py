"""OCI and Docker media type constants."""

from typing import Literal, Optional

OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"

DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"

OCI_LAYER_TAR = "application/vnd.oci.image.layer.v1.tar"
OCI_LAYER_TAR_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
DOCKER_LAYER_TAR = "application/vnd.docker.image.rootfs.diff.tar"
DOCKER_LAYER_TAR_GZIP = "application/vnd.docker.image.rootfs.diff.tar.gzip"

GZIP_LAYER_MEDIA_TYPES = frozenset({OCI_LAYER_TAR_GZIP, DOCKER_LAYER_TAR_GZIP})
UNCOMPRESSED_LAYER_MEDIA_TYPES = frozenset({OCI_LAYER_TAR, DOCKER_LAYER_TAR})
SUPPORTED_LAYER_MEDIA_TYPES = GZIP_LAYER_MEDIA_TYPES | UNCOMPRESSED_LAYER_MEDIA_TYPES

MANIFEST_ACCEPT_HEADER = ", ".join(
    [OCI_IMAGE_INDEX, OCI_IMAGE_MANIFEST, DOCKER_MANIFEST_LIST, DOCKER_MANIFEST_V2]
)

Compression = Literal["gzip", "none"]


def is_index_media_type(media_type: Optional[str]) -> bool:
    return media_type in (OCI_IMAGE_INDEX, DOCKER_MANIFEST_LIST)


def is_manifest_media_type(media_type: Optional[str]) -> bool:
    return media_type in (OCI_IMAGE_MANIFEST, DOCKER_MANIFEST_V2)


def is_supported_config_media_type(media_type: Optional[str]) -> bool:
    return media_type in (OCI_IMAGE_CONFIG, DOCKER_CONFIG)


def layer_compression(media_type: Optional[str]) -> Optional[Compression]:
    """Return the compression of a layer media type, or None if unsupported."""
    if media_type in GZIP_LAYER_MEDIA_TYPES:
        return "gzip"
    if media_type in UNCOMPRESSED_LAYER_MEDIA_TYPES:
        return "none"
    return None
