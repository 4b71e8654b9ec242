"""Core data types shared by the pipeline stages."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional, Union, get_args

from ..exceptions import ManifestFormatError, UnsupportedPlatformError

SupportedPlatform = Literal["linux/amd64", "linux/arm64"]
SUPPORTED_PLATFORMS: tuple[str, ...] = get_args(SupportedPlatform)


def parse_platform(value: str) -> SupportedPlatform:
    """Validate a platform string such as ``linux/amd64``.

    Raises:
        UnsupportedPlatformError: If the platform is not supported
    """
    candidate = value.strip() if isinstance(value, str) else value
    if candidate not in SUPPORTED_PLATFORMS:
        raise UnsupportedPlatformError(
            f"Unsupported platform '{value}'.",
            [f"Supported platforms: {', '.join(SUPPORTED_PLATFORMS)}"],
        )
    return candidate  # type: ignore[return-value]


@dataclass(frozen=True)
class ImageReference:
    """A parsed registry image reference."""

    original: str
    registry: str
    registry_api_host: str
    repository: str
    reference: str
    tag: Optional[str] = None
    digest: Optional[str] = None


@dataclass(frozen=True)
class PlatformInfo:
    """Platform of a manifest as declared in an index."""

    os: Optional[str] = None
    architecture: Optional[str] = None
    variant: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlatformInfo":
        return cls(
            os=data.get("os"),
            architecture=data.get("architecture"),
            variant=data.get("variant"),
        )

    def __str__(self) -> str:
        variant = f"/{self.variant}" if self.variant else ""
        return f"{self.os or '?'}/{self.architecture or '?'}{variant}"


@dataclass(frozen=True)
class Descriptor:
    """Content-addressed pointer to a manifest, index, config or layer blob."""

    media_type: str
    digest: str
    size: int
    platform: Optional[PlatformInfo] = None
    annotations: Optional[dict[str, str]] = None

    @classmethod
    def from_dict(cls, data: Any, label: str = "descriptor") -> "Descriptor":
        """Build a descriptor from its OCI JSON form.

        Raises:
            ManifestFormatError: If the JSON is not a valid descriptor
        """
        if not isinstance(data, dict):
            raise ManifestFormatError(f"Invalid {label}: expected object.")

        digest = data.get("digest")
        size = data.get("size", 0)
        if not isinstance(digest, str) or not digest:
            raise ManifestFormatError(f"Invalid {label}: missing digest.")
        if isinstance(size, bool) or not isinstance(size, int):
            raise ManifestFormatError(f"Invalid {label}: size must be an integer.")

        platform = data.get("platform")
        annotations = data.get("annotations")
        return cls(
            media_type=data.get("mediaType") or "",
            digest=digest,
            size=size,
            platform=PlatformInfo.from_dict(platform)
            if isinstance(platform, dict)
            else None,
            annotations=dict(annotations) if isinstance(annotations, dict) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        if self.platform is not None:
            result["platform"] = {
                key: value
                for key, value in (
                    ("os", self.platform.os),
                    ("architecture", self.platform.architecture),
                    ("variant", self.platform.variant),
                )
                if value is not None
            }
        if self.annotations is not None:
            result["annotations"] = dict(self.annotations)
        return result


# Input sources


@dataclass(frozen=True)
class ImageSource:
    """An image in a registry, e.g. ``busybox:latest``."""

    ref: str
    kind: Literal["image"] = "image"


@dataclass(frozen=True)
class LayoutSource:
    """An OCI layout directory on disk."""

    path: Path
    kind: Literal["oci-layout"] = "oci-layout"


@dataclass(frozen=True)
class ArchiveSource:
    """A tar (or tar+gzip) archive containing an OCI layout."""

    path: Path
    kind: Literal["oci-tar"] = "oci-tar"


InputSource = Union[ImageSource, LayoutSource, ArchiveSource]


@dataclass(frozen=True)
class RegistrySourceDetails:
    """What the puller needs to fetch blobs from a registry."""

    registry: str
    repository: str
    reference: str
    kind: Literal["registry"] = "registry"


@dataclass(frozen=True)
class LayoutSourceDetails:
    """What the puller needs to copy blobs out of an OCI layout."""

    layout_path: Path
    kind: Literal["layout"] = "layout"


SourceDetails = Union[RegistrySourceDetails, LayoutSourceDetails]


# Stage outputs


@dataclass(frozen=True)
class ResolvedImageDescriptor:
    """One concrete, platform-selected manifest and its blobs."""

    source: InputSource
    platform: SupportedPlatform
    manifest_descriptor: Descriptor
    config_descriptor: Descriptor
    layer_descriptors: tuple[Descriptor, ...]  # bottom layer first
    source_digest: str
    source_details: SourceDetails
    temp_paths: tuple[Path, ...] = ()


@dataclass(frozen=True)
class PulledLayer:
    """A layer descriptor paired with its verified local blob."""

    descriptor: Descriptor
    blob_path: Path


@dataclass(frozen=True)
class PulledImage:
    """Resolved image with config and every layer available locally."""

    descriptor: ResolvedImageDescriptor
    config_blob_path: Path
    config: dict[str, Any]
    layers: tuple[PulledLayer, ...]


@dataclass(frozen=True)
class RuntimeMetadata:
    """Process settings of the image handed to the materializer."""

    entrypoint: tuple[str, ...] = ()
    cmd: tuple[str, ...] = ()
    env: tuple[str, ...] = ()
    workdir: str = ""
    user: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "entrypoint": list(self.entrypoint),
            "cmd": list(self.cmd),
            "env": list(self.env),
            "workdir": self.workdir,
            "user": self.user,
        }


@dataclass(frozen=True)
class AppliedRootfs:
    """A fully composed rootfs directory ready for materialization."""

    descriptor: ResolvedImageDescriptor
    config: dict[str, Any]
    runtime_metadata: RuntimeMetadata
    rootfs_dir: Path
    temp_paths: tuple[Path, ...] = ()


@dataclass(frozen=True)
class ConversionResult:
    """Summary of one pipeline run."""

    source: InputSource
    source_digest: str
    platform: SupportedPlatform
    layers_applied: int
    rootfs_dir: Path
    runtime_metadata: RuntimeMetadata = field(default_factory=RuntimeMetadata)
    materialized: Any = None


@dataclass(frozen=True)
class PipelineStep:
    """One step of the conversion pipeline, as reported by a dry run."""

    id: str
    stage: Literal["resolver", "puller", "layer-apply", "materialize"]
    description: str


@dataclass(frozen=True)
class DryRunPlan:
    """The steps a conversion would run, without running them."""

    source: InputSource
    platform: SupportedPlatform
    steps: tuple[PipelineStep, ...]
