"""oci2rootfs - Convert OCI container images into microVM rootfs trees."""

__version__ = "0.1.0"

from .core.config import RegistryConfig, Settings, configure_logging
from .core.reference import parse_image_reference
from .core.registry_client import RegistryClient
from .core.scope import ResourceScope
from .core.types import (
    AppliedRootfs,
    ArchiveSource,
    ConversionResult,
    Descriptor,
    DryRunPlan,
    ImageReference,
    ImageSource,
    LayoutSource,
    PulledImage,
    ResolvedImageDescriptor,
    RuntimeMetadata,
)
from .exceptions import (
    IntegrityError,
    NotFoundError,
    Oci2RootfsError,
    ProtocolError,
    SecurityError,
    ToolEnvironmentError,
    UsageError,
    render_error,
)
from .operations.layers import apply_layer, apply_layers
from .pipeline import build_dry_run_plan, convert_image, pull_image, resolve_image

__all__ = [
    "AppliedRootfs",
    "ArchiveSource",
    "ConversionResult",
    "Descriptor",
    "DryRunPlan",
    "ImageReference",
    "ImageSource",
    "IntegrityError",
    "LayoutSource",
    "NotFoundError",
    "Oci2RootfsError",
    "ProtocolError",
    "PulledImage",
    "RegistryClient",
    "RegistryConfig",
    "ResolvedImageDescriptor",
    "ResourceScope",
    "RuntimeMetadata",
    "SecurityError",
    "Settings",
    "ToolEnvironmentError",
    "UsageError",
    "apply_layer",
    "apply_layers",
    "build_dry_run_plan",
    "configure_logging",
    "convert_image",
    "parse_image_reference",
    "pull_image",
    "render_error",
    "resolve_image",
]
