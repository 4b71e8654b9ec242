"""Async functional pipeline: resolve, pull, apply and hand over to a materializer."""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Union

from .core.config import Settings
from .core.scope import ResourceScope
from .core.types import (
    AppliedRootfs,
    ConversionResult,
    DryRunPlan,
    ImageSource,
    InputSource,
    PipelineStep,
    PulledImage,
    ResolvedImageDescriptor,
    parse_platform,
)
from .operations.layers import BaseRootfsExtractor, apply_layers
from .operations.puller import pull_and_verify_image
from .operations.resolver import resolve_image_descriptor

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM = "linux/amd64"

Materializer = Callable[[AppliedRootfs], Any]


def _as_source(source: Union[InputSource, str]) -> InputSource:
    if isinstance(source, str):
        return ImageSource(ref=source)
    return source


async def resolve_image(
    source: Union[InputSource, str],
    scope: ResourceScope,
    platform: str = DEFAULT_PLATFORM,
    settings: Optional[Settings] = None,
) -> ResolvedImageDescriptor:
    """Resolve a source to one platform-specific manifest.

    Args:
        source: Input source, or a registry image reference string
            (e.g. "alpine:3.20", "ghcr.io/org/app@sha256:...")
        scope: Receives temporary paths created while resolving
        platform: "linux/amd64" or "linux/arm64"
        settings: Registry settings. Default: from environment

    Returns:
        ResolvedImageDescriptor

    Examples:
        with ResourceScope() as scope:
            resolved = await resolve_image("alpine:3.20", scope, "linux/arm64")
            print(resolved.source_digest)
    """
    return await resolve_image_descriptor(_as_source(source), platform, scope, settings)


async def pull_image(
    descriptor: ResolvedImageDescriptor, settings: Optional[Settings] = None
) -> PulledImage:
    """Fetch and verify every blob of a resolved image into the blob cache.

    Args:
        descriptor: Output of resolve_image
        settings: Cache root and registry settings. Default: from environment

    Returns:
        PulledImage with local, verified blob paths
    """
    return await pull_and_verify_image(descriptor, settings)


async def convert_image(
    source: Union[InputSource, str],
    platform: str = DEFAULT_PLATFORM,
    *,
    settings: Optional[Settings] = None,
    materializer: Optional[Materializer] = None,
    base_rootfs: Optional[BaseRootfsExtractor] = None,
) -> ConversionResult:
    """Run the whole conversion for one image.

    Every temporary path (extracted archives, the rootfs working directory)
    is removed before this returns, on success and on failure. A materializer
    that needs the composed tree must copy or consume it when called.

    Args:
        source: Input source, or a registry image reference string
        platform: "linux/amd64" or "linux/arm64"
        settings: Default: from environment
        materializer: Called with the AppliedRootfs once all layers are
            applied; may be a coroutine function. Its return value is kept
            in ConversionResult.materialized
        base_rootfs: Populates the empty rootfs before layers are applied.
            Default: debugfs extraction of the configured base image

    Returns:
        ConversionResult

    Raises:
        Oci2RootfsError: Any structured failure from any stage
    """
    source = _as_source(source)
    target = parse_platform(platform)
    settings = settings or Settings.from_env()
    loop = asyncio.get_running_loop()

    with ResourceScope() as scope:
        resolved = await resolve_image_descriptor(source, target, scope, settings)
        pulled = await pull_and_verify_image(resolved, settings)
        applied = await loop.run_in_executor(
            None, apply_layers, pulled, scope, base_rootfs, settings
        )

        materialized = None
        if materializer is not None:
            materialized = materializer(applied)
            if inspect.isawaitable(materialized):
                materialized = await materialized

        result = ConversionResult(
            source=source,
            source_digest=resolved.source_digest,
            platform=target,
            layers_applied=len(pulled.layers),
            rootfs_dir=applied.rootfs_dir,
            runtime_metadata=applied.runtime_metadata,
            materialized=materialized,
        )

    logger.info(
        "Converted %s (%s) with %d layers",
        source.kind,
        result.source_digest,
        result.layers_applied,
    )
    return result


def build_dry_run_plan(
    source: Union[InputSource, str], platform: str = DEFAULT_PLATFORM
) -> DryRunPlan:
    """Describe the steps convert_image would run, without running any of them."""
    source = _as_source(source)
    target = parse_platform(platform)

    steps = (
        PipelineStep(
            id="resolve-manifest",
            stage="resolver",
            description=f"Resolve {source.kind} source to {target} manifest",
        ),
        PipelineStep(
            id="fetch-and-verify-blobs",
            stage="puller",
            description="Fetch config and layer blobs, verifying every digest",
        ),
        PipelineStep(
            id="apply-layers",
            stage="layer-apply",
            description="Apply layers in manifest order onto the base rootfs",
        ),
        PipelineStep(
            id="materialize",
            stage="materialize",
            description="Hand the composed rootfs and runtime metadata to the materializer",
        ),
    )
    return DryRunPlan(source=source, platform=target, steps=steps)
