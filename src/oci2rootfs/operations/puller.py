"""Fetch, verify and cache the config and layer blobs of a resolved image."""

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Optional

import aiofiles

from ..core.config import Settings
from ..core.registry_client import RegistryClient
from ..core.types import (
    ImageReference,
    LayoutSourceDetails,
    PulledImage,
    PulledLayer,
    RegistrySourceDetails,
    ResolvedImageDescriptor,
    RuntimeMetadata,
)
from ..exceptions import ConfigParseError
from ..utils.digest import assert_file_digest, parse_digest
from ..utils.fs import blob_path, layout_blob_path, temp_sibling

logger = logging.getLogger(__name__)


def reference_from_source_details(details: RegistrySourceDetails) -> ImageReference:
    """Rebuild the reference needed to open a registry client for details."""
    return ImageReference(
        original=f"{details.registry}/{details.repository}:{details.reference}",
        registry=details.registry,
        registry_api_host=details.registry,
        repository=details.repository,
        reference=details.reference,
    )


def copy_verified_blob(source: Path, dest: Path, digest: str) -> None:
    """Copy a blob into the cache, verifying before and after the copy.

    The copy lands on a temporary sibling and is renamed into place only when
    its content matches digest.
    """
    assert_file_digest(source, digest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = temp_sibling(dest)
    try:
        shutil.copyfile(source, tmp_path)
        assert_file_digest(tmp_path, digest)
        os.replace(tmp_path, dest)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class BlobPuller:
    """Materialises blobs of one resolved image in the local blob cache."""

    def __init__(
        self,
        descriptor: ResolvedImageDescriptor,
        cache_root: Path,
        client: Optional[RegistryClient] = None,
    ) -> None:
        self.descriptor = descriptor
        self.cache_root = Path(cache_root)
        self.client = client

    def cache_path(self, digest: str) -> Path:
        return blob_path(self.cache_root, digest)

    async def materialize(self, digest: str) -> Path:
        """Return a verified local path for digest, fetching it if needed.

        Raises:
            DigestMismatchError: If a cached, copied or downloaded blob does
                not match digest
            BlobNotFoundError: If a layout blob is missing
        """
        parsed = parse_digest(digest)
        cache_path = self.cache_path(str(parsed))
        cache_path.parent.mkdir(parents=True, exist_ok=True)

        if cache_path.exists():
            # A cached blob is trusted only after re-hashing it.
            assert_file_digest(cache_path, digest)
            logger.debug("Cache hit for %s", digest)
            return cache_path

        details = self.descriptor.source_details
        if isinstance(details, LayoutSourceDetails):
            logger.debug("Copying %s from layout %s", digest, details.layout_path)
            copy_verified_blob(
                layout_blob_path(details.layout_path, digest), cache_path, digest
            )
        elif isinstance(details, RegistrySourceDetails):
            if self.client is None:
                raise RuntimeError("Registry client is not initialized for image source")
            logger.debug("Downloading %s from %s", digest, details.registry)
            await self.client.fetch_blob_to_file(digest, cache_path)
        else:
            raise TypeError(f"Unknown source details: {details!r}")

        assert_file_digest(cache_path, digest)
        return cache_path


async def parse_config_blob(config_blob_path: Path) -> dict[str, Any]:
    """Read and parse the image config JSON.

    Raises:
        ConfigParseError: If the blob is not a JSON object
    """
    async with aiofiles.open(config_blob_path, "rb") as fh:
        raw = await fh.read()

    try:
        parsed = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise ConfigParseError(
            "Failed to parse OCI config blob JSON.",
            [str(e), f"Blob path: {config_blob_path}"],
        ) from e

    if not isinstance(parsed, dict):
        raise ConfigParseError(
            "OCI config blob JSON must be an object.",
            [f"Blob path: {config_blob_path}"],
        )
    return parsed


def _string_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return tuple(value)
    return ()


def extract_runtime_metadata(config: dict[str, Any]) -> RuntimeMetadata:
    """Pull entrypoint, cmd, env, workdir and user out of an image config."""
    runtime = config.get("config")
    if not isinstance(runtime, dict):
        runtime = {}

    workdir = runtime.get("WorkingDir")
    user = runtime.get("User")
    return RuntimeMetadata(
        entrypoint=_string_list(runtime.get("Entrypoint")),
        cmd=_string_list(runtime.get("Cmd")),
        env=_string_list(runtime.get("Env")),
        workdir=workdir if isinstance(workdir, str) else "",
        user=user if isinstance(user, str) else "",
    )


async def _pull_all(puller: BlobPuller) -> PulledImage:
    descriptor = puller.descriptor
    config_blob_path = await puller.materialize(descriptor.config_descriptor.digest)
    config = await parse_config_blob(config_blob_path)

    layers = []
    for layer_descriptor in descriptor.layer_descriptors:
        layer_path = await puller.materialize(layer_descriptor.digest)
        layers.append(PulledLayer(descriptor=layer_descriptor, blob_path=layer_path))

    return PulledImage(
        descriptor=descriptor,
        config_blob_path=config_blob_path,
        config=config,
        layers=tuple(layers),
    )


async def pull_and_verify_image(
    descriptor: ResolvedImageDescriptor, settings: Optional[Settings] = None
) -> PulledImage:
    """Fetch and verify the config blob and every layer blob, in manifest order.

    Args:
        descriptor: Output of the resolver
        settings: Cache root and registry settings. Default: from environment

    Returns:
        PulledImage whose layers pair one-to-one with the descriptor's layers
    """
    settings = settings or Settings.from_env()
    details = descriptor.source_details

    if isinstance(details, RegistrySourceDetails):
        reference = reference_from_source_details(details)
        config = settings.registry_config(details.registry)
        async with RegistryClient(reference, config) as client:
            pulled = await _pull_all(BlobPuller(descriptor, settings.cache_root, client))
    else:
        pulled = await _pull_all(BlobPuller(descriptor, settings.cache_root))

    logger.info(
        "Pulled config and %d layers for %s", len(pulled.layers), descriptor.source_digest
    )
    return pulled
