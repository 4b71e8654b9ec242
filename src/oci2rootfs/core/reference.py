"""Image reference parsing."""

from ..exceptions import InvalidReferenceError
from .types import ImageReference

DEFAULT_REGISTRY = "docker.io"
DEFAULT_REGISTRY_API_HOST = "registry-1.docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"

_FORMAT_HINT = "Use format: [registry/]repo[:tag] or [registry/]repo@sha256:<digest>."


def _invalid(original: str, hint: str) -> InvalidReferenceError:
    return InvalidReferenceError(f"Invalid image reference '{original}'.", [hint])


def is_registry_segment(segment: str) -> bool:
    """Return True if the first path segment names a registry host."""
    return "." in segment or ":" in segment or segment == "localhost"


def parse_image_reference(value: str) -> ImageReference:
    """Parse an image reference into registry, repository and reference parts.

    Args:
        value: Reference such as ``busybox``, ``ghcr.io/org/app:1.2.3`` or
            ``localhost:5000/app@sha256:<hex>``

    Returns:
        ImageReference; ``reference`` is the digest if present, else the tag,
        else ``latest``

    Raises:
        InvalidReferenceError: If the reference is empty or malformed

    Examples:
        ref = parse_image_reference("busybox")
        # ref.registry == "docker.io", ref.repository == "library/busybox"
    """
    trimmed = value.strip() if isinstance(value, str) else ""
    if not trimmed:
        raise InvalidReferenceError(
            "Image reference cannot be empty.",
            [
                "Pass a valid image reference such as busybox:latest "
                "or ghcr.io/org/app:tag."
            ],
        )

    if "://" in trimmed:
        raise InvalidReferenceError(
            f"Invalid image reference '{value}'.",
            ["Do not include a URL scheme.", _FORMAT_HINT],
        )

    digest = None
    name = trimmed
    if "@" in trimmed:
        name, digest = trimmed.rsplit("@", 1)
        if not digest:
            raise _invalid(value, "Image digest after '@' cannot be empty.")

    if not name:
        raise _invalid(value, "Missing repository name.")

    registry = DEFAULT_REGISTRY
    repository = name
    # A registry prefix is only recognised when a slash follows it:
    # ghcr.io/org/app, localhost:5000/app
    first_segment, slash, rest = name.partition("/")
    if slash and is_registry_segment(first_segment):
        registry = first_segment
        repository = rest

    if not repository:
        raise _invalid(value, "Missing repository path after registry.")

    tag = None
    colon = repository.rfind(":")
    if colon > repository.rfind("/"):
        tag = repository[colon + 1 :]
        repository = repository[:colon]
        if not tag:
            raise _invalid(value, "Tag cannot be empty.")

    if not repository:
        raise _invalid(value, "Repository cannot be empty.")

    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = f"{DEFAULT_NAMESPACE}/{repository}"

    return ImageReference(
        original=value,
        registry=registry,
        registry_api_host=DEFAULT_REGISTRY_API_HOST
        if registry == DEFAULT_REGISTRY
        else registry,
        repository=repository,
        reference=digest or tag or DEFAULT_TAG,
        tag=tag,
        digest=digest,
    )
