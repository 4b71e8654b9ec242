"""Custom exceptions for the OCI image to rootfs converter."""

from collections.abc import Iterable


class Oci2RootfsError(Exception):
    """Base exception for all converter errors.

    Every error carries a short message plus zero or more hint lines telling
    the caller how to fix the problem.
    """

    def __init__(self, message: str, hints: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.hints: tuple[str, ...] = tuple(hints)


# Error kinds


class UsageError(Oci2RootfsError):
    """Raised for caller-facing input problems."""

    pass


class IntegrityError(Oci2RootfsError):
    """Raised when content does not match its digest."""

    pass


class SecurityError(Oci2RootfsError):
    """Raised when archive content tries to escape the extraction root."""

    pass


class ProtocolError(Oci2RootfsError):
    """Raised when talking to a registry fails."""

    pass


class NotFoundError(Oci2RootfsError):
    """Raised when a local file, directory or blob is missing."""

    pass


class ToolEnvironmentError(Oci2RootfsError):
    """Raised when a required external tool is absent or fails."""

    pass


# Usage errors


class InvalidReferenceError(UsageError):
    """Raised when an image reference cannot be parsed."""

    pass


class UnsupportedPlatformError(UsageError):
    """Raised when the requested platform is not supported."""

    pass


class UnsupportedMediaTypeError(UsageError):
    """Raised when a manifest, config or layer has an unknown media type."""

    pass


class UnsupportedLayerMediaTypeError(UnsupportedMediaTypeError):
    """Raised when layer content does not match its declared compression."""

    pass


class DigestFormatError(UsageError):
    """Raised when a digest string is malformed."""

    pass


class UnsupportedDigestAlgorithmError(DigestFormatError):
    """Raised for digest algorithms other than sha256."""

    pass


class ManifestFormatError(UsageError):
    """Raised when a manifest or index document is invalid."""

    pass


class ConfigParseError(UsageError):
    """Raised when the image config blob is not a JSON object."""

    pass


class PlatformNotFoundError(UsageError):
    """Raised when no manifest matches the requested platform."""

    def __init__(
        self, message: str, available: Iterable[str] = (), hints: Iterable[str] = ()
    ) -> None:
        super().__init__(message, hints)
        self.available: tuple[str, ...] = tuple(available)


class CyclicManifestError(UsageError):
    """Raised when nested indexes reference each other or nest too deeply."""

    pass


# Integrity errors


class DigestMismatchError(IntegrityError):
    """Raised when a blob's content hash differs from the expected digest."""

    def __init__(
        self, message: str, expected: str, actual: str, hints: Iterable[str] = ()
    ) -> None:
        super().__init__(message, hints)
        self.expected = expected
        self.actual = actual


# Security errors


class PathTraversalError(SecurityError):
    """Raised when an archive path resolves outside the extraction root."""

    pass


class SymlinkParentError(SecurityError):
    """Raised when an archive entry would be written through a symlink."""

    pass


# Protocol errors


class RegistryHTTPError(ProtocolError):
    """Raised when the registry answers with an unexpected HTTP status."""

    def __init__(
        self,
        message: str,
        status: int,
        path: str,
        body: str = "",
        hints: Iterable[str] = (),
    ) -> None:
        super().__init__(message, hints)
        self.status = status
        self.path = path
        self.body = body


class AuthenticationError(ProtocolError):
    """Raised when the registry auth challenge or token response is unusable."""

    pass


class RegistryConnectionError(ProtocolError):
    """Raised when unable to connect to the registry."""

    pass


# Not found errors


class LayoutNotFoundError(NotFoundError):
    """Raised when an OCI layout directory, archive or index.json is missing."""

    pass


class BlobNotFoundError(NotFoundError):
    """Raised when a blob is missing from a local OCI layout."""

    pass


class BaseRootfsNotFoundError(NotFoundError):
    """Raised when the base rootfs image is not configured or missing."""

    pass


# Environment errors


class MissingToolError(ToolEnvironmentError):
    """Raised when a required external command is not installed."""

    pass


class ExternalToolError(ToolEnvironmentError):
    """Raised when an external command exits with an error."""

    pass


def render_error(error: BaseException) -> str:
    """Render an error as user-facing text.

    Args:
        error: Any exception

    Returns:
        ``Error: <message>`` followed by a "How to fix:" block when the error
        carries hints
    """
    if isinstance(error, Oci2RootfsError):
        lines = [f"Error: {error.message}"]
        if error.hints:
            lines.extend(["", "How to fix:"])
            lines.extend(f"  - {hint}" for hint in error.hints)
        return "\n".join(lines)

    return f"Error: {error}"
