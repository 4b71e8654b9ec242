"""Docker Registry API v2 async client with bearer token authentication."""

import asyncio
import hashlib
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import aiofiles
import aiohttp

from ..exceptions import (
    AuthenticationError,
    DigestMismatchError,
    RegistryConnectionError,
    RegistryHTTPError,
)
from ..utils.digest import parse_digest, verify_digest
from ..utils.fs import temp_sibling
from .config import RegistryConfig, Settings
from .media_types import MANIFEST_ACCEPT_HEADER
from .types import Descriptor, ImageReference

logger = logging.getLogger(__name__)

MAX_ERROR_BODY = 220


@dataclass(frozen=True)
class AuthChallenge:
    """A parsed ``WWW-Authenticate`` header."""

    scheme: str
    realm: str
    service: Optional[str] = None
    scope: Optional[str] = None


@dataclass(frozen=True)
class FetchedManifest:
    """A manifest or index as returned by the registry."""

    descriptor: Descriptor
    body: bytes
    media_type: str


@dataclass(frozen=True)
class _Response:
    status: int
    reason: str
    headers: Mapping[str, str]
    body: bytes


def parse_auth_challenge(header: Optional[str]) -> Optional[AuthChallenge]:
    """Parse ``Bearer realm="...",service="...",scope="..."``.

    Returns:
        The challenge, or None if the header is missing or has no realm
    """
    if not header:
        return None

    scheme, _, params_raw = header.strip().partition(" ")
    if not scheme or not params_raw:
        return None

    params: dict[str, str] = {}
    for part in params_raw.split(","):
        key, eq, value = part.strip().partition("=")
        if not eq or not key:
            continue
        value = value.strip()
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1]
        params[key.strip()] = value

    if not params.get("realm"):
        return None

    return AuthChallenge(
        scheme=scheme,
        realm=params["realm"],
        service=params.get("service"),
        scope=params.get("scope"),
    )


def truncate(value: str, limit: int = MAX_ERROR_BODY) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}..."


def _encode_reference(reference: str) -> str:
    return quote(reference, safe="/:")


class RegistryClient:
    """Docker Registry API v2 async client for one repository.

    Requests are tried without credentials first. On HTTP 401 the client
    follows the ``WWW-Authenticate`` Bearer challenge, requests a token and
    retries once. The token is kept for the lifetime of the client.
    """

    def __init__(
        self,
        reference: ImageReference,
        config: Optional[RegistryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """Initialize the registry client.

        Args:
            reference: Parsed image reference; its repository is used for
                every request
            config: Registry URL and timeout. Default: https to the
                reference's API host
            session: Existing aiohttp session to reuse
        """
        self.reference = reference
        self.config = config or Settings().registry_config(reference.registry_api_host)
        self.session = session
        self._owns_session = session is None
        self._token: Optional[str] = None

    async def __aenter__(self) -> "RegistryClient":
        """Enter async context manager."""
        if not self.session:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the client session if the client created it."""
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()

    @property
    def repository(self) -> str:
        return self.reference.repository

    async def _get(
        self, url: str, path: str, headers: Optional[dict[str, str]] = None, **kwargs
    ) -> _Response:
        if self.session is None:
            raise RuntimeError("RegistryClient must be used as an async context manager")
        try:
            async with self.session.get(url, headers=headers, **kwargs) as resp:
                body = await resp.read()
                return _Response(resp.status, resp.reason or "", resp.headers, body)
        except aiohttp.ClientError as e:
            raise RegistryConnectionError(
                f"Failed to connect to registry: {e}",
                [f"Request: {path}", "Check network access to the registry."],
            ) from e
        except asyncio.TimeoutError as e:
            raise RegistryConnectionError(
                f"Registry request timed out after {self.config.timeout}s.",
                [f"Request: {path}"],
            ) from e

    def _http_error(
        self, response: _Response, path: str, extra_hints: tuple[str, ...] = ()
    ) -> RegistryHTTPError:
        body = truncate(response.body.decode("utf-8", errors="replace"))
        hints = [f"HTTP {response.status} {response.reason} while requesting {path}"]
        if body:
            hints.append(f"Registry response: {body}")
        hints.extend(extra_hints)
        return RegistryHTTPError(
            "Registry request failed.",
            status=response.status,
            path=path,
            body=body,
            hints=hints,
        )

    async def _request(
        self, path: str, headers: Optional[dict[str, str]] = None
    ) -> _Response:
        """GET a registry path, authenticating once on HTTP 401."""
        url = f"{self.config.base_url}{path}"
        request_headers = dict(headers or {})
        if self._token:
            request_headers["Authorization"] = f"Bearer {self._token}"

        response = await self._get(url, path, request_headers)
        if response.status == 200:
            return response
        if response.status != 401:
            raise self._http_error(response, path)

        challenge = parse_auth_challenge(response.headers.get("WWW-Authenticate"))
        if challenge is None or challenge.scheme.lower() != "bearer":
            raise self._http_error(
                response,
                path,
                (
                    "Registry requested authentication, but no supported "
                    "Bearer challenge was provided.",
                ),
            )

        self._token = await self._request_token(challenge)
        request_headers["Authorization"] = f"Bearer {self._token}"

        retry = await self._get(url, path, request_headers)
        if retry.status != 200:
            raise self._http_error(retry, path)
        return retry

    async def _request_token(self, challenge: AuthChallenge) -> str:
        params = {"scope": challenge.scope or f"repository:{self.repository}:pull"}
        if challenge.service:
            params["service"] = challenge.service

        logger.debug("Requesting bearer token from %s", challenge.realm)
        response = await self._get(challenge.realm, challenge.realm, params=params)
        if response.status != 200:
            raise self._http_error(
                response,
                challenge.realm,
                ("Unable to obtain Bearer token for registry access.",),
            )

        try:
            payload = json.loads(response.body)
        except ValueError as e:
            raise AuthenticationError(
                f"Registry token response is not valid JSON: {e}",
                ["Check registry authentication endpoint behavior."],
            ) from e

        token = None
        if isinstance(payload, dict):
            token = payload.get("token") or payload.get("access_token")
        if not token or not isinstance(token, str):
            raise AuthenticationError(
                "Registry token response did not include a token.",
                ["Check registry authentication endpoint behavior."],
            )
        return token

    async def fetch_manifest(self, reference: str) -> FetchedManifest:
        """Fetch a manifest or index by tag or digest.

        Args:
            reference: Tag or digest

        Returns:
            FetchedManifest with a descriptor whose digest has been checked
            against the body

        Raises:
            RegistryHTTPError: If the registry answers with an error status
            DigestMismatchError: If the body does not match its digest
        """
        path = f"/v2/{self.repository}/manifests/{_encode_reference(reference)}"
        response = await self._request(path, {"Accept": MANIFEST_ACCEPT_HEADER})

        media_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        actual = f"sha256:{hashlib.sha256(response.body).hexdigest()}"

        header_digest = response.headers.get("Docker-Content-Digest")
        if header_digest:
            digest = str(parse_digest(header_digest))
            verify_digest(response.body, digest, label="manifest")
        else:
            digest = actual

        if reference.startswith("sha256:"):
            verify_digest(response.body, reference, label="manifest")

        descriptor = Descriptor(media_type=media_type, digest=digest, size=len(response.body))
        logger.debug("Fetched manifest %s (%s) for %s", digest, media_type, reference)
        return FetchedManifest(descriptor=descriptor, body=response.body, media_type=media_type)

    async def fetch_blob_to_file(self, digest: str, dest_path: Path) -> None:
        """Download a blob and write it to dest_path once verified.

        The body is hashed in full before anything touches dest_path; the
        write goes to a temporary sibling that is renamed into place.

        Raises:
            DigestFormatError: If digest is malformed
            DigestMismatchError: If the downloaded content does not match
        """
        parsed = parse_digest(digest)
        path = f"/v2/{self.repository}/blobs/{_encode_reference(str(parsed))}"
        response = await self._request(path)

        actual_hex = hashlib.sha256(response.body).hexdigest()
        if actual_hex != parsed.hex:
            raise DigestMismatchError(
                f"Digest mismatch while downloading blob {digest}.",
                expected=str(parsed),
                actual=f"sha256:{actual_hex}",
                hints=[
                    f"Expected {parsed}",
                    f"Actual   sha256:{actual_hex}",
                    "Retry the command. If it persists, check upstream "
                    "registry consistency.",
                ],
            )

        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = temp_sibling(dest_path)
        try:
            async with aiofiles.open(tmp_path, "wb") as fh:
                await fh.write(response.body)
            os.replace(tmp_path, dest_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        logger.debug("Downloaded blob %s (%d bytes)", digest, len(response.body))
