"""Test helpers: synthetic layers, OCI layouts and an in-process registry."""

import gzip
import hashlib
import io
import json
import tarfile
from pathlib import Path
from typing import Any, Optional

from aiohttp import web

from oci2rootfs.core.media_types import (
    OCI_IMAGE_CONFIG,
    OCI_IMAGE_INDEX,
    OCI_IMAGE_MANIFEST,
    OCI_LAYER_TAR,
    OCI_LAYER_TAR_GZIP,
)

DEFAULT_CONFIG = {
    "architecture": "amd64",
    "os": "linux",
    "config": {
        "Entrypoint": ["/bin/sh"],
        "Cmd": ["-c", "echo hello"],
        "Env": ["PATH=/usr/local/bin:/usr/bin:/bin"],
        "WorkingDir": "/srv",
        "User": "1000:1000",
    },
}


def sha256_digest(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


# Tar members


def tar_file(name: str, content: bytes = b"", mode: int = 0o644):
    info = tarfile.TarInfo(name)
    info.type = tarfile.REGTYPE
    info.size = len(content)
    info.mode = mode
    return info, content


def tar_dir(name: str, mode: int = 0o755):
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    return info, None


def tar_symlink(name: str, target: str):
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    info.mode = 0o777
    return info, None


def tar_hardlink(name: str, target: str):
    info = tarfile.TarInfo(name)
    info.type = tarfile.LNKTYPE
    info.linkname = target
    info.mode = 0o644
    return info, None


def tar_fifo(name: str):
    info = tarfile.TarInfo(name)
    info.type = tarfile.FIFOTYPE
    info.mode = 0o644
    return info, None


def build_tar(members, compress: bool = False) -> bytes:
    """Build a tar stream from (TarInfo, content) pairs, in order."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for info, content in members:
            tar.addfile(info, io.BytesIO(content) if content is not None else None)
    data = buffer.getvalue()
    return gzip.compress(data) if compress else data


def descriptor(data: bytes, media_type: str, platform: Optional[str] = None) -> dict:
    result: dict[str, Any] = {
        "mediaType": media_type,
        "digest": sha256_digest(data),
        "size": len(data),
    }
    if platform:
        os_name, architecture = platform.split("/", 1)
        result["platform"] = {"os": os_name, "architecture": architecture}
    return result


def manifest_document(config_descriptor: dict, layer_descriptors: list[dict]) -> dict:
    return {
        "schemaVersion": 2,
        "mediaType": OCI_IMAGE_MANIFEST,
        "config": config_descriptor,
        "layers": layer_descriptors,
    }


def index_document(manifests: list[dict]) -> dict:
    return {"schemaVersion": 2, "mediaType": OCI_IMAGE_INDEX, "manifests": manifests}


def encode(document: Any) -> bytes:
    return json.dumps(document).encode()


class OciLayoutBuilder:
    """Writes an OCI image layout directory blob by blob."""

    def __init__(self, root: Path):
        self.root = root
        (root / "blobs" / "sha256").mkdir(parents=True, exist_ok=True)
        (root / "oci-layout").write_text('{"imageLayoutVersion":"1.0.0"}')

    def blob_path(self, digest: str) -> Path:
        return self.root / "blobs" / "sha256" / digest.split(":", 1)[1]

    def add_blob(self, data: bytes, media_type: str, platform: Optional[str] = None) -> dict:
        desc = descriptor(data, media_type, platform)
        self.blob_path(desc["digest"]).write_bytes(data)
        return desc

    def add_image(
        self,
        layers: list[bytes],
        config: Optional[dict] = None,
        compress: bool = True,
        platform: Optional[str] = None,
        layer_media_type: Optional[str] = None,
        config_bytes: Optional[bytes] = None,
    ) -> dict:
        """Add config, layers and manifest; return the manifest descriptor."""
        media_type = layer_media_type or (OCI_LAYER_TAR_GZIP if compress else OCI_LAYER_TAR)
        config_desc = self.add_blob(
            config_bytes if config_bytes is not None else encode(config or DEFAULT_CONFIG),
            OCI_IMAGE_CONFIG,
        )
        layer_descs = [self.add_blob(layer, media_type) for layer in layers]
        return self.add_blob(
            encode(manifest_document(config_desc, layer_descs)),
            OCI_IMAGE_MANIFEST,
            platform,
        )

    def add_index(self, manifests: list[dict], platform: Optional[str] = None) -> dict:
        return self.add_blob(encode(index_document(manifests)), OCI_IMAGE_INDEX, platform)

    def write_index(self, manifests: list[dict]) -> Path:
        path = self.root / "index.json"
        path.write_bytes(encode(index_document(manifests)))
        return path

    def to_archive(self, archive_path: Path, compress: bool = False) -> Path:
        members = []
        for path in sorted(self.root.rglob("*")):
            name = path.relative_to(self.root).as_posix()
            if path.is_dir():
                members.append(tar_dir(name))
            else:
                members.append(tar_file(name, path.read_bytes()))
        archive_path.write_bytes(build_tar(members, compress=compress))
        return archive_path


class FakeRegistry:
    """Minimal Docker Registry API v2 served by aiohttp.web.

    Set ``token`` to require Bearer authentication on /v2/ endpoints.
    ``challenge_scope`` overrides the advertised scope (empty string omits
    it) and ``token_payload`` replaces the JSON body of the token endpoint.
    """

    SERVICE = "fake-registry"

    def __init__(self, token: Optional[str] = None):
        self.token = token
        self.host = ""
        self.manifests: dict[tuple[str, str], tuple[str, bytes]] = {}
        self.blobs: dict[str, bytes] = {}
        self.corrupt_blobs: set[str] = set()
        self.wrong_digest_header = False
        self.token_status = 200
        self.challenge_scope: Optional[str] = None
        self.token_payload: Optional[dict] = None
        self.requests: list[str] = []
        self.token_requests: list[dict[str, str]] = []

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/token", self._handle_token)
        app.router.add_get("/v2/{name:.+}/manifests/{reference}", self._handle_manifest)
        app.router.add_get("/v2/{name:.+}/blobs/{digest}", self._handle_blob)
        return app

    # Content

    def add_blob(self, data: bytes) -> str:
        digest = sha256_digest(data)
        self.blobs[digest] = data
        return digest

    def add_manifest(
        self, repository: str, document: dict, media_type: str, tags=(), platform=None
    ) -> dict:
        body = encode(document)
        desc = descriptor(body, media_type, platform)
        self.manifests[(repository, desc["digest"])] = (media_type, body)
        for tag in tags:
            self.manifests[(repository, tag)] = (media_type, body)
        return desc

    def add_image(
        self,
        repository: str,
        layers: list[bytes],
        config: Optional[dict] = None,
        tags=("latest",),
        platform: Optional[str] = None,
        compress: bool = True,
    ) -> dict:
        """Add config, layers and manifest; return the manifest descriptor."""
        config_bytes = encode(config or DEFAULT_CONFIG)
        self.add_blob(config_bytes)
        config_desc = descriptor(config_bytes, OCI_IMAGE_CONFIG)

        media_type = OCI_LAYER_TAR_GZIP if compress else OCI_LAYER_TAR
        layer_descs = []
        for layer in layers:
            self.add_blob(layer)
            layer_descs.append(descriptor(layer, media_type))

        return self.add_manifest(
            repository,
            manifest_document(config_desc, layer_descs),
            OCI_IMAGE_MANIFEST,
            tags=tags,
            platform=platform,
        )

    def add_index(self, repository: str, manifests: list[dict], tags=("latest",)) -> dict:
        return self.add_manifest(
            repository, index_document(manifests), OCI_IMAGE_INDEX, tags=tags
        )

    # Handlers

    def _unauthorized(self, request: web.Request, repository: str) -> Optional[web.Response]:
        if self.token is None:
            return None
        if request.headers.get("Authorization") == f"Bearer {self.token}":
            return None
        scope = self.challenge_scope
        if scope is None:
            scope = f"repository:{repository}:pull"
        challenge = f'Bearer realm="http://{request.host}/token",service="{self.SERVICE}"'
        if scope:
            challenge += f',scope="{scope}"'
        return web.Response(
            status=401, text="unauthorized", headers={"WWW-Authenticate": challenge}
        )

    async def _handle_token(self, request: web.Request) -> web.Response:
        self.token_requests.append(dict(request.query))
        if self.token_status != 200:
            return web.Response(status=self.token_status, text="token service down")
        if self.token_payload is not None:
            return web.json_response(self.token_payload)
        return web.json_response({"token": self.token})

    async def _handle_manifest(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        reference = request.match_info["reference"]
        self.requests.append(f"manifest {name} {reference}")

        denied = self._unauthorized(request, name)
        if denied is not None:
            return denied

        found = self.manifests.get((name, reference))
        if found is None:
            return web.Response(status=404, text="manifest unknown " + "x" * 600)

        media_type, body = found
        digest = sha256_digest(body)
        if self.wrong_digest_header:
            digest = sha256_digest(body + b"tampered")
        return web.Response(
            body=body,
            content_type=media_type,
            headers={"Docker-Content-Digest": digest},
        )

    async def _handle_blob(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        digest = request.match_info["digest"]
        self.requests.append(f"blob {name} {digest}")

        denied = self._unauthorized(request, name)
        if denied is not None:
            return denied

        data = self.blobs.get(digest)
        if data is None:
            return web.Response(status=404, text="blob unknown")
        if digest in self.corrupt_blobs:
            data = data + b"corrupted"
        return web.Response(body=data, content_type="application/octet-stream")
