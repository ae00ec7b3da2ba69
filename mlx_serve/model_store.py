# Copyright © 2026 Apple Inc.

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

PathLike = Union[str, os.PathLike]

_HASH_CHUNK_SIZE = 1 << 20


def default_store_root() -> Path:
    """Resolve the store root from ``$MLX_SERVE_HOME`` or the home directory.

    Call this once at process start and hand the result to
    :class:`FileModelStore`.
    """
    env = os.environ.get("MLX_SERVE_HOME")
    if env:
        return Path(env)
    return Path.home() / ".mlx_serve"


# Identity types


@dataclass(frozen=True)
class ModelTag:
    name: str
    variant: Optional[str] = None
    version: Optional[str] = None

    @classmethod
    def parse(cls, string: str) -> Optional["ModelTag"]:
        """
        Parse ``name[:variant][@version]``.

        Returns ``None`` when the name is empty. Empty variants or versions
        (``"llama:"``, ``"llama@"``) are treated as absent.
        """
        left, at, version = string.partition("@")
        name, colon, variant = left.partition(":")
        if not name:
            return None
        return cls(name, variant or None, version or None)

    @property
    def display_name(self) -> str:
        text = self.name
        if self.variant is not None:
            text += f":{self.variant}"
        if self.version is not None:
            text += f"@{self.version}"
        return text

    def __str__(self):
        return self.display_name

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "variant": self.variant, "version": self.version}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelTag":
        return cls(data["name"], data.get("variant"), data.get("version"))


@dataclass(frozen=True)
class BlobDigest:
    value: str
    algorithm: str = "sha256"

    def __str__(self):
        return f"{self.algorithm}:{self.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {"algorithm": self.algorithm, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlobDigest":
        algorithm = data.get("algorithm", "sha256")
        if algorithm != "sha256":
            raise ValueError(f"Unsupported digest algorithm {algorithm}")
        return cls(data["value"], algorithm)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ModelManifest:
    tag: ModelTag
    digest: BlobDigest
    size_bytes: int
    created_at: datetime = field(default_factory=_utcnow)
    metadata: Dict[str, str] = field(default_factory=dict)
    additional_blobs: Optional[Dict[str, BlobDigest]] = None

    def all_digests(self) -> List[BlobDigest]:
        digests = [self.digest]
        if self.additional_blobs:
            digests.extend(self.additional_blobs.values())
        return digests

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "tag": self.tag.to_dict(),
            "digest": self.digest.to_dict(),
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
        }
        if self.additional_blobs is not None:
            out["additional_blobs"] = {
                k: v.to_dict() for k, v in self.additional_blobs.items()
            }
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelManifest":
        additional = data.get("additional_blobs")
        size_bytes = data["size_bytes"]
        if not isinstance(size_bytes, int):
            raise ValueError("size_bytes must be an integer")
        return cls(
            tag=ModelTag.from_dict(data["tag"]),
            digest=BlobDigest.from_dict(data["digest"]),
            size_bytes=size_bytes,
            created_at=datetime.fromisoformat(data["created_at"]),
            metadata={str(k): str(v) for k, v in data.get("metadata", {}).items()},
            additional_blobs=(
                {k: BlobDigest.from_dict(v) for k, v in additional.items()}
                if additional is not None
                else None
            ),
        )


# Errors


class ModelStoreError(Exception):
    pass


class TagNotFoundError(ModelStoreError):
    def __init__(self, tag: ModelTag):
        super().__init__(f"Tag not found: {tag.display_name}")
        self.tag = tag


class InvalidRootError(ModelStoreError):
    def __init__(self, path: Path):
        super().__init__(f"Store root is not a directory: {path}")
        self.path = path


class ManifestDecodeError(ModelStoreError):
    def __init__(self, path: Path, reason: str):
        super().__init__(f"Could not decode manifest {path}: {reason}")
        self.path = path
        self.reason = reason


class StoreWriteError(ModelStoreError):
    def __init__(self, path: Path, reason: str):
        super().__init__(f"Could not write {path}: {reason}")
        self.path = path
        self.reason = reason


class BlobMissingError(ModelStoreError):
    def __init__(self, path: Path):
        super().__init__(f"Blob not found: {path}")
        self.path = path


class BlobMismatchError(ModelStoreError):
    def __init__(self, expected: BlobDigest, actual: str):
        super().__init__(
            f"Blob digest mismatch: expected {expected}, got {expected.algorithm}:{actual}"
        )
        self.expected = expected
        self.actual = actual


# Filesystem helpers


def _sha256_file(path: Path) -> str:
    sha = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_HASH_CHUNK_SIZE):
            sha.update(chunk)
    return sha.hexdigest()


def atomic_write(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` through a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise StoreWriteError(path, str(e)) from e


class BlobStorage:
    """Content-addressed blobs under ``<root>/blobs/<algorithm>/<hex>``."""

    def __init__(self, root: PathLike):
        self.root = Path(root)

    def blob_path(self, digest: BlobDigest) -> Path:
        return self.root / "blobs" / digest.algorithm / digest.value

    def store_blob(self, source: PathLike) -> BlobDigest:
        source = Path(source)
        if not source.is_file():
            raise BlobMissingError(source)

        blob_dir = self.root / "blobs" / "sha256"
        blob_dir.mkdir(parents=True, exist_ok=True)

        # Hash while copying so large artifacts are never held in memory.
        sha = hashlib.sha256()
        fd, tmp_path = tempfile.mkstemp(dir=blob_dir, prefix=".import.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
                while chunk := src.read(_HASH_CHUNK_SIZE):
                    sha.update(chunk)
                    out.write(chunk)
                out.flush()
                os.fsync(out.fileno())
            digest = BlobDigest(sha.hexdigest())
            os.replace(tmp_path, self.blob_path(digest))
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise StoreWriteError(blob_dir, str(e)) from e

        logging.debug(f"[BlobStorage] Stored {source} as {digest}")
        return digest

    def verify_blob(self, digest: BlobDigest) -> bool:
        path = self.blob_path(digest)
        if not path.is_file():
            raise BlobMissingError(path)
        actual = _sha256_file(path)
        if actual != digest.value:
            raise BlobMismatchError(digest, actual)
        return True


class FileModelStore:
    """
    Manifests and blobs persisted under a single root directory.

    Layout::

        <root>/manifests/<quoted display name>.json
        <root>/blobs/sha256/<hex digest>

    Manifest filenames percent-encode the tag's display name so distinct
    tags never share a file.
    """

    def __init__(self, root: PathLike):
        self.root = Path(root)
        self.blobs = BlobStorage(self.root)
        self._ensure_layout()

    @property
    def manifests_dir(self) -> Path:
        return self.root / "manifests"

    def _ensure_layout(self):
        for path in (self.root, self.root / "blobs" / "sha256", self.manifests_dir):
            if path.exists() and not path.is_dir():
                raise InvalidRootError(path)
            path.mkdir(parents=True, exist_ok=True)

    def manifest_path(self, tag: ModelTag) -> Path:
        return self.manifests_dir / f"{quote(tag.display_name, safe='')}.json"

    def blob_path(self, digest: BlobDigest) -> Path:
        return self.blobs.blob_path(digest)

    def put(self, manifest: ModelManifest) -> None:
        self._ensure_layout()
        data = json.dumps(manifest.to_dict(), indent=2, sort_keys=True).encode()
        atomic_write(self.manifest_path(manifest.tag), data)

    def _read_manifest(self, path: Path) -> ModelManifest:
        try:
            with open(path, "rb") as f:
                return ModelManifest.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise ManifestDecodeError(path, str(e)) from e

    def manifest(self, tag: ModelTag) -> Optional[ModelManifest]:
        path = self.manifest_path(tag)
        if not path.exists():
            return None
        return self._read_manifest(path)

    def remove(self, tag: ModelTag, delete_blobs: bool = False) -> None:
        manifest = self.manifest(tag)
        if manifest is None:
            raise TagNotFoundError(tag)
        self.manifest_path(tag).unlink()

        if delete_blobs:
            blob = self.blob_path(manifest.digest)
            try:
                blob.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logging.warning(f"Could not delete blob {blob}: {e}")

    def list(self) -> List[ModelManifest]:
        self._ensure_layout()
        manifests = []
        for path in sorted(self.manifests_dir.glob("*.json")):
            try:
                manifests.append(self._read_manifest(path))
            except ManifestDecodeError as e:
                logging.debug(f"Skipping unreadable manifest: {e}")
        return sorted(manifests, key=lambda m: m.tag.display_name)

    def import_blob(self, source: PathLike) -> BlobDigest:
        return self.blobs.store_blob(source)

    def verify(self, manifest: ModelManifest) -> bool:
        for digest in manifest.all_digests():
            self.blobs.verify_blob(digest)
        return True
