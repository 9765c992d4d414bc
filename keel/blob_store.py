from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Iterator

from keel.config import DEFAULT_CHUNK_SIZE
from keel.errors import DataIntegrityError


logger = logging.getLogger(__name__)

TMP_DIRNAME = "tmp"


def _is_hex_digest(value: str) -> bool:
    if len(value) != 64:
        return False
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


def _same_content(left: Path, right: Path, chunk_size: int) -> bool:
    if left.stat().st_size != right.stat().st_size:
        return False
    with left.open("rb") as lfh, right.open("rb") as rfh:
        while True:
            lchunk = lfh.read(chunk_size)
            rchunk = rfh.read(chunk_size)
            if lchunk != rchunk:
                return False
            if not lchunk:
                return True


def atomic_write_bytes(target: Path, data: bytes, *, mode: int | None = None) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class BlobStore:
    """Content-addressed store: every blob lives at ``objects/<aa>/<rest-of-digest>``."""

    def __init__(self, root: Path, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.root = root
        self.chunk_size = chunk_size

    def blob_path(self, sha256: str) -> Path:
        if not _is_hex_digest(sha256):
            raise DataIntegrityError(f"Invalid blob hash: {sha256!r}")
        digest = sha256.lower()
        return self.root / digest[:2] / digest[2:]

    def contains(self, sha256: str) -> bool:
        return self.blob_path(sha256).is_file()

    def _tmp_dir(self) -> Path:
        path = self.root / TMP_DIRNAME
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _commit(self, tmp_path: Path, sha256: str) -> None:
        target = self.blob_path(sha256)
        if target.exists():
            try:
                identical = _same_content(tmp_path, target, self.chunk_size)
            finally:
                tmp_path.unlink(missing_ok=True)
            if not identical:
                raise DataIntegrityError(
                    f"Blob {sha256} already exists with different content"
                )
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(tmp_path, target)
        logger.debug("Stored blob %s", sha256)

    def put_bytes(self, data: bytes) -> str:
        sha256 = hashlib.sha256(data).hexdigest()
        fd, tmp_name = tempfile.mkstemp(dir=self._tmp_dir(), suffix=".blob")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            self._commit(tmp_path, sha256)
        finally:
            tmp_path.unlink(missing_ok=True)
        return sha256

    def put_file(
        self,
        path: Path,
        on_chunk: Callable[[int], None] | None = None,
    ) -> str:
        """Hash and copy ``path`` into the store in one pass, returning its digest."""
        digest = hashlib.sha256()
        fd, tmp_name = tempfile.mkstemp(dir=self._tmp_dir(), suffix=".blob")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as out, path.open("rb") as src:
                while True:
                    chunk = src.read(self.chunk_size)
                    if not chunk:
                        break
                    digest.update(chunk)
                    out.write(chunk)
                    if on_chunk is not None:
                        on_chunk(len(chunk))
                out.flush()
                os.fsync(out.fileno())
            sha256 = digest.hexdigest()
            self._commit(tmp_path, sha256)
        finally:
            tmp_path.unlink(missing_ok=True)
        return sha256

    def iter_chunks(self, sha256: str) -> Iterator[bytes]:
        path = self.blob_path(sha256)
        try:
            fh = path.open("rb")
        except FileNotFoundError as exc:
            raise DataIntegrityError(f"Blob {sha256} is missing") from exc
        digest = hashlib.sha256()
        with fh:
            while True:
                chunk = fh.read(self.chunk_size)
                if not chunk:
                    break
                digest.update(chunk)
                yield chunk
        if digest.hexdigest() != sha256.lower():
            raise DataIntegrityError(f"Blob {sha256} is corrupted")

    def get(self, sha256: str) -> bytes:
        return b"".join(self.iter_chunks(sha256))

    def write_to(self, sha256: str, target: Path, *, mode: int | None = None) -> None:
        """Stream a verified blob to ``target``; the target is replaced atomically."""
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as fh:
                for chunk in self.iter_chunks(sha256):
                    fh.write(chunk)
                fh.flush()
                os.fsync(fh.fileno())
            if mode is not None:
                os.chmod(tmp_path, mode)
            os.replace(tmp_path, target)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def iter_hashes(self) -> Iterator[str]:
        if not self.root.exists():
            return
        for prefix_dir in sorted(self.root.iterdir()):
            if not prefix_dir.is_dir() or len(prefix_dir.name) != 2:
                continue
            for blob in sorted(prefix_dir.iterdir()):
                sha256 = f"{prefix_dir.name}{blob.name}"
                if blob.is_file() and _is_hex_digest(sha256):
                    yield sha256

    def delete(self, sha256: str) -> bool:
        path = self.blob_path(sha256)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        try:
            path.parent.rmdir()
        except OSError:
            pass
        return True
