# store.py
from __future__ import annotations

import io
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any, Iterable, Iterator, List

import joblib

from .errors import ContentMismatchError, NotFoundError
from .model import BuildIndex
from .settings import STORE_DIR

logger = logging.getLogger(__name__)

DEFAULT_STORE_DIR = STORE_DIR
INDEX_FILE = "index.json"
LOCK_STRIPES = 64


def serialize(value: Any) -> bytes:
    buf = io.BytesIO()
    joblib.dump(value, buf)
    return buf.getvalue()


def deserialize(data: bytes) -> Any:
    return joblib.load(io.BytesIO(data))


class Store:
    """
    Content-addressed blob store:
      root/
        objects/<fp[:2]>/<fp[2:]>   # serialized step outputs, immutable
        tmp/                        # in-progress writes
        index.json                  # name -> fingerprint -> build records

    Readers never lock. Writers to the same fingerprint are serialized; a
    second write must carry identical bytes.
    """

    def __init__(self, root: str | Path = DEFAULT_STORE_DIR):
        self.root = Path(root).resolve()
        self.objects_dir = self.root / "objects"
        self.tmp_dir = self.root / "tmp"
        self.index_path = self.root / INDEX_FILE
        self.objects_dir.mkdir(parents=True, exist_ok=True)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)

        # fixed set of lock stripes, keyed by fingerprint hash
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _lock_for(self, fingerprint: str) -> threading.Lock:
        return self._locks[hash(fingerprint) % len(self._locks)]

    def object_path(self, fingerprint: str) -> Path:
        if len(fingerprint) < 3 or not fingerprint.isalnum():
            raise ValueError(f"Invalid fingerprint: {fingerprint!r}")
        return self.objects_dir / fingerprint[:2] / fingerprint[2:]

    # ---- blobs ----

    def has(self, fingerprint: str) -> bool:
        return self.object_path(fingerprint).is_file()

    def size(self, fingerprint: str) -> int:
        try:
            return self.object_path(fingerprint).stat().st_size
        except FileNotFoundError:
            raise NotFoundError(fingerprint, reason="not in store") from None

    def get_bytes(self, fingerprint: str) -> bytes:
        try:
            return self.object_path(fingerprint).read_bytes()
        except FileNotFoundError:
            raise NotFoundError(fingerprint, reason="not in store") from None

    def get(self, fingerprint: str) -> Any:
        return deserialize(self.get_bytes(fingerprint))

    def put(self, fingerprint: str, value: Any) -> int:
        """Serialize and store `value`. Returns the stored size in bytes."""
        return self.put_bytes(fingerprint, serialize(value))

    def put_bytes(self, fingerprint: str, data: bytes) -> int:
        path = self.object_path(fingerprint)
        with self._lock_for(fingerprint):
            if path.exists():
                self._check_same(fingerprint, path, data)
                return len(data)

            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.tmp_dir, prefix=fingerprint[:12] + ".")
            tmp = Path(tmp_name)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                self._commit(fingerprint, tmp, path, data)
            finally:
                tmp.unlink(missing_ok=True)

        logger.debug("stored %s (%d bytes)", fingerprint[:12], len(data))
        return len(data)

    def _commit(self, fingerprint: str, tmp: Path, path: Path, data: bytes) -> None:
        # Link instead of rename so a concurrent process never gets overwritten.
        try:
            os.link(tmp, path)
        except FileExistsError:
            self._check_same(fingerprint, path, data)
        except OSError:
            # filesystem without hard links
            if path.exists():
                self._check_same(fingerprint, path, data)
            else:
                os.replace(tmp, path)

    def _check_same(self, fingerprint: str, path: Path, data: bytes) -> None:
        existing = path.read_bytes()
        if existing != data:
            raise ContentMismatchError(
                fingerprint=fingerprint,
                existing_size=len(existing),
                new_size=len(data),
            )

    def fingerprints(self) -> Iterator[str]:
        for sub in sorted(self.objects_dir.iterdir()):
            if not sub.is_dir():
                continue
            for f in sorted(sub.iterdir()):
                if f.is_file():
                    yield sub.name + f.name

    def prune(self, keep: Iterable[str]) -> List[str]:
        """Delete every blob whose fingerprint is not in `keep`. Returns removed fingerprints."""
        keep_set = set(keep)
        removed: List[str] = []
        for fp in list(self.fingerprints()):
            if fp in keep_set:
                continue
            self.object_path(fp).unlink(missing_ok=True)
            removed.append(fp)
        for sub in self.objects_dir.iterdir():
            if sub.is_dir() and not any(sub.iterdir()):
                sub.rmdir()
        return removed

    def clear_tmp(self) -> int:
        """Remove temp files left behind by interrupted writes."""
        count = 0
        for p in self.tmp_dir.iterdir():
            if p.is_file():
                p.unlink(missing_ok=True)
                count += 1
        return count

    def destroy(self) -> None:
        """Remove the whole store directory."""
        if self.root.exists():
            shutil.rmtree(self.root)

    # ---- metadata index ----

    def load_index(self) -> BuildIndex:
        if not self.index_path.exists():
            return BuildIndex()
        return BuildIndex.model_validate_json(self.index_path.read_text(encoding="utf-8"))

    def save_index(self, index: BuildIndex) -> None:
        tmp = self.index_path.with_suffix(f".json.tmp-{os.getpid()}-{threading.get_ident()}")
        try:
            tmp.write_text(index.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, self.index_path)
        finally:
            tmp.unlink(missing_ok=True)
