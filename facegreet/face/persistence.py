"""Two-part on-disk format for a `SignatureStore`.

A base path `P` names two artifacts that are always written and read together:

* `P.names`    UTF-8 text, one name per line. Backslash, newline and carriage
               return inside a name are escaped as `\\\\`, `\\n`, `\\r`, so a
               line break always means "next record".
* `P.features` NumPy `.npz` container (no pickles) holding `schema_version`,
               a `(count, D)` float32 `features` matrix and `names_sha256`,
               the digest of the names artifact it was written with.

Line `i` of the names artifact belongs to row `i` of the features matrix. The
digest ties the pair together: a features artifact sitting next to a names
artifact from another save is rejected as `Inconsistent`, even when both hold
the same number of records. "v1" containers (no digest) are still read.
"""
from __future__ import annotations

import contextlib
import hashlib
import os
import shutil
import tempfile

from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from facegreet.errors import CorruptFormat, EmptyStore, Inconsistent, InvalidInput, NotFound
from facegreet.face.store import IdentityRecord, SignatureStore, make_record
from facegreet.utils.log import get_logger

logger = get_logger(__name__)

NAMES_SUFFIX = ".names"
FEATURES_SUFFIX = ".features"
SCHEMA_VERSION = "v2"
# Readable versions; "v1" predates the names digest.
SUPPORTED_VERSIONS = ("v1", "v2")

_ESCAPES = {"\\": "\\", "n": "\n", "r": "\r"}


def artifact_paths(base) -> Tuple[Path, Path]:
    """Return `(names_path, features_path)` for a base path."""
    base = Path(base)
    return base.with_name(base.name + NAMES_SUFFIX), base.with_name(base.name + FEATURES_SUFFIX)


def names_digest(blob: bytes) -> str:
    return hashlib.sha256(blob).hexdigest()


def escape_name(name: str) -> str:
    return name.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r")


def unescape_name(line: str) -> str:
    if "\\" not in line:
        return line
    out = []
    i = 0
    while i < len(line):
        ch = line[i]
        if ch != "\\":
            out.append(ch)
            i += 1
            continue
        if i + 1 >= len(line) or line[i + 1] not in _ESCAPES:
            raise CorruptFormat(f"malformed escape in name line {line!r}")
        out.append(_ESCAPES[line[i + 1]])
        i += 2
    return "".join(out)


def encode_names(names: Sequence[str]) -> bytes:
    return "".join(escape_name(n) + "\n" for n in names).encode("utf-8")


def decode_names(data: bytes) -> List[str]:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CorruptFormat(f"names artifact is not valid UTF-8: {e}") from e
    if not text:
        return []
    lines = text.split("\n")
    # Terminated output ends with an empty tail; unterminated (older) output does not.
    if lines[-1] == "":
        lines.pop()
    # A raw CR is never written (it is escaped); a trailing one is a CRLF line ending.
    return [unescape_name(line[:-1] if line.endswith("\r") else line) for line in lines]


def _read_features(fp: Path) -> Tuple[np.ndarray, Optional[str]]:
    """Return the features matrix and the names digest it was saved with (None for v1)."""
    try:
        with open(fp, "rb") as f:
            data = np.load(f, allow_pickle=False)
            if not hasattr(data, "files"):
                raise CorruptFormat(f"{fp} is not a features container")
            with data:
                if "schema_version" not in data.files or "features" not in data.files:
                    raise CorruptFormat(f"{fp} lacks schema_version/features entries")
                version = str(data["schema_version"])
                if version not in SUPPORTED_VERSIONS:
                    raise CorruptFormat(f"{fp}: unsupported schema version {version!r}")
                digest = None
                if version != "v1":
                    if "names_sha256" not in data.files:
                        raise CorruptFormat(f"{fp} lacks the names_sha256 entry")
                    digest = str(data["names_sha256"])
                features = np.array(data["features"])
    except CorruptFormat:
        raise
    except OSError as e:
        raise CorruptFormat(f"cannot read {fp}: {e}") from e
    except Exception as e:
        # np.load raises ValueError/EOFError/BadZipFile/... for foreign or truncated files.
        raise CorruptFormat(f"cannot decode {fp}: {e}") from e

    if features.ndim != 2 or not np.issubdtype(features.dtype, np.floating):
        raise CorruptFormat(f"{fp}: expected a 2-D float matrix, got {features.dtype} {features.shape}")
    if not np.all(np.isfinite(features)):
        raise CorruptFormat(f"{fp}: features contain non-finite values")
    return features.astype(np.float32, copy=False), digest


def read(path) -> List[IdentityRecord]:
    """Decode and validate both artifacts without touching any store."""
    names_fp, features_fp = artifact_paths(path)
    missing = [str(p) for p in (names_fp, features_fp) if not p.is_file()]
    if missing:
        raise NotFound(f"database artifacts not found: {', '.join(missing)}")

    try:
        names_blob = names_fp.read_bytes()
    except OSError as e:
        raise CorruptFormat(f"cannot read {names_fp}: {e}") from e
    names = decode_names(names_blob)
    features, digest = _read_features(features_fp)

    if len(names) != int(features.shape[0]):
        raise Inconsistent(names=len(names), signatures=int(features.shape[0]))
    if digest is not None and digest != names_digest(names_blob):
        raise Inconsistent(
            names=len(names),
            signatures=int(features.shape[0]),
            detail=f"{names_fp} was not written together with {features_fp}",
        )
    if not names:
        raise CorruptFormat(f"database {path} holds no records")
    if int(features.shape[1]) == 0:
        raise CorruptFormat(f"database {path} holds zero-length signatures")

    try:
        return [make_record(name, row) for name, row in zip(names, features)]
    except InvalidInput as e:
        raise CorruptFormat(f"database {path}: {e}") from e


def load(path, store: Optional[SignatureStore] = None) -> SignatureStore:
    """Replace the content of `store` (a new store if None) with the database at `path`.

    All validation happens before the store is cleared: on any error the store is
    left exactly as it was.
    """
    records = read(path)
    if store is None:
        store = SignatureStore()
    count = store.replace(records)
    logger.info(f"Loaded {count} identity records from {path}")
    return store


def _stage(directory: Path, target: Path, writer: Callable) -> str:
    fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(directory))
    try:
        with os.fdopen(fd, "wb") as f:
            writer(f)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise
    return tmp


def save(store: SignatureStore, path) -> int:
    """Write `store` to `path`; returns the number of records written.

    An empty store is never written (it would silently overwrite a populated
    database). Both artifacts are staged in temporary files next to their
    destination and renamed into place only once fully written, features
    first. If the names rename fails, the previous features artifact is put
    back; a crash between the two renames leaves a pair whose digest does not
    match, which `load` rejects.
    """
    records, matrix = store.snapshot()
    if not records:
        raise EmptyStore("refusing to save an empty signature store")

    names_fp, features_fp = artifact_paths(path)
    names_fp.parent.mkdir(parents=True, exist_ok=True)

    names_blob = encode_names([r.name for r in records])
    features = np.ascontiguousarray(matrix, dtype=np.float32)

    staged: List[str] = []
    backup: Optional[str] = None
    features_swapped = False
    try:
        staged.append(
            _stage(
                features_fp.parent,
                features_fp,
                lambda f: np.savez(
                    f,
                    schema_version=np.array(SCHEMA_VERSION),
                    names_sha256=np.array(names_digest(names_blob)),
                    features=features,
                ),
            )
        )
        staged.append(_stage(names_fp.parent, names_fp, lambda f: f.write(names_blob)))
        if features_fp.exists():
            with open(features_fp, "rb") as src:
                backup = _stage(features_fp.parent, features_fp, lambda f: shutil.copyfileobj(src, f))
        os.replace(staged[0], features_fp)
        features_swapped = True
        os.replace(staged[1], names_fp)
    except BaseException:
        if features_swapped:
            if backup is not None:
                with contextlib.suppress(OSError):
                    os.replace(backup, features_fp)
                    backup = None
            else:
                # No features artifact existed before this save.
                with contextlib.suppress(OSError):
                    os.unlink(features_fp)
        for tmp in staged:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
        raise
    finally:
        if backup is not None:
            with contextlib.suppress(OSError):
                os.unlink(backup)

    logger.info(f"Saved {len(records)} identity records to {names_fp} / {features_fp}")
    return len(records)
