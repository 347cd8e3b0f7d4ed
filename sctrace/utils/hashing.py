"""Content hashing and seed derivation.

Artifacts and configurations are hashed into stable hex digests so a
stage result can be cached under ``(stage, upstream hash, config hash)``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, is_dataclass
from typing import Any, Iterable

import numpy as np
import pandas as pd
from scipy import sparse


def _update_with(digest: "hashlib._Hash", value: Any) -> None:
    """Feed one value into an md5 digest."""
    if value is None:
        digest.update(b"<none>")
    elif sparse.issparse(value):
        csr = sparse.csr_matrix(value)
        digest.update(str(csr.shape).encode())
        digest.update(np.ascontiguousarray(csr.indptr).tobytes())
        digest.update(np.ascontiguousarray(csr.indices).tobytes())
        digest.update(np.ascontiguousarray(csr.data).tobytes())
    elif isinstance(value, np.ndarray):
        digest.update(str(value.shape).encode())
        digest.update(str(value.dtype).encode())
        if value.dtype == object:
            digest.update("\x1f".join(map(str, value.ravel())).encode())
        else:
            digest.update(np.ascontiguousarray(value).tobytes())
    elif isinstance(value, pd.DataFrame):
        digest.update("\x1f".join(map(str, value.columns)).encode())
        digest.update("\x1f".join(map(str, value.index)).encode())
        digest.update(
            pd.util.hash_pandas_object(value.astype(str), index=False).to_numpy().tobytes()
        )
    elif isinstance(value, (pd.Index, pd.Series, list, tuple)):
        digest.update("\x1f".join(map(str, value)).encode())
    else:
        digest.update(str(value).encode())


def hash_arrays(*parts: Any) -> str:
    """Compute an md5 digest over arrays, sparse matrices, frames and labels.

    Parameters
    ----------
    *parts
        Values to hash, in order

    Returns
    -------
    str
        Hex digest
    """
    digest = hashlib.md5()
    for part in parts:
        digest.update(b"|")
        _update_with(digest, part)
    return digest.hexdigest()


def _jsonable(obj: Any) -> Any:
    if is_dataclass(obj) and not isinstance(obj, type):
        return _jsonable(asdict(obj))
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        items = [_jsonable(v) for v in obj]
        return sorted(items, key=str) if isinstance(obj, (set, frozenset)) else items
    if isinstance(obj, (np.integer, np.floating)):
        return obj.item()
    return obj


def stable_hash(obj: Any) -> str:
    """Hash a configuration object through its sorted JSON representation.

    Two semantically identical configurations produce the same digest
    regardless of key order.
    """
    text = json.dumps(_jsonable(obj), sort_keys=True, default=str)
    return hashlib.md5(text.encode()).hexdigest()


def chain_version(stage: str, *upstream: Iterable[str] | str) -> str:
    """Build a version tag from a stage name and upstream digests."""
    tokens = [stage]
    for item in upstream:
        tokens.append(item if isinstance(item, str) else ",".join(item))
    return f"{stage}:{hashlib.md5('|'.join(tokens).encode()).hexdigest()[:12]}"


def derive_seed(seed: int, index: int) -> int:
    """Derive a deterministic sub-seed for a partition.

    The result is a pure function of ``(seed, index)``, so it does not
    depend on worker count or scheduling order.
    """
    state = np.random.SeedSequence([int(seed), int(index)]).generate_state(1)
    return int(state[0])
