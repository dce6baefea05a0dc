# src/storage/layout.py - v1
"""Object key conventions for sources, staging areas and archives.

Layout under ``{root}/{container}/``:
    originals/{key}                     original images (flat)
    final/{order}/{key}                 final images of one order
    tmp/{order}/{run_id}/chunk-{i}/...  staging area of one chunked run
    zips/{order}.zip                    original-images archive
    orders/{order}/final-zip/gallery-{container}-order-{order}-final.zip
"""

from __future__ import annotations

import re

from chunkzip.core.models import RUN_ID_PATTERN, OrderKey

DEFAULT_ROOT = "galleries"
STAGING_DIR = "tmp"
ARCHIVE_SUFFIX = ".zip"

# Derivative renditions never belong in an archive.
DERIVATIVE_MARKERS = ("/previews/", "/thumbs/", "/bigthumbs/")

_CHUNK_DIR_RE = re.compile(r"^chunk-(\d+)/")


def _root(root: str) -> str:
    return root.strip("/")


def container_prefix(container_id: str, root: str = DEFAULT_ROOT) -> str:
    return f"{_root(root)}/{container_id}/"


def source_prefix(key: OrderKey, root: str = DEFAULT_ROOT) -> str:
    """Prefix under which the source objects of an order live."""
    base = container_prefix(key.container_id, root)
    if key.archive_kind == "final":
        return f"{base}final/{key.order_id}/"
    return f"{base}originals/"


def source_key(key: OrderKey, name: str, root: str = DEFAULT_ROOT) -> str:
    """Full source key for a request key (names may already be full keys)."""
    prefix = source_prefix(key, root)
    if name.startswith(prefix):
        return name
    return prefix + name.lstrip("/")


def staging_prefix(key: OrderKey, run_id: str, root: str = DEFAULT_ROOT) -> str:
    """Staging area of one run. Rejects run ids that could escape the prefix."""
    if not RUN_ID_PATTERN.match(run_id):
        raise ValueError(f"invalid run id: {run_id!r}")
    base = container_prefix(key.container_id, root)
    return f"{base}{STAGING_DIR}/{key.order_id}/{run_id}/"


def chunk_staging_prefix(
    key: OrderKey, run_id: str, chunk_index: int, root: str = DEFAULT_ROOT
) -> str:
    return f"{staging_prefix(key, run_id, root)}chunk-{chunk_index}/"


def entry_name_from_staged(staging: str, staged_key: str) -> str:
    """Strip ``staging/chunk-N/`` from a staged key to get the archive entry name."""
    rel = staged_key[len(staging):] if staged_key.startswith(staging) else staged_key
    return _CHUNK_DIR_RE.sub("", rel, count=1)


def entry_name_from_source(key: OrderKey, src_key: str, root: str = DEFAULT_ROOT) -> str:
    prefix = source_prefix(key, root)
    return src_key[len(prefix):] if src_key.startswith(prefix) else src_key.rsplit("/", 1)[-1]


def archive_key(key: OrderKey, root: str = DEFAULT_ROOT) -> str:
    """Deterministic archive location for (container, order, kind)."""
    base = container_prefix(key.container_id, root)
    if key.archive_kind == "final":
        return (
            f"{base}orders/{key.order_id}/final-zip/"
            f"gallery-{key.container_id}-order-{key.order_id}-final{ARCHIVE_SUFFIX}"
        )
    return f"{base}zips/{key.order_id}{ARCHIVE_SUFFIX}"


def is_derivative_key(key: str) -> bool:
    path = key if key.startswith("/") else f"/{key}"
    return any(marker in path for marker in DERIVATIVE_MARKERS)


def is_staging_key(key: str) -> bool:
    return f"/{STAGING_DIR}/" in key


def state_field_prefix(key: OrderKey) -> str:
    """Metadata namespace per kind: ``zip`` or ``final_zip``."""
    return "final_zip" if key.archive_kind == "final" else "zip"
