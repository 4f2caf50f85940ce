from __future__ import annotations

from pathlib import Path
from typing import Optional

from tablecode.logging import get_logger

logger = get_logger(__name__)


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate != base_resolved and base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


class LocalAssetStorage:
    """Menu item images stored under ``<shared_fs_root>/assets``.

    References are either the public URL handed to clients or the object key
    relative to the asset root. Deleting an absent object counts as success,
    matching object-store semantics.
    """

    def __init__(self, root: str, *, public_url: Optional[str] = None) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_url = public_url.rstrip("/") + "/" if public_url else None

    def key_for(self, ref: str) -> str:
        if self.public_url and ref.startswith(self.public_url):
            return ref[len(self.public_url):]
        if "://" in ref:
            raise PathTraversalError("reference is outside this asset store")
        return ref.lstrip("/")

    def path_for(self, ref: str) -> Path:
        return safe_join(self.root, self.key_for(ref))

    def delete_by_reference(self, ref: str) -> bool:
        path = self.path_for(ref)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug("asset_already_absent", ref=ref)
        return True
