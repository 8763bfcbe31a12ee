"""
Content-addressed storage for raw snapshot artifacts.

Fetched HTML, markdown, PDFs and screenshots are written once under
``<root>/<kind>/<sha256[:2]>/<sha256>`` and referenced from snapshots by
an opaque ``<kind>/<sha256>`` key. Writing the same bytes twice is a
no-op, so an artifact written by a job whose database transaction later
rolled back is harmless and will simply be reused.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Mapping

logger = logging.getLogger(__name__)

ARTIFACT_KINDS = {"html", "markdown", "pdf", "screenshot", "json"}


class ArtifactStore:
    """Filesystem-backed artifact store."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path_for(self, reference: str) -> Path:
        kind, _, digest = reference.partition("/")
        if kind not in ARTIFACT_KINDS or len(digest) != 64 or not all(c in "0123456789abcdef" for c in digest):
            raise ValueError(f"Invalid artifact reference: {reference!r}")
        return self.root / kind / digest[:2] / digest

    def put(self, kind: str, data: bytes) -> str:
        """Store ``data`` and return its reference."""
        if kind not in ARTIFACT_KINDS:
            raise ValueError(f"Unsupported artifact kind: {kind}")
        digest = hashlib.sha256(data).hexdigest()
        reference = f"{kind}/{digest}"
        target = self._path_for(reference)
        if target.exists():
            return reference
        target.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename keeps concurrent writers from exposing partial files.
        fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug("Stored artifact %s (%d bytes)", reference, len(data))
        return reference

    def put_all(self, artifacts: Mapping[str, bytes]) -> Dict[str, str]:
        return {kind: self.put(kind, data) for kind, data in sorted(artifacts.items())}

    def get(self, reference: str) -> bytes:
        path = self._path_for(reference)
        if not path.exists():
            raise FileNotFoundError(reference)
        return path.read_bytes()
