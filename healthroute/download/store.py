"""
healthroute/download/store.py — Verified on-disk layout for model artifacts.

Layout::

    <root>/<name>/<version>/<file>          artifact files
    <root>/<name>/<version>/<file>.part     in-flight transfers
    <root>/<name>/<version>/.verified.json  digest map, written last

Downloads never resume: a failed or cancelled transfer removes the whole
version directory. An artifact counts as installed only when every declared file is present
with its declared size and the verified marker lists exactly the declared
digests. The marker is written after SHA-256 verification, so a crash at any
point before that leaves the artifact "not installed".
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from pathlib import Path

from healthroute.core.constants import C
from healthroute.core.errors import IntegrityMismatchError, StorageFailureError
from healthroute.download.manifest import ArtifactFile, ModelArtifact

logger = logging.getLogger(__name__)

_HASH_CHUNK = 1024 * 1024


def sha256_file(path: Path) -> str:
    """Hex SHA-256 of the file at *path* (blocking; run in a thread)."""
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ArtifactStore:
    """
    Filesystem store rooted at *root*.

    Args:
        root: Base directory; created on first write.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, artifact: ModelArtifact) -> Path:
        """Directory holding *artifact*'s files."""
        return self._root / artifact.name / artifact.version

    def file_path(self, artifact: ModelArtifact, artifact_file: ArtifactFile) -> Path:
        return self.path_for(artifact) / artifact_file.name

    def part_path(self, artifact: ModelArtifact, artifact_file: ArtifactFile) -> Path:
        return self.path_for(artifact) / (artifact_file.name + C.PART_SUFFIX)

    def marker_path(self, artifact: ModelArtifact) -> Path:
        return self.path_for(artifact) / C.VERIFIED_MARKER

    def is_installed(self, artifact: ModelArtifact) -> bool:
        """True iff all files exist with declared sizes and the marker matches."""
        marker = self.marker_path(artifact)
        try:
            recorded = json.loads(marker.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return False
        if not isinstance(recorded, dict):
            return False
        expected = {f.name: f.sha256 for f in artifact.files}
        if recorded.get("files") != expected:
            logger.info("Verified marker for %s %s does not match manifest", artifact.name, artifact.version)
            return False
        for f in artifact.files:
            path = self.file_path(artifact, f)
            try:
                if path.stat().st_size != f.size:
                    return False
            except OSError:
                return False
        return True

    def prepare(self, artifact: ModelArtifact) -> Path:
        """
        Create the artifact directory, dropping any stale verified marker.

        Raises:
            StorageFailureError: If the directory cannot be created.
        """
        directory = self.path_for(artifact)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            self.marker_path(artifact).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageFailureError(f"Cannot prepare {directory}", cause=exc) from exc
        return directory

    def verify_file(self, artifact: ModelArtifact, artifact_file: ArtifactFile) -> None:
        """
        Check size, then SHA-256, of one installed file.

        Raises:
            IntegrityMismatchError: On size or digest mismatch.
            StorageFailureError: If the file cannot be read.
        """
        path = self.file_path(artifact, artifact_file)
        try:
            size = path.stat().st_size
            if size != artifact_file.size:
                raise IntegrityMismatchError(artifact_file.name, f"{artifact_file.size} bytes", f"{size} bytes")
            actual = sha256_file(path)
        except OSError as exc:
            raise StorageFailureError(f"Cannot read {path}", cause=exc) from exc
        if actual != artifact_file.sha256:
            raise IntegrityMismatchError(artifact_file.name, artifact_file.sha256, actual)

    def write_marker(self, artifact: ModelArtifact) -> None:
        """
        Record the verified digests for *artifact*.

        Raises:
            StorageFailureError: If the marker cannot be written.
        """
        marker = self.marker_path(artifact)
        payload = {
            "name": artifact.name,
            "version": artifact.version,
            "files": {f.name: f.sha256 for f in artifact.files},
        }
        tmp = marker.with_name(marker.name + C.PART_SUFFIX)
        try:
            tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
            tmp.replace(marker)
        except OSError as exc:
            raise StorageFailureError(f"Cannot write {marker}", cause=exc) from exc

    def remove(self, artifact: ModelArtifact) -> None:
        """Delete the whole version directory (no-op if absent)."""
        directory = self.path_for(artifact)
        if directory.exists():
            shutil.rmtree(directory, ignore_errors=True)
            logger.info("Removed artifact directory %s", directory)

    def installed_versions(self, name: str) -> list[str]:
        """Version directories present for *name* (installed or not), sorted."""
        base = self._root / name
        if not base.is_dir():
            return []
        return sorted(p.name for p in base.iterdir() if p.is_dir())
