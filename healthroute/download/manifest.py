"""
healthroute/download/manifest.py — Model manifest parsing and artifact descriptors.

A manifest describes one published version of the on-device model: identity,
the files that make it up (with sizes and SHA-256 digests), device
requirements, the host-application version range it supports and where the
files can be fetched from. Manifests are JSON or YAML.

Parsing never crashes on unexpected input: unknown fields are ignored and
missing or malformed fields raise :class:`InvalidManifestError`.
"""

from __future__ import annotations

import json
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from huggingface_hub import hf_hub_url
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from healthroute.core.errors import InvalidManifestError

logger = logging.getLogger(__name__)

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
_VERSION_RE = re.compile(r"^\d+(\.\d+){0,2}([-+].*)?$")


def parse_version(text: str) -> tuple[int, int, int]:
    """
    Parse ``MAJOR[.MINOR[.PATCH]]`` (pre-release/build suffixes ignored).

    Raises:
        ValueError: If *text* is not a dotted numeric version.
    """
    if not _VERSION_RE.match(text.strip()):
        raise ValueError(f"not a semantic version: {text!r}")
    core = re.split(r"[-+]", text.strip(), maxsplit=1)[0]
    parts = [int(p) for p in core.split(".")]
    while len(parts) < 3:
        parts.append(0)
    return parts[0], parts[1], parts[2]


class FileRole(str, Enum):
    """What an artifact file is used for."""

    WEIGHTS = "weights"
    TOKENIZER = "tokenizer"
    CONFIG = "config"
    OTHER = "other"


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class ArtifactFile(_Section):
    """One file of a model artifact."""

    name: str
    role: FileRole = FileRole.OTHER
    size: int = Field(ge=0)
    sha256: str
    url: Optional[str] = None

    @field_validator("name")
    @classmethod
    def plain_file_name(cls, v: str) -> str:
        """Reject empty names and anything that could escape the artifact directory."""
        if not v or v in {".", ".."} or "/" in v or "\\" in v:
            raise ValueError(f"invalid artifact file name: {v!r}")
        return v

    @field_validator("sha256")
    @classmethod
    def hex_digest(cls, v: str) -> str:
        digest = v.strip().lower()
        if not _SHA256_RE.match(digest):
            raise ValueError("sha256 must be 64 hex characters")
        return digest


class ModelInfo(_Section):
    name: str = Field(min_length=1)
    version: str
    provider: str = ""
    description: str = ""

    @field_validator("version")
    @classmethod
    def semantic_version(cls, v: str) -> str:
        parse_version(v)
        return v


class Requirements(_Section):
    min_os_version: Optional[str] = None
    min_memory_mb: int = Field(default=0, ge=0)
    min_storage_mb: int = Field(default=0, ge=0)


class Compatibility(_Section):
    min_app_version: Optional[str] = None
    max_app_version: Optional[str] = None

    @field_validator("min_app_version", "max_app_version")
    @classmethod
    def optional_version(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_version(v)
        return v


class TechnicalSpecs(_Section):
    architecture: str = ""
    quantization: str = ""
    context_length: Optional[int] = Field(default=None, gt=0)
    max_tokens: Optional[int] = Field(default=None, gt=0)


class Source(_Section):
    """Where file URLs come from: a plain base URL or a Hugging Face Hub repo."""

    base_url: Optional[str] = None
    repo_id: Optional[str] = None
    revision: Optional[str] = None


class ModelArtifact(_Section):
    """
    Immutable descriptor of one published model version.

    ``total_bytes`` is the sum of the declared file sizes.
    """

    model: ModelInfo
    files: tuple[ArtifactFile, ...]
    requirements: Requirements = Requirements()
    compatibility: Compatibility = Compatibility()
    technical: TechnicalSpecs = TechnicalSpecs()
    source: Source = Source()

    @model_validator(mode="after")
    def non_empty_unique_files(self) -> "ModelArtifact":
        if not self.files:
            raise ValueError("manifest declares no files")
        names = [f.name for f in self.files]
        if len(set(names)) != len(names):
            raise ValueError("manifest declares duplicate file names")
        return self

    @property
    def name(self) -> str:
        return self.model.name

    @property
    def version(self) -> str:
        return self.model.version

    @property
    def total_bytes(self) -> int:
        return sum(f.size for f in self.files)

    @property
    def total_mb(self) -> float:
        return self.total_bytes / (1024 * 1024)

    def file(self, name: str) -> ArtifactFile:
        """Return the file called *name* (``KeyError`` if not declared)."""
        for f in self.files:
            if f.name == name:
                return f
        raise KeyError(name)

    def file_url(self, artifact_file: ArtifactFile) -> str:
        """
        Resolve the download URL for *artifact_file*.

        Order: the file's own ``url``, ``source.base_url + name``, then the
        Hugging Face Hub resolve URL for ``source.repo_id``.

        Raises:
            InvalidManifestError: If no source is declared.
        """
        if artifact_file.url:
            return artifact_file.url
        if self.source.base_url:
            return self.source.base_url.rstrip("/") + "/" + artifact_file.name
        if self.source.repo_id:
            return hf_hub_url(
                repo_id=self.source.repo_id,
                filename=artifact_file.name,
                revision=self.source.revision,
            )
        raise InvalidManifestError(f"No download source for file {artifact_file.name!r}")

    def check_compatibility(
        self,
        app_version: Optional[str] = None,
        total_memory_mb: Optional[float] = None,
    ) -> None:
        """
        Verify the artifact may be used by this host.

        Raises:
            InvalidManifestError: If *app_version* is outside the declared
                range or the device has less memory than ``min_memory_mb``.
        """
        if app_version is not None:
            try:
                current = parse_version(app_version)
            except ValueError as exc:
                raise InvalidManifestError("Host application version is malformed", cause=exc) from exc
            low = self.compatibility.min_app_version
            high = self.compatibility.max_app_version
            if low is not None and current < parse_version(low):
                raise InvalidManifestError(
                    f"{self.name} {self.version} requires app >= {low}, running {app_version}"
                )
            if high is not None and current > parse_version(high):
                raise InvalidManifestError(
                    f"{self.name} {self.version} supports app <= {high}, running {app_version}"
                )
        if total_memory_mb is not None and total_memory_mb < self.requirements.min_memory_mb:
            raise InvalidManifestError(
                f"{self.name} {self.version} needs {self.requirements.min_memory_mb}MB device "
                f"memory, device has {total_memory_mb:.0f}MB"
            )


def parse_manifest(data: Union[str, bytes, dict]) -> ModelArtifact:
    """
    Parse a manifest from JSON/YAML text or an already-decoded mapping.

    Raises:
        InvalidManifestError: On any syntax, type or missing-field problem.
    """
    raw: Any = data
    if isinstance(data, bytes):
        try:
            raw = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidManifestError("Manifest is not UTF-8", cause=exc) from exc
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            try:
                raw = yaml.safe_load(raw)
            except yaml.YAMLError as exc:
                raise InvalidManifestError("Manifest is neither JSON nor YAML", cause=exc) from exc
    if not isinstance(raw, dict):
        raise InvalidManifestError(f"Manifest must be a mapping, got {type(raw).__name__}")
    try:
        artifact = ModelArtifact.model_validate(raw)
    except ValidationError as exc:
        raise InvalidManifestError("Manifest failed validation", cause=exc) from exc
    logger.info(
        "Manifest parsed: %s %s (%d files, %.1f MB)",
        artifact.name,
        artifact.version,
        len(artifact.files),
        artifact.total_mb,
    )
    return artifact


def load_manifest(path: Path | str) -> ModelArtifact:
    """
    Read and parse a manifest file.

    Raises:
        InvalidManifestError: If the file is missing, unreadable or invalid.
    """
    manifest_path = Path(path)
    try:
        text = manifest_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidManifestError(f"Cannot read manifest {manifest_path}", cause=exc) from exc
    return parse_manifest(text)
