"""Artifact naming and filesystem persistence of fetched payloads."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from genbatch.config import DEFAULT_NAMING_TEMPLATE
from genbatch.models import Payload, StoreResult

logger = logging.getLogger(__name__)

_UNKNOWN_PLACEHOLDER_RE = re.compile(r"\{[^}]+\}")
_IMAGE_SUFFIX_RE = re.compile(r"\.(png|jpg|jpeg|webp|gif)$", re.IGNORECASE)
_UNSAFE_CHARS_RE = re.compile(r"[\\/:*?\"<>|\x00-\x1f]")
_MAX_UNIQUIFY_ATTEMPTS = 10_000


def render_artifact_name(
    job_index: int,
    *,
    template: str = DEFAULT_NAMING_TEMPLATE,
    prefix: str = "batch",
) -> str:
    """Render a file name for a job from the naming template.

    ``{prefix}`` and ``{n}`` (zero-padded to four digits) are substituted, other
    placeholders are removed and ``.png`` is appended when the result carries no
    image extension.
    """

    name = template.replace("{prefix}", prefix or "batch").replace("{n}", f"{job_index:04d}")
    name = _UNKNOWN_PLACEHOLDER_RE.sub("", name)
    name = _UNSAFE_CHARS_RE.sub("_", name).strip()
    if not _IMAGE_SUFFIX_RE.search(name):
        name += ".png"
    return name


class FileSystemArtifactSink:
    """Stores payloads as files under one output directory.

    Name collisions are resolved here by appending `` (1)``, `` (2)``... before
    the suffix. The sink does not deduplicate content.
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    def store(self, payload: Payload, name: str) -> StoreResult:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            target = self._write_unique(name, payload.data)
        except (OSError, ValueError) as error:
            logger.warning("Failed to store artifact %s: %s", name, error)
            return StoreResult(ok=False, error=str(error))
        logger.info("Stored artifact %s (%d bytes)", target.name, len(payload.data))
        return StoreResult(ok=True, artifact_id=str(target))

    def _write_unique(self, name: str, data: bytes) -> Path:
        candidate = Path(name)
        if candidate.name != name or name in {"", ".", ".."}:
            raise ValueError(f"Artifact name must be a plain file name: {name!r}")
        stem, suffix = candidate.stem, candidate.suffix
        for counter in range(_MAX_UNIQUIFY_ATTEMPTS):
            file_name = name if counter == 0 else f"{stem} ({counter}){suffix}"
            path = self.output_dir / file_name
            try:
                # Exclusive create makes the claim atomic against concurrent writers.
                handle = path.open("xb")
            except FileExistsError:
                continue
            try:
                with handle:
                    handle.write(data)
            except OSError:
                path.unlink(missing_ok=True)
                raise
            return path
        raise ValueError(f"Could not find a free name for {name!r} in {self.output_dir}")
