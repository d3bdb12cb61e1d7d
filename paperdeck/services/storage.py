"""
Artifact Store

Per-job directory layout under the storage root. Every stage reads and
writes named files here; whether those files exist (and parse) is what the
pipeline uses to decide if a stage can be skipped on resume.

Layout:
    <root>/uploads/<job_id>/paper.pdf
    <root>/outputs/<job_id>/doc.md, slides.json, rendered-slides/, deck/, ...
    <root>/jobs/<job_id>/job.json
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ArtifactStore:
    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def uploads_dir(self, job_id: str) -> Path:
        return self.root / "uploads" / job_id

    def outputs_dir(self, job_id: str) -> Path:
        return self.root / "outputs" / job_id

    def jobs_dir(self) -> Path:
        return self.root / "jobs"

    def to_relative(self, path: Path) -> str:
        """Return a path relative to the storage root, as stored in job records."""
        return Path(path).resolve().relative_to(self.root).as_posix()

    def resolve(self, relative: str) -> Path:
        """Map a stored relative path back to an absolute path."""
        path = Path(relative)
        if path.is_absolute():
            return path
        return self.root / path

    def write_bytes(self, path: Path, data: bytes) -> Path:
        """
        Write a file atomically.

        The content goes to a temp file in the same directory first and is
        then renamed into place, so a crash never leaves a half-written file
        under the final name.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return path

    def write_text(self, path: Path, text: str) -> Path:
        return self.write_bytes(path, text.encode("utf-8"))

    def write_json(self, path: Path, data: Any) -> Path:
        if isinstance(data, BaseModel):
            payload = data.model_dump_json(indent=2, by_alias=True)
        else:
            payload = json.dumps(data, indent=2, ensure_ascii=False)
        return self.write_text(path, payload)

    def read_json(self, path: Path) -> Optional[Any]:
        """Read a JSON file, returning None when it is missing or unparseable."""
        path = Path(path)
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable artifact {path.name}: {e}")
            return None

    def read_model(self, path: Path, model: Type[ModelT]) -> Optional[ModelT]:
        """Read and validate a JSON artifact; None if missing or malformed."""
        data = self.read_json(path)
        if data is None:
            return None
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed artifact {Path(path).name}: {e.error_count()} error(s)")
            return None
