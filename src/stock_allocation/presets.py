from __future__ import annotations

import json
import re
from dataclasses import replace
from pathlib import Path
from typing import List

from .contracts import AllocationPolicy
from .errors import PresetNotFoundError, envelope
from .logging_utils import get_logger
from .validator import ConfigValidator

PRESET_DIR = Path(__file__).resolve().parent / "presets"
_NAME_RE = re.compile(r"^[a-z0-9_-]+$", re.IGNORECASE)

logger = get_logger(__name__)


class PresetCatalog:
    """Read-only named policies stored as JSON files."""

    def __init__(self, directory: Path | None = None, *, validator: ConfigValidator | None = None) -> None:
        self._directory = Path(directory) if directory is not None else PRESET_DIR
        self._validator = validator or ConfigValidator()

    def names(self) -> List[str]:
        if not self._directory.is_dir():
            return []
        return sorted(path.stem for path in self._directory.glob("*.json") if _NAME_RE.match(path.stem))

    def load(self, name: str) -> AllocationPolicy:
        """Return the validated preset; it is never persisted by this call."""

        if not _NAME_RE.match(name or ""):
            raise PresetNotFoundError(envelope("PRESET_NOT_FOUND", details={"preset": name}))
        path = self._directory / f"{name}.json"
        if not path.is_file():
            logger.warning("preset missing", extra={"ctx_preset": name})
            raise PresetNotFoundError(envelope("PRESET_NOT_FOUND", details={"preset": name}))
        payload = json.loads(path.read_text("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"preset {name!r} must contain a JSON object")
        policy = self._validator.validate_or_raise(payload)
        logger.info("preset loaded", extra={"ctx_preset": name})
        return replace(policy, is_preset=True)


__all__ = ["PRESET_DIR", "PresetCatalog"]
