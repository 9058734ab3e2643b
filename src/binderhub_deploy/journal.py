"""Append-only stage journal.

Each entry is a JSON line recording one stage outcome of a deployment
run, so an operator can see which cloud resources a failed or cancelled
run had already created.
"""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any

from binderhub_deploy.models import StageRecord


class JournalError(Exception):
    """Raised when the journal file cannot be read."""


class StageJournal:
    """JSON-lines journal of stage outcomes.

    Each record opens the file in append mode, so entries written before a
    crash are kept.
    """

    def __init__(self, path: str | Path, run_id: str | None = None) -> None:
        self._path = Path(path)
        self.run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"

    @property
    def path(self) -> Path:
        return self._path

    def record(self, hub_name: str, stage: StageRecord) -> None:
        """Append one stage outcome."""
        entry = {
            "run_id": self.run_id,
            "hub_name": hub_name,
            **stage.model_dump(mode="json"),
        }
        line = json.dumps(entry, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def read_entries(self, run_id: str | None = None) -> list[dict[str, Any]]:
        """Read all entries, optionally only those of one run."""
        if not self._path.exists():
            return []
        entries: list[dict[str, Any]] = []
        with self._path.open("r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    entry = json.loads(stripped)
                except json.JSONDecodeError as exc:
                    raise JournalError(
                        f"Corrupt journal — line {lineno} is not valid JSON: {self._path}"
                    ) from exc
                if run_id is None or entry.get("run_id") == run_id:
                    entries.append(entry)
        return entries
