"""
Per-grid state persistence: one JSON document per grid, written via a temp
file and an atomic rename so a crash never leaves a half-written snapshot.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from hlgrid.infra.logging_cfg import log_event

log = logging.getLogger("gridbot")

STATE_VERSION = 1


def _safe_name(grid_id: str) -> str:
    return grid_id.replace(":", "_").replace("/", "_")


class StateStore:
    def __init__(self, grid_id: str, state_dir: str) -> None:
        self.grid_id = grid_id
        self.path = Path(state_dir) / f"grid_{_safe_name(grid_id)}.json"
        self.tmp = self.path.with_suffix(".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            log_event(log, "state_load_error", level=logging.ERROR, grid_id=self.grid_id, error=str(exc))
            return {}
        if data.get("version", STATE_VERSION) != STATE_VERSION:
            log_event(
                log,
                "state_version_mismatch",
                level=logging.WARNING,
                grid_id=self.grid_id,
                found=data.get("version"),
            )
            return {}
        return data

    def save(self, data: Dict[str, Any]) -> None:
        payload = {"version": STATE_VERSION, **data}
        try:
            self.tmp.write_text(json.dumps(payload, indent=2, default=str))
            self.tmp.replace(self.path)
        except OSError as exc:
            log_event(log, "state_save_error", level=logging.ERROR, grid_id=self.grid_id, error=str(exc))

    def delete(self) -> None:
        for p in (self.path, self.tmp):
            try:
                p.unlink()
            except FileNotFoundError:
                pass


def list_grid_states(state_dir: str) -> List[str]:
    """Grid ids with a saved snapshot under state_dir."""
    root = Path(state_dir)
    if not root.exists():
        return []
    ids: List[str] = []
    for path in sorted(root.glob("grid_*.json")):
        try:
            grid_id = json.loads(path.read_text()).get("grid_id")
        except (OSError, ValueError):
            continue
        if grid_id:
            ids.append(str(grid_id))
    return ids
