#!/usr/bin/env python3
"""Small JSON state store shared by the entry points.

Holds the cached OAuth token so standalone scripts do not need a browser
round-trip on every run.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union


logger = logging.getLogger("digital-factory")

STATE_FILE_NAME = ".digital_factory_state.json"


def default_state_path(override: Optional[str] = None) -> Path:
    return Path(
        override
        or os.getenv("STATE_FILE")
        or (Path(__file__).resolve().parents[1] / STATE_FILE_NAME)
    )


class StateStore:
    """JSON file with the shape {"version": 1, "auth": {...}}."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"version": 1}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read state file %s: %s", self.path, e)
            return {"version": 1}

    def save(self, state: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps(state, indent=2, sort_keys=True, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("Failed to write state file %s: %s", self.path, e)


__all__ = ["StateStore", "default_state_path"]
