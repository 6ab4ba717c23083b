"""Persistence of machine-to-container bindings between invocations."""
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from lxdbox.core.logger import get_logger

logger = get_logger(__name__)

STATE_VERSION = "1.0"


class MachineIndex:
    """Track which container each machine of a project is bound to.

    The index is a small JSON file in the project's state directory:

        {"version": "1.0", "machines": {"default": {"id": "...", "updated_at": "..."}}}
    """

    def __init__(self, state_dir: Optional[Path] = None):
        """Initialize the index.

        Args:
            state_dir: Project state directory. Defaults to ./.lxdbox
        """
        if state_dir is None:
            state_dir = Path.cwd() / ".lxdbox"

        self.state_dir = Path(state_dir)
        self.state_file = self.state_dir / "state.json"
        self.state = self._load()

    def _load(self) -> dict:
        if not self.state_file.exists():
            return self._empty_state()

        try:
            with open(self.state_file, 'r') as f:
                state = json.load(f)
                logger.debug(f"Loaded machine index from {self.state_file}")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load machine index: {e}, using empty index")
            return self._empty_state()

        if not isinstance(state, dict) or not isinstance(state.get("machines"), dict):
            logger.warning(f"Machine index {self.state_file} is malformed, using empty index")
            return self._empty_state()
        return state

    def _empty_state(self) -> dict:
        return {"version": STATE_VERSION, "machines": {}}

    def save(self):
        """Write the index atomically."""
        self.state_dir.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(self.state, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.state_file)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved machine index to {self.state_file}")

    def get_id(self, machine_name: str) -> Optional[str]:
        entry = self.state["machines"].get(machine_name) or {}
        return entry.get("id")

    def set_id(self, machine_name: str, machine_id: Optional[str]):
        """Record (or clear, when machine_id is None) a machine's container."""
        if machine_id is None:
            self.state["machines"].pop(machine_name, None)
        else:
            self.state["machines"][machine_name] = {
                "id": machine_id,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
        self.save()

    def all_ids(self) -> Dict[str, str]:
        return {
            name: entry["id"]
            for name, entry in self.state["machines"].items()
            if entry.get("id")
        }
