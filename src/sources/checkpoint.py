"""Per-channel indexing cursors.

A cursor is the timestamp of the most recently indexed message of a channel,
keyed by (team_id, channel_id). The store overwrites unconditionally; callers
decide whether a new value moves forward.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from src.utils.persistent_cache import load_json_dict, write_json_atomic


@dataclass
class Checkpoint:
    """In-memory cursor state.

    Parameters:
        state: {"cursors": {team_id: {channel_id: {"latest_ts": str, "updated_at": str}}}}
    """

    state: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Initialize checkpoint state with its default layout."""
        self.state.setdefault("cursors", {})

    def get_latest_ts(self, team_id: str, channel_id: str) -> Optional[str]:
        """Return the stored cursor or None if the channel was never indexed."""
        entry = self.state["cursors"].get(team_id, {}).get(channel_id)
        if isinstance(entry, dict) and entry.get("latest_ts") is not None:
            return str(entry["latest_ts"])
        return None

    def set_latest_ts(self, team_id: str, channel_id: str, latest_ts: str) -> None:
        """Overwrite the cursor of a channel."""
        team = self.state["cursors"].setdefault(team_id, {})
        team[channel_id] = {
            "latest_ts": str(latest_ts),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

    def remove(self, team_id: str, channel_id: str) -> bool:
        """Drop a channel's cursor; True if one existed."""
        team = self.state["cursors"].get(team_id, {})
        return team.pop(channel_id, None) is not None

    def entries(self) -> List[Dict[str, str]]:
        """Flatten cursors into {team_id, channel_id, latest_ts, updated_at} rows."""
        rows = []
        for team_id, channels in self.state["cursors"].items():
            for channel_id, entry in channels.items():
                rows.append(
                    {
                        "team_id": team_id,
                        "channel_id": channel_id,
                        "latest_ts": str(entry.get("latest_ts")),
                        "updated_at": str(entry.get("updated_at", "")),
                    }
                )
        return rows

    def save(self, path: Path) -> None:
        """Save the checkpoint to the given path atomically."""
        write_json_atomic(path, self.state)

    @classmethod
    def load(cls, path: Path) -> "Checkpoint":
        """Load the checkpoint from the given path; a missing file yields an empty checkpoint."""
        data = load_json_dict(path)
        if not isinstance(data.get("cursors"), dict):
            data["cursors"] = {}
        return cls(state=data)


class CursorStore:
    """JSON file backed cursor store, safe for concurrent use within a process.

    Every `set` reloads the file before writing. There is no lock across
    processes, so concurrent runs should share one process (or one store).
    """

    def __init__(self, path: Union[str, Path]):
        """Initialize the store at `path` (created on first write)."""
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def get(self, team_id: str, channel_id: str) -> Optional[str]:
        """Return the latest indexed timestamp, or None if never indexed."""
        with self._lock:
            return Checkpoint.load(self.path).get_latest_ts(team_id, channel_id)

    def set(self, team_id: str, channel_id: str, latest_ts: str) -> None:
        """Upsert the watermark of a channel."""
        with self._lock:
            checkpoint = Checkpoint.load(self.path)
            checkpoint.set_latest_ts(team_id, channel_id, latest_ts)
            checkpoint.save(self.path)

    def reset(self, team_id: str, channel_id: str) -> bool:
        """Forget a channel's cursor so the next run backfills from the beginning."""
        with self._lock:
            checkpoint = Checkpoint.load(self.path)
            removed = checkpoint.remove(team_id, channel_id)
            if removed:
                checkpoint.save(self.path)
            return removed

    def all(self) -> List[Dict[str, str]]:
        """Return every stored cursor."""
        with self._lock:
            return Checkpoint.load(self.path).entries()
