"""Checkpoint file recording when the offline queue last delivered something."""
import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from chatsync import settings
from chatsync.logging_conf import logger
from chatsync.models import parse_timestamp, utc_now


class SyncCheckpoint:
    """Persists ``last_sync_time`` across restarts."""

    def __init__(self, checkpoint_dir: Optional[Path] = None, name: str = "sync"):
        self.checkpoint_file: Path = Path(checkpoint_dir or settings.CHECKPOINT_DIR) / f"{name}.json"
        self.checkpoint_file.parent.mkdir(parents=True, exist_ok=True)

    def get_last_sync_time(self) -> Optional[datetime]:
        """Last successful sync, or None if nothing was ever delivered."""
        try:
            if self.checkpoint_file.exists():
                with open(self.checkpoint_file, "r") as f:
                    data = json.load(f)
                if data.get("last_sync"):
                    return parse_timestamp(data["last_sync"])
        except Exception as e:
            logger.warning(f"Failed to read checkpoint: {e}")
        return None

    def save_sync_time(self, sync_time: datetime) -> None:
        try:
            data = {
                "last_sync": sync_time.isoformat(),
                "updated_at": utc_now().isoformat(),
            }
            with open(self.checkpoint_file, "w") as f:
                json.dump(data, f, indent=2)
            logger.debug(f"Saved checkpoint: {sync_time.isoformat()}")
        except Exception as e:
            logger.error(f"Failed to save checkpoint: {e}", exc_info=True)
