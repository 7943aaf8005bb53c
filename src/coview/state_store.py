"""Persisted session state for the relay.

Remembers the last room and server between runs. The sharing flag is only
informational: a new process never resumes a session.
Default location: ~/.config/coview/session.toml
"""

import json
import tomllib
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger()

DEFAULT_STATE_FILE = Path.home() / ".config" / "coview" / "session.toml"


@dataclass
class SessionState:
    is_sharing: bool = False
    room_code: str | None = None
    server_url: str | None = None


class SessionStateStore:
    """Reads and writes the session state file."""

    def __init__(self, path: Path | None = None) -> None:
        """Initialize the store.

        Args:
            path: Custom state file path. Uses default if not provided.
        """
        self.path = path or DEFAULT_STATE_FILE

    def load(self) -> SessionState:
        """Load the state, or defaults if the file is missing or unreadable."""
        if not self.path.exists():
            return SessionState()
        try:
            with open(self.path, "rb") as f:
                data = tomllib.load(f).get("session", {})
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning("Failed to load session state", path=str(self.path), error=str(e))
            return SessionState()
        return SessionState(
            is_sharing=bool(data.get("is_sharing", False)),
            room_code=data.get("room_code") or None,
            server_url=data.get("server_url") or None,
        )

    def save(self, state: SessionState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            f.write(self._to_toml(state))
        logger.debug("Session state saved", path=str(self.path), is_sharing=state.is_sharing)

    def update(self, **changes: object) -> SessionState:
        """Apply changes on top of the stored state and save it."""
        state = self.load()
        for key, value in changes.items():
            setattr(state, key, value)
        self.save(state)
        return state

    def clear_stale(self) -> bool:
        """Reset a leftover sharing flag from a previous process.

        Returns:
            True if a stale flag was cleared
        """
        state = self.load()
        if not state.is_sharing:
            return False
        logger.info("Clearing stale sharing session", room_code=state.room_code)
        state.is_sharing = False
        self.save(state)
        return True

    def _to_toml(self, state: SessionState) -> str:
        """Format the state as TOML since tomllib is read-only."""
        lines = ["[session]", f"is_sharing = {'true' if state.is_sharing else 'false'}"]
        # JSON string escaping is valid TOML basic-string escaping
        if state.room_code:
            lines.append(f"room_code = {json.dumps(state.room_code)}")
        if state.server_url:
            lines.append(f"server_url = {json.dumps(state.server_url)}")
        return "\n".join(lines) + "\n"
