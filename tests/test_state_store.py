"""Tests for persisted session state."""

from pathlib import Path

from coview.state_store import SessionState, SessionStateStore


class TestSessionStateStore:
    """Tests for SessionStateStore."""

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        store = SessionStateStore(tmp_path / "session.toml")
        assert store.load() == SessionState()

    def test_save_and_load(self, tmp_path: Path) -> None:
        store = SessionStateStore(tmp_path / "nested" / "session.toml")
        state = SessionState(is_sharing=True, room_code='ro"om', server_url="https://coview.example.com")

        store.save(state)

        assert store.load() == state

    def test_update_merges(self, tmp_path: Path) -> None:
        store = SessionStateStore(tmp_path / "session.toml")
        store.save(SessionState(is_sharing=True, room_code="abc", server_url="http://localhost:4000"))

        store.update(is_sharing=False)

        assert store.load() == SessionState(is_sharing=False, room_code="abc", server_url="http://localhost:4000")

    def test_corrupt_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "session.toml"
        path.write_text("[session\nis_sharing = ")

        assert SessionStateStore(path).load() == SessionState()

    def test_clear_stale(self, tmp_path: Path) -> None:
        store = SessionStateStore(tmp_path / "session.toml")
        assert store.clear_stale() is False

        store.save(SessionState(is_sharing=True, room_code="abc"))

        assert store.clear_stale() is True
        assert store.load() == SessionState(is_sharing=False, room_code="abc")
