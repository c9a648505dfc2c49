"""
Principal lookup from the persisted login session.

Session management lives outside the engine; the login flow writes the
current user to a JSON file:

    {"id": "5C1A...", "email": "me@example.com", "createdAt": "..."}

The engine only reads `id`. Missing or unreadable sessions mean "nobody is
logged in" and sync passes are skipped.
"""
import json
import os
import stat
from pathlib import Path
from typing import Any, Dict

# ── Exceptions ────────────────────────────────────────────────────────────────

class NoPrincipalError(RuntimeError):
    """Raised when no logged-in user can be found."""


# ── Main class ────────────────────────────────────────────────────────────────

class PrincipalStore:
    """
    Reads (and, for setup/tests, writes) the current principal.

    Usage:
        store = PrincipalStore(settings.session_path)
        user_id = store.load_principal_id()   # raises NoPrincipalError
    """

    def __init__(self, session_path: Path):
        self._session_file = Path(session_path)

    def has_session(self) -> bool:
        return self._session_file.exists()

    def save(self, session_data: Dict[str, Any]) -> None:
        """Persist session_data with owner-only permissions (dir 0700, file 0600)."""
        self._session_file.parent.mkdir(parents=True, exist_ok=True)
        os.chmod(self._session_file.parent, stat.S_IRWXU)

        self._session_file.write_text(json.dumps(session_data, indent=2))
        os.chmod(self._session_file, stat.S_IRUSR | stat.S_IWUSR)

    def load_principal_id(self) -> str:
        """
        Return the current user's id.

        Raises:
            NoPrincipalError: if no session exists or it carries no id.
        """
        if not self._session_file.exists():
            raise NoPrincipalError(f"No session found at {self._session_file}")
        try:
            data = json.loads(self._session_file.read_text())
        except (OSError, ValueError) as exc:
            raise NoPrincipalError(f"Unreadable session file: {exc}") from exc

        user_id = data.get("id") if isinstance(data, dict) else None
        if not user_id:
            raise NoPrincipalError("Session has no user id")
        return str(user_id)

    def clear(self) -> None:
        """Delete the session file (does not raise if already absent)."""
        if self._session_file.exists():
            self._session_file.unlink()
