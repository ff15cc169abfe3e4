from __future__ import annotations

from pathlib import Path

from .config import TextMeSettings
from .utils import digits_only


class PolicyEngine:
    def __init__(self, settings: TextMeSettings, home: Path | None = None):
        self.settings = settings
        self.home = (home or Path.home()).resolve()
        self.scratch_root = Path(settings.scratch_root).resolve()

    def is_sender_allowed(self, sender: str) -> bool:
        candidate = digits_only(sender)
        if not candidate:
            return False
        return any(candidate == digits_only(allowed) for allowed in self.settings.allowed_senders)

    def is_directory_allowed(self, directory: str | Path) -> bool:
        candidate = Path(directory).resolve()
        for root in (self.home, self.scratch_root):
            if candidate == root or root in candidate.parents:
                return True
        return False

    def resolve_directory(self, path_text: str, current_dir: str) -> Path:
        """Resolve a `cd` target; raises ValueError with an operator-facing message."""
        raw = path_text.strip()
        if raw.startswith("~"):
            raw = str(self.home) + raw[1:]
        candidate = Path(raw)
        if not candidate.is_absolute():
            candidate = Path(current_dir) / candidate
        resolved = candidate.resolve()
        if not self.is_directory_allowed(resolved):
            raise ValueError(f"Access denied: {resolved} is outside {self.home} and {self.scratch_root}")
        if not resolved.is_dir():
            raise ValueError(f"Directory not found: {resolved}")
        return resolved
