from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class CommandKind(str, Enum):
    HELP = "help"
    STATUS = "status"
    QUEUE = "queue"
    HISTORY = "history"
    INTERRUPT = "interrupt"
    HOME = "home"
    RESET = "reset"
    CHANGE_DIRECTORY = "cd"
    APPROVAL_RESPONSE = "approval"
    FREEFORM = "freeform"


@dataclass(slots=True)
class ParsedCommand:
    kind: CommandKind
    payload: str
    approved: bool | None = None
    index: int | None = None


_HELP = {"help", "?"}
_STATUS = {"status", "status?"}
_QUEUE = {"queue", "q"}
_INTERRUPT = {"interrupt", "stop", "cancel"}
_RESET = {"reset", "fresh", "new session"}

APPROVE_WORDS = frozenset({"yes", "y", "approve", "ok", "go", "run it", "do it"})
REJECT_WORDS = frozenset({"no", "n", "reject", "deny"})

_HISTORY_RE = re.compile(r"^(?:history|h)(?:\s+(\d+))?$")
_CD_RE = re.compile(r"^cd\s+(.+)$", re.IGNORECASE)


def parse_approval(raw_text: str) -> bool | None:
    """Return True/False for a yes/no style reply, None for anything else."""
    lowered = " ".join(raw_text.strip().lower().split()).rstrip("!.")
    if lowered in APPROVE_WORDS:
        return True
    if lowered in REJECT_WORDS:
        return False
    return None


def parse_command(raw_text: str) -> ParsedCommand:
    text = raw_text.strip()
    lowered = " ".join(text.lower().split())

    if lowered in _HELP:
        return ParsedCommand(kind=CommandKind.HELP, payload="")
    if lowered in _STATUS:
        return ParsedCommand(kind=CommandKind.STATUS, payload="")
    if lowered in _QUEUE:
        return ParsedCommand(kind=CommandKind.QUEUE, payload="")

    history = _HISTORY_RE.match(lowered)
    if history:
        index = int(history.group(1)) if history.group(1) else None
        return ParsedCommand(kind=CommandKind.HISTORY, payload=history.group(1) or "", index=index)

    if lowered in _INTERRUPT:
        return ParsedCommand(kind=CommandKind.INTERRUPT, payload="")
    if lowered == "home":
        return ParsedCommand(kind=CommandKind.HOME, payload="")
    if lowered in _RESET:
        return ParsedCommand(kind=CommandKind.RESET, payload="")

    cd = _CD_RE.match(text)
    if cd:
        return ParsedCommand(kind=CommandKind.CHANGE_DIRECTORY, payload=cd.group(1).strip())

    approved = parse_approval(text)
    if approved is not None:
        return ParsedCommand(kind=CommandKind.APPROVAL_RESPONSE, payload=lowered, approved=approved)

    return ParsedCommand(kind=CommandKind.FREEFORM, payload=text)
