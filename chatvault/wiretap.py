"""
Wiretap — a structured record of what went over the line.

Every persisted message and every fault (undecodable fragment, failed model
call) becomes one JSONL line:

    {"ts": "...", "dir": "inbound|outbound|internal", "role": "user",
     "conv": 12, "len": 123, "content": "..."}

Fault lines use role "fault" and add "kind". The wire log is separate from
the debug log: it is an append-only account of who said what, when, in
which conversation. `live_tap` renders it in the terminal.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"

ROLE_STYLES = {
    "user": "\033[96m",       # cyan
    "assistant": "\033[93m",  # yellow
    "system": "\033[90m",     # gray
    "fault": "\033[91m",      # red
}

MAX_CONTENT = 2000
DISPLAY_CHARS = 500
DISPLAY_LINES = 15


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def clip(content: str, limit: int = MAX_CONTENT) -> str:
    """Keep the head and tail of long content with a marker in between."""
    if len(content) <= limit:
        return content
    half = limit // 2
    dropped = len(content) - 2 * half
    return f"{content[:half]}\n\n[... {dropped} chars truncated ...]\n\n{content[-half:]}"


class WireLog:
    """Append-only JSONL writer. The file is opened on first write."""

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self._file = None

    def _append(self, entry: dict):
        if self._file is None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self.log_path.open("a", encoding="utf-8", buffering=1)
        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def log(
        self,
        direction: str,
        role: str,
        content: str,
        conversation_id: int | None = None,
    ):
        self._append({
            "ts": _timestamp(),
            "dir": direction,
            "role": role,
            "conv": conversation_id,
            "len": len(content),
            "content": clip(content),
        })

    def fault(self, kind: str, detail: str, conversation_id: int | None = None):
        """Record a decode or upstream fault."""
        self._append({
            "ts": _timestamp(),
            "dir": "internal",
            "role": "fault",
            "kind": kind,
            "conv": conversation_id,
            "len": len(detail),
            "content": clip(detail),
        })

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None


# ---------------------------------------------------------------------------
# Reading / rendering
# ---------------------------------------------------------------------------

def parse_line(line: str) -> dict | None:
    """Decode one JSONL line; blank or corrupt lines give None."""
    line = line.strip()
    if not line:
        return None
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping corrupt wire log line")
        return None
    return entry if isinstance(entry, dict) else None


def matches(entry: dict, role: str | None = None, conversation_id: int | None = None) -> bool:
    if role and entry.get("role") != role:
        return False
    if conversation_id is not None and entry.get("conv") != conversation_id:
        return False
    return True


def read_entries(
    log_path: str | Path,
    role: str | None = None,
    conversation_id: int | None = None,
) -> list[dict]:
    """All entries in the file that pass the filters, oldest first."""
    with open(log_path, encoding="utf-8") as f:
        entries = [parse_line(line) for line in f]
    return [e for e in entries if e is not None and matches(e, role, conversation_id)]


def render_entry(entry: dict, raw: bool = False) -> str:
    """One entry as terminal text (or compact JSON when raw)."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    try:
        clock = datetime.fromisoformat(entry.get("ts", "")).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        clock = "??:??:??"

    role = entry.get("role", "?")
    label = role.upper()
    if role == "fault":
        label = f"{label} ({entry.get('kind', '?')})"

    header = [
        f"{DIM}{clock}{RESET}",
        f"{ROLE_STYLES.get(role, RESET)}{BOLD}{label}{RESET}",
        f"{DIM}({entry.get('len', 0)} chars){RESET}",
    ]
    if entry.get("conv") is not None:
        header.append(f"{DIM}conv:{entry['conv']}{RESET}")

    body = entry.get("content", "")
    if len(body) > DISPLAY_CHARS:
        body = f"{body[:DISPLAY_CHARS]}\n{DIM}[... truncated]{RESET}"
    body_lines = [f"      {text}" for text in body.split("\n")[:DISPLAY_LINES]]
    return "\n".join(["  " + "  ".join(header), *body_lines])


def live_tap(
    log_path: str,
    follow: bool = True,
    last_n: int = 20,
    role_filter: str | None = None,
    conversation_filter: int | None = None,
    raw: bool = False,
):
    """
    Print the last `last_n` matching entries, then (if `follow`) keep
    printing new ones as they are appended until interrupted.
    """
    path = Path(log_path)
    if not path.exists():
        print(f"  No wire log found at {path}")
        return

    backlog = read_entries(path, role_filter, conversation_filter)
    for entry in backlog[-last_n:] if last_n > 0 else []:
        print(render_entry(entry, raw=raw))

    if not follow:
        return

    try:
        with open(path, encoding="utf-8") as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                entry = parse_line(line)
                if entry is not None and matches(entry, role_filter, conversation_filter):
                    print(render_entry(entry, raw=raw))
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {DIM}[tap closed]{RESET}")
