"""
Wiretap: a record of every turn that went over the line.

Two parts:
  1. WireLog: writes one JSONL entry per prompt sent and reply received
  2. live_tap(): reads the JSONL and renders a colour-coded view

Replies are logged with their outcome: filtered by the guardrails,
cancelled, or failed in transport.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_USER = "\033[96m"       # cyan
C_ASSISTANT = "\033[93m"  # yellow
C_TIME = "\033[90m"       # gray
C_BORDER = "\033[90m"     # gray
C_FILTERED = "\033[95m"   # magenta
C_ERROR = "\033[91m"      # red

ROLE_COLORS = {
    "user": C_USER,
    "assistant": C_ASSISTANT,
}

ROLE_ICONS = {
    "user": "▶",
    "assistant": "◀",
}

MAX_CONTENT = 2000


class WireLog:
    """
    Structured JSONL log of the wire.

    Format:
        {"ts": "...", "dir": "outbound|inbound", "role": "...",
         "len": 123, "filtered": false, "status": "success", "content": "..."}
    """

    def __init__(self, log_path: str | Path):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def log(
        self,
        direction: str,  # "outbound" (prompt to server) or "inbound" (reply)
        role: str,
        content: str,
        filtered: bool = False,
        status: str = "",
    ):
        """Write a wire log entry."""
        self._ensure_open()
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "role": role,
            "len": len(content),
            "filtered": filtered,
        }
        if status:
            entry["status"] = status

        if len(content) <= MAX_CONTENT:
            entry["content"] = content
        else:
            half = MAX_CONTENT // 2
            skipped = len(content) - MAX_CONTENT
            entry["content"] = content[:half] + f"\n\n[... {skipped} chars truncated ...]\n\n" + content[-half:]

        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def _format_entry(entry: dict, raw: bool = False) -> str:
    """Format a single wire log entry for display."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        time_str = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    role = entry.get("role", "?")
    direction = entry.get("dir", "?")
    content = entry.get("content", "")
    status = entry.get("status", "")

    role_color = ROLE_COLORS.get(role, C_RESET)
    icon = ROLE_ICONS.get(role, "?")
    arrow = f"{C_DIM}──▶{C_RESET}" if direction == "outbound" else f"{C_DIM}◀──{C_RESET}"

    header = f"  {C_TIME}{time_str}{C_RESET} {arrow} {role_color}{C_BOLD}{icon} {role.upper()}{C_RESET}"
    if entry.get("filtered"):
        header += f"  {C_FILTERED}[filtered]{C_RESET}"
    if status and status != "success":
        header += f"  {C_ERROR}[{status}]{C_RESET}"
    header += f"  {C_DIM}({entry.get('len', 0)} chars){C_RESET}"
    lines = [header]

    if content:
        display = content
        if len(display) > 500:
            display = display[:500] + f"\n      {C_DIM}[... truncated]{C_RESET}"
        shown = display.split("\n")
        for cline in shown[:15]:
            lines.append(f"      {cline}")
        if len(shown) > 15:
            lines.append(f"      {C_DIM}[... {len(shown) - 15} more lines]{C_RESET}")

    lines.append(f"  {C_BORDER}{'─' * 60}{C_RESET}")
    return "\n".join(lines)


def _print_line(line: str, role_filter: str | None, raw: bool) -> None:
    line = line.strip()
    if not line:
        return
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return
    if role_filter and entry.get("role") != role_filter:
        return
    print(_format_entry(entry, raw=raw))


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    role_filter: str | None = None,
    raw: bool = False,
):
    """
    Tail the wire log.

    Args:
        log_path: Path to wire.jsonl. If None, reads from config.
        follow: If True, keep watching for new entries (tail -f behavior).
        last_n: Show this many recent entries before following.
        role_filter: Only show entries matching this role.
        raw: Output raw JSONL instead of formatted.
    """
    if log_path is None:
        from fmchat.config import get_config
        log_path = get_config()["wiretap"]["path"]

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        print("     Start a chat first: fmchat talk")
        return

    if not raw:
        print(f"  ☎  Tapping into {wire_path}")
        print(f"  {C_BORDER}{'═' * 60}{C_RESET}")

    with open(wire_path) as f:
        all_lines = f.readlines()
    for line in all_lines[max(0, len(all_lines) - last_n):]:
        _print_line(line, role_filter, raw)

    if not follow:
        return

    if not raw:
        print(f"\n  {C_DIM}[listening for new traffic... Ctrl+C to hang up]{C_RESET}\n")

    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                _print_line(line, role_filter, raw)
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[line disconnected]{C_RESET}")
