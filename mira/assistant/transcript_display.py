"""Formats live transcripts for the glasses' small text display."""

from __future__ import annotations

from collections import deque

from mira.utils import wrap_text


class TranscriptProcessor:
    """Keeps recent final segments plus the current interim text and renders the tail."""

    def __init__(self, max_chars_per_line: int = 30, max_lines: int = 3, max_final_history: int = 3) -> None:
        self.max_chars_per_line = max_chars_per_line
        self.max_lines = max_lines
        self._finals: deque[str] = deque(maxlen=max(1, max_final_history))
        self._partial = ""

    def process_string(self, text: str | None, is_final: bool) -> str:
        cleaned = (text or "").strip()
        if is_final:
            if cleaned:
                self._finals.append(cleaned)
            self._partial = ""
        else:
            self._partial = cleaned
        return self.render()

    def render(self) -> str:
        parts = list(self._finals)
        if self._partial:
            parts.append(self._partial)
        combined = " ".join(parts)
        if not combined:
            return ""
        lines = wrap_text(combined, self.max_chars_per_line).split("\n")
        return "\n".join(lines[-self.max_lines :])

    def last_user_transcript(self) -> str:
        if self._partial:
            return self._partial
        return self._finals[-1] if self._finals else ""

    def clear(self) -> None:
        self._finals.clear()
        self._partial = ""
