"""Output handling for supervised processes: line reassembly and signatures."""

from __future__ import annotations

import codecs
import re
from typing import Iterable, List, Optional, Pattern, Sequence, Union

# Messages dev servers print when their port is taken
PORT_CONFLICT_PATTERNS: List[Pattern[str]] = [
    re.compile(r"EADDRINUSE"),
    re.compile(r"address already in use", re.IGNORECASE),
    re.compile(r"Something is already running on port", re.IGNORECASE),
    re.compile(r"port\s+\d*\s*(?:is\s+)?already in use", re.IGNORECASE),
    re.compile(r"Port \d+ was already in use", re.IGNORECASE),
]


class LineBuffer:
    """Reassembles byte chunks into complete lines.

    Each complete line is returned exactly once without its terminator; a
    trailing partial line is held until more data (or :meth:`flush`).
    Decoding is incremental so multi-byte characters split across chunks
    survive.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        return self.feed_text(text)

    def feed_text(self, text: str) -> List[str]:
        if not text:
            return []
        data = self._pending + text
        parts = data.split("\n")
        self._pending = parts.pop()
        return [p[:-1] if p.endswith("\r") else p for p in parts]

    def decode(self, chunk: bytes) -> str:
        """Decode a chunk; pass the result to :meth:`feed_text`."""
        return self._decoder.decode(chunk)

    def flush(self) -> Optional[str]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        tail = tail.rstrip("\r")
        return tail or None


class PatternMatcher:
    """Ordered list of regex patterns; true on the first match."""

    def __init__(self, patterns: Iterable[Union[str, Pattern[str]]]) -> None:
        self.patterns: List[Pattern[str]] = [
            p if isinstance(p, re.Pattern) else re.compile(p, re.IGNORECASE)
            for p in patterns
        ]

    def __bool__(self) -> bool:
        return bool(self.patterns)

    def first_match(self, texts: Sequence[str]) -> Optional[Pattern[str]]:
        for text in texts:
            for pattern in self.patterns:
                if pattern.search(text):
                    return pattern
        return None

    def matches(self, *texts: str) -> bool:
        return self.first_match(texts) is not None


_PORT_CONFLICT = PatternMatcher(PORT_CONFLICT_PATTERNS)


def is_port_conflict(*texts: str) -> bool:
    return _PORT_CONFLICT.matches(*texts)
