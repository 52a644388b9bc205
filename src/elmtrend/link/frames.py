from __future__ import annotations

import logging
from typing import Dict, Iterator


PROMPT = ">"


class PromptFrameParser:
    """
    Streaming parser for ELM327 output.

    Bytes arrive in arbitrary chunks from the transport. A frame is complete
    when the adapter prints its prompt character; everything before the prompt
    (minus carriage returns, NUL padding and surrounding whitespace) is one
    response.
    """

    def __init__(self, terminator: str = PROMPT):
        if not terminator:
            raise ValueError("terminator may not be empty")
        self.terminator = terminator
        self._buffer = ""
        self._stats: Dict[str, int] = {"frames": 0, "empty_frames": 0, "discarded_chars": 0}
        self._log = logging.getLogger(__name__)

    def feed(self, chunk: bytes | str) -> Iterator[str]:
        if isinstance(chunk, (bytes, bytearray)):
            text = bytes(chunk).decode("ascii", errors="ignore")
        else:
            text = chunk
        if not text:
            return
        self._buffer += text.replace("\x00", "")
        while True:
            end = self._buffer.find(self.terminator)
            if end < 0:
                break
            raw = self._buffer[:end]
            self._buffer = self._buffer[end + len(self.terminator) :]
            frame = _normalise(raw)
            if not frame:
                # A bare prompt after ATZ or an idle wake-up
                self._stats["empty_frames"] += 1
                self._log.debug("Skipping empty frame")
                continue
            self._stats["frames"] += 1
            yield frame

    @property
    def pending(self) -> str:
        return self._buffer

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def reset(self) -> None:
        if self._buffer:
            self._stats["discarded_chars"] += len(self._buffer)
            self._log.debug("Discarding %d buffered chars", len(self._buffer))
        self._buffer = ""


def _normalise(raw: str) -> str:
    lines = [line.strip() for line in raw.replace("\r", "\n").split("\n")]
    return "\n".join(line for line in lines if line)
