"""
Output Sink
===========
Accumulates a job's trace: command echoes, markers and captured output.

Raw bytes from processes and containers are decoded as UTF-8 with
replacement characters, so a binary blob in the output never aborts a build.
"""
from typing import List


def encode_output(data: bytes) -> str:
    """Normalise captured bytes into trace text."""
    if not data:
        return ""
    return data.decode("utf-8", errors="replace").replace("\x00", "")


class OutputSink:

    def __init__(self) -> None:
        self._chunks: List[str] = []

    def append_text(self, text: str) -> None:
        if text:
            self._chunks.append(text)

    def append_bytes(self, data: bytes) -> None:
        self.append_text(encode_output(data))

    def getvalue(self) -> str:
        return "".join(self._chunks)

    def __len__(self) -> int:
        return sum(len(c) for c in self._chunks)
