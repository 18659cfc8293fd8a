from __future__ import annotations
import codecs
import threading
from typing import BinaryIO, List, Optional

CHUNK = 64 * 1024
TRUNCATED_MARKER = "\n[output truncated]"


class BoundedBuffer:
    """Keeps the first `limit` bytes, counts the rest."""

    def __init__(self, limit: int):
        self.limit = limit
        self.size = 0
        self.dropped = 0
        self._chunks: List[bytes] = []
        self._lock = threading.Lock()

    def feed(self, data: bytes) -> None:
        with self._lock:
            room = self.limit - self.size
            keep = data[:room] if room > 0 else b""
            if keep:
                self._chunks.append(keep)
                self.size += len(keep)
            self.dropped += len(data) - len(keep)

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def text(self) -> str:
        with self._lock:
            raw = b"".join(self._chunks)
        if not self.truncated:
            return raw.decode("utf-8", errors="replace")
        # final=False holds back a character split by the cut instead of replacing it
        dec = codecs.getincrementaldecoder("utf-8")(errors="replace")
        return dec.decode(raw, final=False) + TRUNCATED_MARKER


class StreamCollector(threading.Thread):
    """Drains one pipe into a BoundedBuffer until EOF, then closes it."""

    def __init__(self, stream: BinaryIO, limit: int, name: str):
        super().__init__(name=name, daemon=True)
        self.stream = stream
        self.buffer = BoundedBuffer(limit)

    def run(self) -> None:
        try:
            while True:
                chunk = self.stream.read1(CHUNK)
                if not chunk:
                    break
                # keep draining past the limit so the writer never blocks on a full pipe
                self.buffer.feed(chunk)
        finally:
            self.stream.close()


class StdinFeeder(threading.Thread):
    def __init__(self, stream: Optional[BinaryIO], data: bytes, name: str):
        super().__init__(name=name, daemon=True)
        self.stream = stream
        self.data = data

    def run(self) -> None:
        if self.stream is None:
            return
        try:
            if self.data:
                self.stream.write(self.data)
                self.stream.flush()
        except (BrokenPipeError, ValueError):
            # program exited (or was killed) without reading all of its input
            pass
        finally:
            try:
                self.stream.close()
            except BrokenPipeError:
                pass
