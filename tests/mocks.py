"""Mock hardware adapters for testing without physical devices.

Usage:
    from tests.mocks import FakeSerial
    port = FakeSerial(stream_bytes, chunk_size=100)
"""

import threading
import time
from typing import Optional

from simulation.generate_synthetic import Room, packetize, synthetic_measurements


class FakeSerial:
    """Serial port replaying a byte stream.

    Reads return up to ``size`` bytes (capped at ``chunk_size``); once the
    stream is exhausted reads sleep for ``idle_sleep`` and return b"", like a
    port with a read timeout.
    """

    def __init__(self, data: bytes = b"", chunk_size: int = 64, idle_sleep: float = 0.01):
        self._data = bytes(data)
        self._pos = 0
        self._lock = threading.Lock()
        self.chunk_size = chunk_size
        self.idle_sleep = idle_sleep
        self.is_open = True
        self.reads = 0

    def read(self, size: int = 1) -> bytes:
        with self._lock:
            self.reads += 1
            if self._pos >= len(self._data):
                chunk = b""
            else:
                n = min(size, self.chunk_size)
                chunk = self._data[self._pos:self._pos + n]
                self._pos += len(chunk)
        if not chunk:
            time.sleep(self.idle_sleep)
        return chunk

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self._pos >= len(self._data)

    def reset_input_buffer(self):
        pass

    def close(self):
        self.is_open = False


def simulated_stream(
    rotations: int = 3,
    room: Optional[Room] = None,
    orientation: float = 30.0,
    corrupt_every: int = 0,
) -> bytes:
    """LD06 byte stream of a sensor standing still in a room."""
    room = room or Room.rectangle(4.0, 3.0)
    sweep = synthetic_measurements(room, 0.2, 0.1, orientation, step_deg=1.0)
    stream = bytearray()
    for i in range(rotations):
        stream += packetize(sweep, sensor_timestamp=i * 100, corrupt_every=corrupt_every)
    return bytes(stream)
