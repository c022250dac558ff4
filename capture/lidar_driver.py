"""LD06 lidar driver for Planpose capture.

The LD06 starts streaming as soon as it is powered, so there is no command
protocol: the driver opens the serial port and consumes bytes.

Two threads cooperate:
- the reader thread pulls raw chunks off the serial port and pushes them into
  a bounded queue, blocking when the consumer falls behind
- the decode thread drains the queue through the PacketDecoder and groups
  measurements into rotations

Device discovery and USB permissions are left to the caller; the driver only
needs a port path.
"""

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

import serial

from .packet_decoder import PacketDecoder
from .rotation import ImuSample, OrientationSample, Rotation, RotationAssembler

logger = logging.getLogger(__name__)


class LidarStatus(Enum):
    """LiDAR operational status."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDLE = "idle"
    SCANNING = "scanning"
    ERROR = "error"


@dataclass
class LidarStats:
    """Running transport counters."""
    bytes_read: int = 0
    chunks_read: int = 0
    reader_stalls: int = 0
    rotations: int = 0


class LD06Driver:
    """Driver for the LD06 / LD19 lidar over a serial port."""

    def __init__(
        self,
        port: str = "/dev/ttyUSB0",
        baudrate: int = 230400,
        timeout: float = 1.0,
        read_size: int = 512,
        queue_size: int = 64,
        min_rotation_points: int = 10,
    ):
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.read_size = read_size

        self._serial = None
        self._status = LidarStatus.DISCONNECTED
        self._scanning = False
        self._chunks: "queue.Queue[bytes]" = queue.Queue(maxsize=queue_size)
        self._reader_thread: Optional[threading.Thread] = None
        self._decode_thread: Optional[threading.Thread] = None
        self._decoder = PacketDecoder()
        self._assembler = RotationAssembler(self._decoder, min_points=min_rotation_points)
        self._current_rotation: Optional[Rotation] = None
        self._rotation_callbacks: List[Callable[[Rotation], None]] = []
        self._lock = threading.Lock()
        self._stats = LidarStats()

    @classmethod
    def from_config(cls, config) -> "LD06Driver":
        """Create a driver from a LidarConfig."""
        return cls(
            port=config.device,
            baudrate=config.baudrate,
            read_size=config.read_size,
            queue_size=config.queue_size,
            min_rotation_points=config.min_rotation_points,
        )

    @property
    def status(self) -> LidarStatus:
        """Get current LiDAR status."""
        return self._status

    @property
    def decoder(self) -> PacketDecoder:
        return self._decoder

    @property
    def is_connected(self) -> bool:
        """Check if device is connected."""
        return self._status not in (LidarStatus.DISCONNECTED, LidarStatus.ERROR)

    @property
    def is_scanning(self) -> bool:
        """Check if currently scanning."""
        return self._scanning

    def connect(self) -> bool:
        """Open the serial port."""
        try:
            self._status = LidarStatus.CONNECTING
            logger.info(f"Connecting to LD06 on {self.port} at {self.baudrate} baud")

            if not os.path.exists(self.port):
                logger.error(f"Device {self.port} not found")
                self._status = LidarStatus.ERROR
                return False

            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                timeout=self.timeout,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                bytesize=serial.EIGHTBITS,
            )
            self._serial.reset_input_buffer()

            self._status = LidarStatus.IDLE
            logger.info(f"Connected to LD06 on {self.port}")
            return True

        except (serial.SerialException, OSError) as e:
            logger.error(f"Failed to connect: {e}")
            self._status = LidarStatus.ERROR
            return False

    def disconnect(self):
        """Close the serial port."""
        if self._scanning:
            self.stop_scan()

        if self._serial and self._serial.is_open:
            try:
                self._serial.close()
            except (serial.SerialException, OSError) as e:
                logger.warning(f"Error during disconnect: {e}")

        self._serial = None
        self._status = LidarStatus.DISCONNECTED
        logger.info("Disconnected from LD06")

    def start_scan(self, callback: Optional[Callable[[Rotation], None]] = None) -> bool:
        """Start reading and optionally register a callback for rotations."""
        if not self.is_connected:
            logger.error("Not connected")
            return False

        if self._scanning:
            logger.warning("Already scanning")
            return True

        if callback:
            self._rotation_callbacks.append(callback)

        self._decoder.reset()
        self._scanning = True
        self._status = LidarStatus.SCANNING
        self._reader_thread = threading.Thread(target=self._read_loop, daemon=True)
        self._decode_thread = threading.Thread(target=self._decode_loop, daemon=True)
        self._reader_thread.start()
        self._decode_thread.start()

        logger.info("Scan started")
        return True

    def stop_scan(self):
        """Stop reading; the decode thread drains what is already queued."""
        self._scanning = False

        for thread in (self._reader_thread, self._decode_thread):
            if thread and thread.is_alive():
                thread.join(timeout=2.0)

        self._status = LidarStatus.IDLE if self._serial else LidarStatus.DISCONNECTED
        logger.info("Scan stopped")

    def _read_loop(self):
        """Move raw bytes from the port into the chunk queue."""
        try:
            while self._scanning:
                data = self._serial.read(self.read_size)
                if not data:
                    continue
                self._stats.bytes_read += len(data)
                self._stats.chunks_read += 1
                self._put_chunk(data)
        except (serial.SerialException, OSError) as e:
            logger.error(f"Read loop error: {e}")
            self._scanning = False
            self._status = LidarStatus.ERROR

    def _put_chunk(self, data: bytes):
        # Block while the consumer is behind, but keep honouring stop_scan.
        stalled = False
        while self._scanning:
            try:
                self._chunks.put(data, timeout=0.1)
                return
            except queue.Full:
                if not stalled:
                    self._stats.reader_stalls += 1
                    stalled = True

    def chunks(self) -> Iterator[bytes]:
        """Raw chunks in arrival order until scanning stops and the queue is drained."""
        while self._scanning or not self._chunks.empty():
            try:
                yield self._chunks.get(timeout=0.1)
            except queue.Empty:
                continue

    def _decode_loop(self):
        measurements = self._decoder.iter_measurements(self.chunks())
        for m in measurements:
            with self._lock:
                rotation = self._assembler.add(m)
            if rotation is not None:
                self._publish(rotation)

    def _publish(self, rotation: Rotation):
        self._stats.rotations += 1
        with self._lock:
            self._current_rotation = rotation

        for cb in self._rotation_callbacks:
            try:
                cb(rotation)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    def add_gyroscope(self, samples: List[ImuSample]):
        """Attach gyroscope samples to the rotation being collected."""
        with self._lock:
            self._assembler.add_gyroscope(samples)

    def set_orientation(self, sample: OrientationSample):
        """Fix the heading of the rotation being collected from a fused orientation sensor."""
        with self._lock:
            self._assembler.set_orientation(sample.yaw_degrees())

    def get_current_rotation(self) -> Optional[Rotation]:
        """Get the most recent complete rotation."""
        with self._lock:
            return self._current_rotation

    def add_rotation_callback(self, callback: Callable[[Rotation], None]):
        """Add a callback for new rotations."""
        self._rotation_callbacks.append(callback)

    def remove_rotation_callback(self, callback: Callable[[Rotation], None]):
        """Remove a rotation callback."""
        if callback in self._rotation_callbacks:
            self._rotation_callbacks.remove(callback)

    def get_diagnostics(self) -> Dict[str, Any]:
        """Get diagnostic information."""
        return {
            "status": self._status.value,
            "connected": self.is_connected,
            "scanning": self.is_scanning,
            "port": self.port,
            "baudrate": self.baudrate,
            "stats": {
                "bytes_read": self._stats.bytes_read,
                "chunks_read": self._stats.chunks_read,
                "reader_stalls": self._stats.reader_stalls,
                "queued_chunks": self._chunks.qsize(),
                "frames_decoded": self._decoder.frames_decoded,
                "corrupted_packets": self._decoder.corrupted_packets,
                "rotations": self._stats.rotations,
                "partial_rotations": self._assembler.rotations_dropped,
            },
            "timestamp": time.time(),
        }
