"""CAN frame parsing and ISO-TP (ISO 15765-2) reassembly.

The adapter runs with headers on and CAN auto-formatting off, so every
response line is one raw frame: an 11-bit CAN ID printed as three hex digits,
the PCI byte, then up to seven data bytes. Lines look like::

    7EC 10 26 62 21 00 00 00 00
    7EC 21 00 00 00 00 00 00 00

The CAN ID is left-padded to a 4-byte header so frame offsets stay fixed.
The PCI high nibble selects the frame kind:

- ``0x0`` single frame, low nibble is the payload length
- ``0x1`` first frame, low nibble + next byte form a 12-bit total length
- ``0x2`` consecutive frame, low nibble is a sequence index wrapping 15 -> 0
- ``0x3`` flow control, only ever sent by the receiver
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from leafctl.core.errors import FrameParseError

HEADER_BYTES = 4
MIN_FRAME_BYTES = 6
MAX_FRAME_BYTES = 12

SINGLE_FRAME = 0x0
FIRST_FRAME = 0x1
CONSECUTIVE_FRAME = 0x2
FLOW_CONTROL = 0x3

SINGLE_FRAME_CAPACITY = 7
FIRST_FRAME_CAPACITY = 6
CONSECUTIVE_FRAME_CAPACITY = 7
MAX_MESSAGE_LENGTH = 0xFFF

_HEADER_PAD = "00000"
_NON_HEX_RE = re.compile(r"[^0-9A-Fa-f]")
LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawFrame:
    header: bytes
    pci: int
    data: bytes

    @property
    def kind(self) -> int:
        return self.pci >> 4

    @property
    def low_nibble(self) -> int:
        return self.pci & 0x0F

    @property
    def can_id(self) -> int:
        return int.from_bytes(self.header, "big")

    @classmethod
    def from_bytes(cls, raw: bytes) -> RawFrame:
        if not MIN_FRAME_BYTES <= len(raw) <= MAX_FRAME_BYTES:
            raise FrameParseError(
                f"Invalid CAN frame length {len(raw)} ({raw.hex(' ').upper()})"
            )
        return cls(header=bytes(raw[:HEADER_BYTES]), pci=raw[HEADER_BYTES], data=bytes(raw[HEADER_BYTES + 1 :]))

    @classmethod
    def from_line(cls, line: str) -> RawFrame:
        digits = _HEADER_PAD + _NON_HEX_RE.sub("", line)
        if len(digits) % 2 != 0:
            raise FrameParseError(f"Odd number of hex digits in frame line '{line.strip()}'")
        return cls.from_bytes(bytes.fromhex(digits))

    def to_bytes(self) -> bytes:
        return self.header + bytes([self.pci]) + self.data

    def to_line(self) -> str:
        can_id = f"{self.can_id:03X}"
        body = bytes([self.pci]) + self.data
        return f"{can_id} {body.hex(' ').upper()}"


def parse_lines(text: str) -> list[RawFrame]:
    return [RawFrame.from_line(line) for line in re.split(r"[\r\n]+", text) if line.strip()]


def flow_control_frame(block_size: int = 0, st_min: int = 0) -> bytes:
    """Clear-to-send flow control: no block limit, no separation time by default."""
    return bytes([FLOW_CONTROL << 4, block_size, st_min])


class FrameReassembler:
    """Accumulates the frames of one command exchange into one payload.

    ``on_first_frame`` receives the flow-control frame to transmit after a
    first frame. It stays ``None`` when the adapter answers flow control on
    its own (``ATFCSM1``).
    """

    def __init__(
        self,
        *,
        on_first_frame: Callable[[bytes], None] | None = None,
        strict_single_frame: bool = True,
    ) -> None:
        self._on_first_frame = on_first_frame
        self._strict_single_frame = strict_single_frame
        self._payload = bytearray()
        self._total: int | None = None
        self._next_index: int | None = None
        self._complete = False

    @property
    def complete(self) -> bool:
        return self._complete

    @property
    def total_length(self) -> int | None:
        return self._total

    @property
    def received(self) -> int:
        return len(self._payload)

    def feed(self, frame: RawFrame) -> bool:
        if self._complete:
            raise FrameParseError(
                f"Frame {frame.to_line()} arrived after the {len(self._payload)}-byte message completed"
            )
        if frame.kind == SINGLE_FRAME:
            if self._total is not None:
                raise FrameParseError("Single frame received inside a multi-frame message")
            return self._single(frame)
        if frame.kind == FIRST_FRAME:
            if self._total is not None:
                raise FrameParseError("Second first frame received for one message")
            return self._first(frame)
        if frame.kind == CONSECUTIVE_FRAME:
            if self._total is None:
                raise FrameParseError("Consecutive frame received without a first frame")
            return self._consecutive(frame)
        raise FrameParseError(f"Unknown CAN frame type 0x{frame.pci:02X}")

    def result(self) -> bytes:
        if not self._complete:
            if self._total is None:
                raise FrameParseError("No frames received")
            raise FrameParseError(
                f"Incomplete message: received {len(self._payload)} of {self._total} bytes"
            )
        return bytes(self._payload)

    def _single(self, frame: RawFrame) -> bool:
        length = frame.low_nibble
        if length == 0 or length > SINGLE_FRAME_CAPACITY:
            raise FrameParseError(f"Invalid single frame length {length}")
        available = len(frame.data)
        if self._strict_single_frame:
            if length > available:
                raise FrameParseError(
                    f"Single frame declares {length} bytes but carries {available}"
                )
            if available > length:
                LOGGER.debug("Single frame padding dropped: %d of %d bytes kept", length, available)
            self._payload.extend(frame.data[:length])
        else:
            if length != available:
                LOGGER.warning(
                    "single-frame length mismatch: PCI declares %d bytes, keeping all %d",
                    length,
                    available,
                )
            self._payload.extend(frame.data)
        self._total = len(self._payload)
        self._complete = True
        return True

    def _first(self, frame: RawFrame) -> bool:
        if not frame.data:
            raise FrameParseError("First frame is missing its length byte")
        total = (frame.low_nibble << 8) | frame.data[0]
        if total == 0:
            raise FrameParseError("First frame declares a zero-length message")
        self._total = total
        self._next_index = None
        self._payload.extend(frame.data[1:])
        LOGGER.debug("First frame: expecting %d bytes", total)
        if self._on_first_frame is not None:
            self._on_first_frame(flow_control_frame())
        return self._finish_if_full()

    def _consecutive(self, frame: RawFrame) -> bool:
        index = frame.low_nibble
        if self._next_index is None:
            # ISO-TP starts at 1; some captures number from 0.
            if index not in (0, 1):
                raise FrameParseError(f"First consecutive frame has sequence index {index}")
        elif index != self._next_index:
            raise FrameParseError(
                f"Consecutive frame sequence gap: expected {self._next_index}, got {index}"
            )
        self._next_index = (index + 1) % 16
        self._payload.extend(frame.data)
        return self._finish_if_full()

    def _finish_if_full(self) -> bool:
        assert self._total is not None
        if len(self._payload) >= self._total:
            del self._payload[self._total :]
            self._complete = True
        return self._complete


def reassemble(
    frames: Iterable[RawFrame],
    *,
    on_first_frame: Callable[[bytes], None] | None = None,
    strict_single_frame: bool = True,
) -> bytes:
    reassembler = FrameReassembler(
        on_first_frame=on_first_frame,
        strict_single_frame=strict_single_frame,
    )
    for frame in frames:
        reassembler.feed(frame)
    return reassembler.result()


def segment(payload: bytes, *, can_id: int = 0x7BB) -> list[RawFrame]:
    """Split a payload into single/first/consecutive frames."""
    if not payload:
        raise ValueError("payload must not be empty")
    if len(payload) > MAX_MESSAGE_LENGTH:
        raise ValueError(f"payload exceeds {MAX_MESSAGE_LENGTH} bytes")
    header = can_id.to_bytes(HEADER_BYTES, "big")
    if len(payload) <= SINGLE_FRAME_CAPACITY:
        return [RawFrame(header=header, pci=len(payload), data=bytes(payload))]

    length = len(payload)
    frames = [
        RawFrame(
            header=header,
            pci=(FIRST_FRAME << 4) | (length >> 8),
            data=bytes([length & 0xFF]) + payload[:FIRST_FRAME_CAPACITY],
        )
    ]
    index = 1
    for offset in range(FIRST_FRAME_CAPACITY, length, CONSECUTIVE_FRAME_CAPACITY):
        chunk = payload[offset : offset + CONSECUTIVE_FRAME_CAPACITY]
        frames.append(RawFrame(header=header, pci=(CONSECUTIVE_FRAME << 4) | index, data=bytes(chunk)))
        index = (index + 1) % 16
    return frames
