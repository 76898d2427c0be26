"""Response parser: raw wire messages to typed events.

Every message decodes to exactly one event and never raises, so a malformed
reply can not take the connection down. Each message also completes exactly
one exchange in the transport queue; that is the caller's job.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from pykramer.codec import (
    AUDIO_LAYER,
    FRAME_SIZE,
    MSB,
    OPCODE_DEFINE_MACHINE,
    OPCODE_ERROR,
    OPCODE_REQUEST_AUDIO_STATUS,
    OPCODE_REQUEST_VIDEO_STATUS,
    OPCODE_SWITCH_AUDIO,
    OPCODE_SWITCH_VIDEO,
    PARAM_MASK,
    VIDEO_LAYER,
    Command,
)
from pykramer.const import Capability, Instruction, Medium, ProtocolVariant

# A reply sets the second most significant bit of the opcode it answers
RESPONSE_FLAG = 0x40

# Protocol 3000 reply: ~01@COMMAND PARAMETERS
TEXT_RESPONSE = re.compile(r"^~(\d+)@([\w-]+)\s?(.*)$")

# INFO-IO reply parameters: IN 11,OUT 9
INFO_IO_RESPONSE = re.compile(r"IN\s*(\d+)\s*,\s*OUT\s*(\d+)", re.IGNORECASE)

# INFO-PRST reply parameters: VID 60,AUD 0 (audio presets are ignored)
INFO_PRST_RESPONSE = re.compile(r"VID\s*(\d+)", re.IGNORECASE)

# VID reply parameters: 3>5, optionally followed by OK
VID_RESPONSE = re.compile(r"^(\d+)>(\d+|\*)")

# ROUTE reply parameters: layer,output,input
ROUTE_RESPONSE = re.compile(r"^(\d+),(\d+|\*),(\d+)")

# Error token: ~01@VID 3>5 ERR 004 or ~01@ERR 002
ERROR_TOKEN = re.compile(r"\bERR\s*(\d+)?", re.IGNORECASE)

_STATUS_OPCODES = {
    OPCODE_REQUEST_VIDEO_STATUS: (Medium.VIDEO, Instruction.REQUEST_VIDEO_STATUS),
    OPCODE_REQUEST_AUDIO_STATUS: (Medium.AUDIO, Instruction.REQUEST_AUDIO_STATUS),
}

_LAYERS = {
    VIDEO_LAYER: Medium.VIDEO,
    AUDIO_LAYER: Medium.AUDIO,
}


@dataclass(frozen=True)
class CapabilityDetected:
    kind: Capability
    count: int


@dataclass(frozen=True)
class IoCountsDetected:
    """Protocol 3000 reports inputs and outputs in one reply."""
    inputs: int
    outputs: int


@dataclass(frozen=True)
class RouteChanged:
    medium: Medium
    source: int
    destination: int


@dataclass(frozen=True)
class ProtocolError:
    """The matrix reported an error; the exchange is still complete."""
    message: str
    code: Optional[int] = None


@dataclass(frozen=True)
class Unrecognized:
    message: str


@dataclass(frozen=True)
class ParseError:
    message: str
    reason: str


ResponseEvent = Union[CapabilityDetected, IoCountsDetected, RouteChanged, ProtocolError, Unrecognized, ParseError]


class ResponseParser:
    """Decodes replies for one protocol variant."""

    def __init__(self, variant: ProtocolVariant):
        self._variant = variant
        self._logger = logging.getLogger(__name__)

    def parse(self, message: Union[bytes, str], head: Optional[Command] = None) -> ResponseEvent:
        """Decode one message.

        Args:
            message: One binary frame, or one text line without its terminator
            head: The command currently outstanding in the transport queue.
                Binary status replies do not carry the output they describe;
                it is read from this command.
        """
        if self._variant is ProtocolVariant.BINARY_FIXED:
            if isinstance(message, str):
                message = message.encode("latin-1")
            return self._parse_binary(bytes(message), head)
        if isinstance(message, bytes):
            message = message.decode("ascii", errors="replace")
        return self._parse_text(message.strip())

    # ========== Protocol 2000 ==========

    def _parse_binary(self, frame: bytes, head: Optional[Command]) -> ResponseEvent:
        described = ",".join(f"{byte:x}" for byte in frame)
        if len(frame) != FRAME_SIZE:
            return ParseError(described, f"expected {FRAME_SIZE} bytes, got {len(frame)}")
        if frame[0] & MSB:
            return ParseError(described, "first byte is not an opcode")

        opcode = frame[0] & ~RESPONSE_FLAG & PARAM_MASK
        param_a = frame[1] & PARAM_MASK
        param_b = frame[2] & PARAM_MASK

        if opcode == OPCODE_DEFINE_MACHINE:
            try:
                kind = Capability(param_a)
            except ValueError:
                return Unrecognized(described)
            return CapabilityDetected(kind, param_b)

        if opcode == OPCODE_ERROR:
            return ProtocolError(described)

        if opcode == OPCODE_SWITCH_VIDEO:
            return RouteChanged(Medium.VIDEO, param_a, param_b)

        if opcode == OPCODE_SWITCH_AUDIO:
            return RouteChanged(Medium.AUDIO, param_a, param_b)

        if opcode in _STATUS_OPCODES:
            medium, instruction = _STATUS_OPCODES[opcode]
            # The output is only known from the request; a reply that does not
            # answer the outstanding request (a late reply to a dropped one) is
            # not attributed to whatever command happens to be outstanding now.
            if head is None or head.instruction is not instruction:
                self._logger.warning(f"Status reply {described} does not match outstanding command {head}")
                return Unrecognized(described)
            return RouteChanged(medium, param_b, head.param_b)

        return Unrecognized(described)

    # ========== Protocol 3000 ==========

    def _parse_text(self, line: str) -> ResponseEvent:
        response = TEXT_RESPONSE.match(line)
        if response is None:
            return ParseError(line, "not a ~station@COMMAND reply")

        command = response.group(2).upper()
        params = response.group(3).strip()

        error = ERROR_TOKEN.search(params)
        if command == "ERR" or error:
            code_text = params if command == "ERR" else error.group(1)
            try:
                code = int(code_text) if code_text else None
            except ValueError:
                code = None
            return ProtocolError(line, code)

        if command == "INFO-IO":
            io = INFO_IO_RESPONSE.search(params)
            if io is None:
                return ParseError(line, "input/output counts missing")
            return IoCountsDetected(int(io.group(1)), int(io.group(2)))

        if command == "INFO-PRST":
            presets = INFO_PRST_RESPONSE.search(params)
            if presets is None:
                return ParseError(line, "video preset count missing")
            return CapabilityDetected(Capability.PRESETS, int(presets.group(1)))

        if command == "VID":
            route = VID_RESPONSE.match(params)
            if route is None:
                return ParseError(line, "expected <input>><output>")
            return RouteChanged(Medium.VIDEO, int(route.group(1)), _destination(route.group(2)))

        if command == "ROUTE":
            route = ROUTE_RESPONSE.match(params)
            if route is None:
                return ParseError(line, "expected <layer>,<output>,<input>")
            medium = _LAYERS.get(int(route.group(1)))
            if medium is None:
                return Unrecognized(line)
            return RouteChanged(medium, int(route.group(3)), _destination(route.group(2)))

        return Unrecognized(line)


def _destination(token: str) -> int:
    return 0 if token == "*" else int(token)


class MessageSplitter:
    """Splits a received byte stream into individual replies.

    Several replies can arrive in a single read, and one reply can be split
    across reads. Binary replies are fixed 4-byte frames; text replies end in
    ``\\r\\n``.
    """

    def __init__(self, variant: ProtocolVariant):
        self._variant = variant
        self._buffer = b""
        self._logger = logging.getLogger(__name__)

    def reset(self):
        self._buffer = b""

    def feed(self, data: bytes, final: bool = False) -> list[Union[bytes, str]]:
        """Add received data and return every complete message.

        Args:
            data: Bytes as read from the transport
            final: The data ends a message (datagram transports), so any
                remainder is returned rather than held for the next read
        """
        self._buffer += data
        if self._variant is ProtocolVariant.BINARY_FIXED:
            return self._split_frames(final)
        return self._split_lines(final)

    def _split_frames(self, final: bool) -> list[Union[bytes, str]]:
        frames = []
        while self._buffer:
            # A frame is one opcode byte (top bit clear) then three parameter
            # bytes (top bit set); skip to the next candidate opcode otherwise
            if self._buffer[0] & MSB:
                self._discard(1)
                continue
            available = self._buffer[1:FRAME_SIZE]
            stray = next((i for i, byte in enumerate(available, start=1) if not byte & MSB), None)
            if stray is not None:
                self._discard(stray)
                continue
            if len(self._buffer) < FRAME_SIZE:
                break
            frames.append(self._buffer[:FRAME_SIZE])
            self._buffer = self._buffer[FRAME_SIZE:]
        if final and self._buffer:
            frames.append(self._buffer)
            self._buffer = b""
        return frames

    def _discard(self, count: int):
        dropped = ",".join(f"{byte:x}" for byte in self._buffer[:count])
        self._logger.warning(f"RECV: Discarding {dropped} to resynchronise on the next frame")
        self._buffer = self._buffer[count:]

    def _split_lines(self, final: bool) -> list[Union[bytes, str]]:
        *complete, remainder = self._buffer.split(b"\r\n")
        self._buffer = remainder
        if final:
            complete.append(remainder)
            self._buffer = b""
        lines = []
        for raw in complete:
            line = raw.decode("ascii", errors="replace").strip()
            if line:
                lines.append(line)
        return lines
