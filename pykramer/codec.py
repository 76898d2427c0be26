"""Command codec: logical instructions to wire payloads.

Two wire variants are supported:

Protocol 2000 (binary), one 4-byte frame per command::

    +---------+-------------+-------------+--------------+
    | opcode  | 0x80|param A | 0x80|param B | 0x80|machine |
    +---------+-------------+-------------+--------------+

The top bit of the last three bytes is always set; it is what separates
parameter bytes from an opcode byte on the wire.

Protocol 3000 (ASCII), one line per command terminated by a single ``\\r``,
for example ``#VID 3>5`` or ``#ROUTE 0,5,3``.
"""

from dataclasses import dataclass
from typing import Optional

from pykramer.const import (
    Capability,
    DisconnectDialect,
    Instruction,
    ProtocolVariant,
    RouteDialect,
)
from pykramer.exceptions import ConfigurationError

# Protocol 2000 opcodes
OPCODE_SWITCH_VIDEO = 1
OPCODE_SWITCH_AUDIO = 2
OPCODE_STORE_SETUP = 3
OPCODE_RECALL_SETUP = 4
OPCODE_REQUEST_VIDEO_STATUS = 5
OPCODE_REQUEST_AUDIO_STATUS = 6
OPCODE_ERROR = 16
OPCODE_FRONT_PANEL = 30
OPCODE_DEFINE_MACHINE = 62

MSB = 0x80
PARAM_MASK = 0x7F
FRAME_SIZE = 4

# Second parameter of the store-setup opcode selects store or delete
_STORE = 0
_DELETE = 1

# Protocol 3000 tokens
ALL_OUTPUTS = "*"
LINE_TERMINATOR = "\r"
VIDEO_LAYER = 0
AUDIO_LAYER = 1

_BINARY_OPCODES = {
    Instruction.SWITCH_VIDEO: OPCODE_SWITCH_VIDEO,
    Instruction.SWITCH_AUDIO: OPCODE_SWITCH_AUDIO,
    Instruction.STORE_SETUP: OPCODE_STORE_SETUP,
    Instruction.DELETE_SETUP: OPCODE_STORE_SETUP,
    Instruction.RECALL_SETUP: OPCODE_RECALL_SETUP,
    Instruction.REQUEST_VIDEO_STATUS: OPCODE_REQUEST_VIDEO_STATUS,
    Instruction.REQUEST_AUDIO_STATUS: OPCODE_REQUEST_AUDIO_STATUS,
    Instruction.FRONT_PANEL_LOCK: OPCODE_FRONT_PANEL,
    Instruction.CAPABILITY_QUERY: OPCODE_DEFINE_MACHINE,
}


@dataclass(frozen=True)
class Command:
    """An encoded command, ready to be written to the matrix."""

    instruction: Instruction
    param_a: int
    param_b: int
    payload: bytes
    variant: ProtocolVariant
    capability: Optional[Capability] = None

    def describe(self) -> str:
        """Render the payload in a form a human can diagnose from a log."""
        if self.variant is ProtocolVariant.BINARY_FIXED:
            return ",".join(f"{byte:x}" for byte in self.payload)
        return repr(self.payload.decode("ascii", errors="replace"))

    def __repr__(self) -> str:
        return f"Command({self.instruction.name}, a={self.param_a}, b={self.param_b}, payload={self.describe()})"


class CommandCodec:
    """Builds wire payloads for one protocol variant and dialect.

    Parameter convention for ``build``:

    - switch instructions: ``param_a`` is the input, ``param_b`` the output
      (0 = all outputs; input 0 disconnects)
    - store/recall/delete setup: ``param_a`` is the preset number
    - front panel lock: ``param_a`` is 1 to lock, 0 to unlock
    - status requests: ``param_b`` is the output
    - capability query: ``param_a`` is the ``Capability``
    """

    def __init__(
        self,
        variant: ProtocolVariant,
        route_dialect: RouteDialect = RouteDialect.VID,
        disconnect_dialect: DisconnectDialect = DisconnectDialect.ZERO,
        machine: int = 1,
    ):
        self._variant = variant
        self._route_dialect = route_dialect
        self._disconnect_dialect = disconnect_dialect
        self._machine = machine

    @property
    def variant(self) -> ProtocolVariant:
        return self._variant

    def build(
        self,
        instruction: Instruction,
        param_a: int = 0,
        param_b: int = 0,
        input_count: Optional[int] = None,
    ) -> Command:
        """Encode one instruction.

        Args:
            instruction: What to do
            param_a: First parameter (see class docstring)
            param_b: Second parameter (see class docstring)
            input_count: Known number of inputs, needed by the ``+1`` disconnect dialect

        Raises:
            ConfigurationError: The instruction has no wire form under the
                active variant/dialect, or a parameter is out of range.
        """
        param_a = int(param_a)
        param_b = int(param_b)
        capability = None
        if instruction is Instruction.CAPABILITY_QUERY:
            try:
                capability = Capability(param_a)
            except ValueError:
                raise ConfigurationError(f"Unknown capability {param_a}") from None

        if self._variant is ProtocolVariant.BINARY_FIXED:
            payload = self._build_binary(instruction, param_a, param_b)
        else:
            payload = self._build_text(instruction, param_a, param_b, input_count).encode("ascii")

        return Command(
            instruction=instruction,
            param_a=param_a,
            param_b=param_b,
            payload=payload,
            variant=self._variant,
            capability=capability,
        )

    # ========== Protocol 2000 ==========

    def _build_binary(self, instruction: Instruction, param_a: int, param_b: int) -> bytes:
        opcode = _BINARY_OPCODES[instruction]
        if instruction is Instruction.STORE_SETUP:
            param_b = _STORE
        elif instruction is Instruction.DELETE_SETUP:
            param_b = _DELETE
        elif instruction is Instruction.CAPABILITY_QUERY:
            param_b = 1
        elif instruction in (Instruction.REQUEST_VIDEO_STATUS, Instruction.REQUEST_AUDIO_STATUS):
            param_a = 0

        for name, value in (("parameter A", param_a), ("parameter B", param_b), ("machine", self._machine)):
            if not (0 <= value <= PARAM_MASK):
                raise ConfigurationError(
                    f"{instruction.name}: {name} {value} does not fit in 7 bits (0-{PARAM_MASK})"
                )
        return bytes([opcode, MSB | param_a, MSB | param_b, MSB | self._machine])

    # ========== Protocol 3000 ==========

    def _build_text(
        self, instruction: Instruction, param_a: int, param_b: int, input_count: Optional[int]
    ) -> str:
        route = self._route_dialect is RouteDialect.ROUTE

        if instruction is Instruction.CAPABILITY_QUERY:
            # Inputs and outputs share one query in Protocol 3000
            if param_a == Capability.PRESETS:
                line = "#INFO-PRST?"
            else:
                line = "#INFO-IO?"

        elif instruction is Instruction.SWITCH_VIDEO:
            source = self._source_token(param_a, input_count)
            destination = self._destination_token(param_b)
            if route:
                line = f"#ROUTE {VIDEO_LAYER},{destination},{source}"
            else:
                line = f"#VID {source}>{destination}"

        elif instruction is Instruction.SWITCH_AUDIO:
            if not route:
                raise ConfigurationError("Audio can only be switched using the #ROUTE command")
            source = self._source_token(param_a, input_count)
            destination = self._destination_token(param_b)
            line = f"#ROUTE {AUDIO_LAYER},{destination},{source}"

        elif instruction is Instruction.REQUEST_VIDEO_STATUS:
            destination = self._destination_token(param_b)
            if route:
                line = f"#ROUTE? {VIDEO_LAYER},{destination}"
            else:
                line = f"#VID? {destination}"

        elif instruction is Instruction.REQUEST_AUDIO_STATUS:
            if not route:
                raise ConfigurationError("Audio status can only be requested using the #ROUTE command")
            line = f"#ROUTE? {AUDIO_LAYER},{self._destination_token(param_b)}"

        elif instruction is Instruction.STORE_SETUP:
            line = f"#PRST-STO {param_a}"

        elif instruction is Instruction.RECALL_SETUP:
            line = f"#PRST-RCL {param_a}"

        elif instruction is Instruction.FRONT_PANEL_LOCK:
            line = f"#LOCK-FP {param_a}"

        else:
            raise ConfigurationError("Deleting presets is not supported on Protocol 3000 matrices")

        return line + LINE_TERMINATOR

    def _source_token(self, source: int, input_count: Optional[int]) -> str:
        if source != 0:
            return str(source)
        if self._disconnect_dialect is DisconnectDialect.INPUTS_PLUS_ONE:
            if input_count is None:
                raise ConfigurationError("Disconnect token 'inputs+1' needs a known input count")
            return str(input_count + 1)
        return "0"

    @staticmethod
    def _destination_token(destination: int) -> str:
        return ALL_OUTPUTS if destination == 0 else str(destination)
