"""Kramer matrix session.

One ``KramerMatrix`` per matrix connection ties the pieces together:

- builds commands with the codec and queues them (fire and forget)
- feeds received data through the splitter and parser, with the outstanding
  command as context
- applies decoded events to the routing state and the capability handshake
- advances the transport queue once per reply
- reacts to connection state changes from the MatrixConnection

Everything runs on one asyncio event loop.
"""

import logging
from typing import Optional, Union

from pykramer.capabilities import CapabilityCoordinator
from pykramer.codec import Command, CommandCodec
from pykramer.config import MatrixConfig
from pykramer.connection import MatrixConnection
from pykramer.const import Capability, ConnectionState, Instruction, Medium, ProtocolVariant, TransportKind
from pykramer.exceptions import ConfigurationError
from pykramer.listener import ConnectionListener, MatrixListener, MultiplexingListener
from pykramer.parser import (
    CapabilityDetected,
    IoCountsDetected,
    MessageSplitter,
    ParseError,
    ProtocolError,
    ResponseParser,
    RouteChanged,
)
from pykramer.routing import RoutingMatrix, clamp_count
from pykramer.transport import TransportQueue


class MatrixConnectionListener(ConnectionListener):
    """Forwards connection events to the matrix session."""

    def __init__(self, matrix: "KramerMatrix"):
        self._matrix = matrix

    def state_changed(self, state: ConnectionState):
        self._matrix._on_state_changed(state)

    def data_received(self, data: bytes):
        self._matrix._on_data_received(data)


class KramerMatrix:
    """Controls one Kramer matrix over Protocol 2000 or Protocol 3000."""

    def __init__(self, config: MatrixConfig, connection=None):
        """Initialize the session.

        Args:
            config: Connection, dialect and timing settings. Counts detected
                from the matrix are written back into it.
            connection: Object with ``send(bytes) -> bool``, ``async_connect()``
                and ``close()``; a MatrixConnection is created when omitted.
        """
        self._config = config
        self._logger = logging.getLogger(__name__)

        self._codec = CommandCodec(
            config.protocol,
            route_dialect=config.route_dialect,
            disconnect_dialect=config.disconnect_dialect,
            machine=config.machine,
        )
        self._parser = ResponseParser(config.protocol)
        self._splitter = MessageSplitter(config.protocol)
        self._routing = RoutingMatrix()
        self._capabilities = CapabilityCoordinator(self._on_capabilities_complete)

        self._multiplex_callback = MultiplexingListener()
        self._connection_listener = MatrixConnectionListener(self)
        if connection is None:
            connection = MatrixConnection(
                config.host,
                config.port,
                self._connection_listener,
                transport_kind=config.transport,
                reconnect_time=config.reconnect_time,
            )
        self._connection = connection

        self._queue = TransportQueue(
            self._connection.send,
            response_timeout=config.response_timeout,
            inter_message_delay=config.inter_message_delay,
            max_attempts=config.max_attempts,
            on_exhausted=self._on_command_exhausted,
            on_send_failed=self._on_send_failed,
        )
        self._connected = False

    # ========== Public API ==========

    @property
    def config(self) -> MatrixConfig:
        return self._config

    @property
    def routing(self) -> RoutingMatrix:
        return self._routing

    @property
    def queue(self) -> TransportQueue:
        return self._queue

    @property
    def connected(self) -> bool:
        return self._connected

    def register_listener(self, listener: MatrixListener):
        """Register external listener for matrix events."""
        self._multiplex_callback.register_listener(listener)

    def unregister_listener(self, listener: MatrixListener):
        self._multiplex_callback.unregister_listener(listener)

    async def async_connect(self):
        """Connect to the matrix; initialization continues once connected."""
        await self._connection.async_connect()

    def close(self):
        """Close the connection and stop reconnection attempts."""
        self._connection.close()
        # A connection object may not report the final state change itself
        if self._connected or self._queue.running:
            self._on_state_changed(ConnectionState.DISCONNECTED)

    def issue(self, instruction: Instruction, param_a: int = 0, param_b: int = 0) -> Command:
        """Queue an instruction for the matrix.

        Returns as soon as the command is queued; its effect is only visible
        through later route changes and queries.

        Raises:
            ConfigurationError: The instruction can not be expressed with the
                configured protocol or dialect. Nothing is queued.
        """
        command = self._codec.build(instruction, param_a, param_b, input_count=self._config.input_count)
        self._queue.enqueue(command)
        return command

    def switch_video(self, input_id: int, output_id: int) -> Command:
        """Route video from an input (0 disconnects) to an output (0 for all outputs)."""
        return self.issue(Instruction.SWITCH_VIDEO, input_id, output_id)

    def switch_audio(self, input_id: int, output_id: int) -> Command:
        return self.issue(Instruction.SWITCH_AUDIO, input_id, output_id)

    def store_setup(self, setup_id: int) -> Command:
        return self.issue(Instruction.STORE_SETUP, setup_id)

    def recall_setup(self, setup_id: int) -> Command:
        return self.issue(Instruction.RECALL_SETUP, setup_id)

    def delete_setup(self, setup_id: int) -> Command:
        return self.issue(Instruction.DELETE_SETUP, setup_id)

    def lock_front_panel(self, locked: bool) -> Command:
        return self.issue(Instruction.FRONT_PANEL_LOCK, 1 if locked else 0)

    def replace_input(self, old_input: int, new_input: int) -> list[Command]:
        """Route video from ``new_input`` to every output currently showing ``old_input``."""
        outputs = sorted(self._routing.destinations_of(old_input, Medium.VIDEO))
        self._logger.debug(f"Routing input {new_input} to outputs {outputs}")
        return self._issue_all([(Instruction.SWITCH_VIDEO, new_input, output_id) for output_id in outputs])

    def take(self, source: int, destination: int, medium: Optional[Medium] = None) -> list[Command]:
        """Route a selected source to a selected destination.

        Audio and video go out as separate commands.

        Args:
            source: Input to route; nothing is sent unless it is above 0
            destination: Output to route to (0 for all outputs)
            medium: Route only this medium; both when omitted

        Raises:
            ConfigurationError: One of the switches can not be expressed with
                the configured dialect. Nothing is queued.
        """
        if source <= 0:
            self._logger.debug(f"Take ignored, no source selected for output {destination}")
            return []
        instructions = []
        if medium in (None, Medium.AUDIO):
            instructions.append(Instruction.SWITCH_AUDIO)
        if medium in (None, Medium.VIDEO):
            instructions.append(Instruction.SWITCH_VIDEO)
        return self._issue_all([(instruction, source, destination) for instruction in instructions])

    def request_video_status(self, output_id: int = 0) -> list[Command]:
        """Ask which input feeds an output's video; output 0 asks for every output."""
        return self._request_status(Instruction.REQUEST_VIDEO_STATUS, output_id)

    def request_audio_status(self, output_id: int = 0) -> list[Command]:
        """Ask which input feeds an output's audio; output 0 asks for every output."""
        return self._request_status(Instruction.REQUEST_AUDIO_STATUS, output_id)

    def current_video_source(self, output_id: int) -> Optional[int]:
        return self._routing.current_video_source(output_id)

    def current_audio_source(self, output_id: int) -> Optional[int]:
        return self._routing.current_audio_source(output_id)

    def destinations_of(self, input_id: int, medium: Medium) -> frozenset[int]:
        return self._routing.destinations_of(input_id, medium)

    # ========== Helpers ==========

    def _issue_all(self, requests: list[tuple[Instruction, int, int]]) -> list[Command]:
        # Every command is built before any is queued, so a refusal queues nothing
        commands = [
            self._codec.build(instruction, param_a, param_b, input_count=self._config.input_count)
            for instruction, param_a, param_b in requests
        ]
        for command in commands:
            self._queue.enqueue(command)
        return commands

    def _request_status(self, instruction: Instruction, output_id: int) -> list[Command]:
        if output_id > 0:
            return [self.issue(instruction, 0, output_id)]
        return self._issue_all([
            (instruction, 0, i)
            for i in range(1, self._routing.output_count + 1)
        ])

    def _request_all_status(self):
        self.request_video_status()
        if self._config.disable_audio:
            return
        try:
            self.request_audio_status()
        except ConfigurationError as e:
            self._logger.info(f"Not requesting audio status: {e}")

    def _rebuild_routing(self):
        self._routing.rebuild(
            self._config.input_count,
            self._config.output_count,
            self._config.preset_count,
        )
        self._multiplex_callback.routing_rebuilt(
            self._routing.input_count,
            self._routing.output_count,
            len(self._routing.presets),
        )

    def _detect_capabilities(self, missing: list[Capability]):
        self._logger.debug(f"Detecting capabilities: {', '.join(c.name.lower() for c in missing)}")
        self._capabilities.begin_round()
        for capabilities in self._detection_requests(missing):
            command = self._codec.build(Instruction.CAPABILITY_QUERY, capabilities[0], 1)
            # Counted before it is queued so a fast reply can not close the round early
            self._capabilities.expect(*capabilities)
            self._queue.enqueue(command)

    def _detection_requests(self, missing: list[Capability]) -> list[tuple[Capability, ...]]:
        """Group missing capabilities by the query that answers them."""
        if self._config.protocol is not ProtocolVariant.TEXT_LINE:
            return [(capability,) for capability in missing]
        # #INFO-IO? reports inputs and outputs together
        io = tuple(c for c in missing if c in (Capability.INPUTS, Capability.OUTPUTS))
        requests = [io] if io else []
        requests.extend((c,) for c in missing if c not in io)
        return requests

    # ========== Connection lifecycle handlers ==========

    def _on_state_changed(self, state: ConnectionState):
        if state is ConnectionState.CONNECTED:
            self._on_connected()
        elif state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            if self._connected or self._queue.running:
                self._on_disconnected()

    def _on_connected(self):
        self._logger.info("Matrix connected")
        self._connected = True
        self._splitter.reset()
        self._queue.start()
        self._multiplex_callback.connected()

        missing = self._config.missing_capabilities()
        if missing:
            # Rebuild and status requests follow once the round completes
            self._detect_capabilities(missing)
        else:
            self._rebuild_routing()
            self._request_all_status()

    def _on_disconnected(self):
        self._logger.info("Matrix disconnected")
        self._connected = False
        self._queue.stop()
        self._splitter.reset()
        self._capabilities.reset()
        self._multiplex_callback.disconnected()

    def _on_send_failed(self):
        if isinstance(self._connection, MatrixConnection):
            self._connection.handle_connection_broken()
        else:
            self._on_disconnected()

    # ========== Response handling ==========

    def _on_data_received(self, data: Union[bytes, str]):
        if isinstance(data, str):
            data = data.encode("ascii", errors="replace")
        final = self._config.transport is TransportKind.DATAGRAM
        for message in self._splitter.feed(data, final=final):
            self._handle_message(message)

    def _handle_message(self, message: Union[bytes, str]):
        head = self._queue.head
        event = self._parser.parse(message, head)
        self._logger.debug(f"RECV: {message!r} -> {event}")

        if isinstance(event, RouteChanged):
            for output_id in self._routing.apply_route_changed(event.medium, event.source, event.destination):
                self._multiplex_callback.route_changed(
                    event.medium, output_id, self._routing.outputs[output_id].source(event.medium)
                )
        elif isinstance(event, CapabilityDetected):
            self._capabilities.record(event.kind, event.count)
        elif isinstance(event, IoCountsDetected):
            self._capabilities.record(Capability.INPUTS, event.inputs)
            self._capabilities.record(Capability.OUTPUTS, event.outputs)
        elif isinstance(event, ProtocolError):
            self._logger.warning(f"Matrix reported an error: {event.message} (in reply to {head})")
            self._multiplex_callback.error(f"Matrix reported an error: {event.message}")
        elif isinstance(event, ParseError):
            self._logger.error(f"Error parsing response: {event.message!r} ({event.reason})")
        else:
            self._logger.debug(f"Unhandled message received: {event.message!r}")

        # Every reply completes the outstanding exchange, whatever it said
        completed = self._queue.complete()
        if completed is not None and completed.capability is not None:
            self._capabilities.resolve(completed.capability)

    def _on_command_exhausted(self, command: Command):
        self._multiplex_callback.error(f"No response from matrix for {command.describe()}")
        if command.capability is not None:
            # Detection must not stay blocked on a matrix that never answers
            self._capabilities.resolve(command.capability)

    def _on_capabilities_complete(self, detected: dict[Capability, int]):
        for capability, count in detected.items():
            self._config.set_count(capability, count)
        for capability in self._config.missing_capabilities():
            self._logger.warning(
                f"{capability.name.capitalize()} count was not detected, using {clamp_count(None)}"
            )
        self._rebuild_routing()
        self._multiplex_callback.capabilities_detected(detected)
        self._request_all_status()
