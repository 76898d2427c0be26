from abc import ABC, abstractmethod
from typing import List
import logging

from pykramer.const import Capability, ConnectionState, Medium


class ConnectionListener(ABC):
    """Receives events from a MatrixConnection."""

    @abstractmethod
    def state_changed(self, state: ConnectionState):
        pass

    @abstractmethod
    def data_received(self, data: bytes):
        pass


class MatrixListener(ABC):
    """Receives matrix events from a KramerMatrix."""

    @abstractmethod
    def connected(self):
        pass

    @abstractmethod
    def disconnected(self):
        pass

    @abstractmethod
    def route_changed(self, medium: Medium, output_id: int, input_id: int):
        """Called for each output whose source changed."""
        pass

    def routing_rebuilt(self, input_count: int, output_count: int, preset_count: int):
        """Called when the inputs/outputs/presets collections were replaced."""
        pass

    def capabilities_detected(self, counts: dict[Capability, int]):
        """Called once per detection round with the counts the matrix reported.

        Override to persist them.
        """
        pass

    def error(self, error_message: str):
        # By default, do nothing but can be overwritten to be notified of these messages.
        pass


class MultiplexingListener(MatrixListener):

    _listeners: List[MatrixListener]

    def __init__(self):
        self._listeners = []
        self._logger = logging.getLogger(__name__)

    def _dispatch(self, method: str, *args):
        # One failing listener must not stop the others or the response path
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(*args)
            except Exception as e:
                self._logger.error(f"Exception in {method}() callback: {e}", exc_info=True)

    def connected(self):
        self._dispatch("connected")

    def disconnected(self):
        self._dispatch("disconnected")

    def route_changed(self, medium: Medium, output_id: int, input_id: int):
        self._dispatch("route_changed", medium, output_id, input_id)

    def routing_rebuilt(self, input_count: int, output_count: int, preset_count: int):
        self._dispatch("routing_rebuilt", input_count, output_count, preset_count)

    def capabilities_detected(self, counts: dict[Capability, int]):
        self._dispatch("capabilities_detected", counts)

    def error(self, error_message: str):
        self._dispatch("error", error_message)

    def register_listener(self, listener: MatrixListener):
        self._listeners.append(listener)

    def unregister_listener(self, listener: MatrixListener):
        if listener in self._listeners:
            self._listeners.remove(listener)
        else:
            self._logger.info("Listener isn't registered")


class LoggingListener(MatrixListener):

    def __init__(self, logger = logging):
        self.logger = logger

    def connected(self):
        self.logger.info("Connected")

    def disconnected(self):
        self.logger.info("Disconnected")

    def route_changed(self, medium: Medium, output_id: int, input_id: int):
        self.logger.info(f"Output {output_id} {medium.value} changed to input: {input_id}")

    def routing_rebuilt(self, input_count: int, output_count: int, preset_count: int):
        self.logger.info(f"Routing matrix: {input_count} inputs, {output_count} outputs, {preset_count} presets")

    def capabilities_detected(self, counts: dict[Capability, int]):
        detected = ", ".join(f"{count} {capability.name.lower()}" for capability, count in counts.items())
        self.logger.info(f"Detected: {detected or 'nothing'}")

    def error(self, error_message: str):
        self.logger.warning(f"Matrix error: {error_message}")
