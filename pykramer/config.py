import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from pykramer.const import (
    Capability,
    DisconnectDialect,
    ProtocolVariant,
    RouteDialect,
    TransportKind,
)
from pykramer.exceptions import ConfigurationError

_LOGGER = logging.getLogger(__name__)

# Snapshot keys for each capability count (empty string means "auto-detect")
_COUNT_KEYS = {
    Capability.INPUTS: "inputCount",
    Capability.OUTPUTS: "outputCount",
    Capability.PRESETS: "setupsCount",
}


@dataclass
class MatrixConfig:
    """Connection and dialect settings for one matrix.

    Counts left as None are auto-detected from the matrix when the
    connection is established.
    """
    host: str = ""
    port: int = 5000
    transport: TransportKind = TransportKind.STREAM
    protocol: ProtocolVariant = ProtocolVariant.TEXT_LINE
    input_count: Optional[int] = None
    output_count: Optional[int] = None
    preset_count: Optional[int] = None
    route_dialect: RouteDialect = RouteDialect.VID
    disconnect_dialect: DisconnectDialect = DisconnectDialect.ZERO
    response_timeout: float = 0.035  # Seconds to wait for a reply before resending
    inter_message_delay: float = 0.0  # Seconds between a reply and the next send
    max_attempts: int = 20
    machine: int = 1
    reconnect_time: float = 5.0
    disable_audio: bool = False

    def count(self, capability: Capability) -> Optional[int]:
        if capability is Capability.INPUTS:
            return self.input_count
        if capability is Capability.OUTPUTS:
            return self.output_count
        return self.preset_count

    def set_count(self, capability: Capability, value: Optional[int]):
        if capability is Capability.INPUTS:
            self.input_count = value
        elif capability is Capability.OUTPUTS:
            self.output_count = value
        else:
            self.preset_count = value

    def missing_capabilities(self) -> list[Capability]:
        """Capabilities whose count must be detected from the matrix."""
        return [capability for capability in Capability if self.count(capability) is None]

    def to_dict(self) -> dict[str, Any]:
        data = {
            "host": self.host,
            "port": str(self.port),
            "connectionProtocol": self.transport.value,
            "protocol": self.protocol.value,
            "customizeRoute": self.route_dialect.value,
            "customizeDisconnect": self.disconnect_dialect.value,
            "responseTimeout": int(round(self.response_timeout * 1000)),
            "messageTimeout": int(round(self.inter_message_delay * 1000)),
            "maxAttempts": self.max_attempts,
            "machine": self.machine,
            "reconnectTime": self.reconnect_time,
            "disableAudio": self.disable_audio,
        }
        for capability, key in _COUNT_KEYS.items():
            value = self.count(capability)
            data[key] = "" if value is None else str(value)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MatrixConfig":
        """Build a config from a snapshot dictionary.

        Timing values are stored in milliseconds, as the matrix configuration
        screens present them.
        """
        config = cls()
        try:
            config.host = str(data.get("host", config.host))
            config.port = int(data.get("port", config.port))
            config.transport = TransportKind(data.get("connectionProtocol", config.transport.value))
            config.protocol = ProtocolVariant(data.get("protocol", config.protocol.value))
            config.route_dialect = RouteDialect(data.get("customizeRoute", config.route_dialect.value))
            config.disconnect_dialect = DisconnectDialect(
                data.get("customizeDisconnect", config.disconnect_dialect.value)
            )
            if "responseTimeout" in data:
                config.response_timeout = float(data["responseTimeout"]) / 1000
            if "messageTimeout" in data:
                config.inter_message_delay = float(data["messageTimeout"]) / 1000
            config.max_attempts = int(data.get("maxAttempts", config.max_attempts))
            config.machine = int(data.get("machine", config.machine))
            config.reconnect_time = float(data.get("reconnectTime", config.reconnect_time))
            config.disable_audio = bool(data.get("disableAudio", config.disable_audio))
            for capability, key in _COUNT_KEYS.items():
                value = data.get(key)
                if value is None or str(value).strip() == "":
                    config.set_count(capability, None)
                else:
                    config.set_count(capability, int(value))
        except ValueError as e:
            raise ConfigurationError(f"Invalid matrix configuration: {e}") from e

        if config.max_attempts < 1:
            raise ConfigurationError(f"maxAttempts must be at least 1, got {config.max_attempts}")
        if config.response_timeout <= 0:
            raise ConfigurationError("responseTimeout must be positive")
        return config

    @classmethod
    def load(cls, path) -> "MatrixConfig":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def save(self, path):
        """Persist the configuration, including detected counts, as JSON."""
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        _LOGGER.info(f"Saved matrix configuration to {path}")
