import logging
from typing import Optional

from pykramer.const import MAX_ENDPOINT_COUNT, MIN_ENDPOINT_COUNT, SENTINEL_ID, Medium


class Input:
    """A matrix input and the outputs it currently feeds."""
    def __init__(self, input_id: int, label: str):
        self._id = input_id
        self._label = label
        self._video_destinations: set[int] = set()
        self._audio_destinations: set[int] = set()

    @property
    def id(self) -> int:
        return self._id

    @property
    def label(self) -> str:
        return self._label

    @property
    def video_destinations(self) -> frozenset[int]:
        """Outputs receiving this input's video."""
        return frozenset(self._video_destinations)

    @property
    def audio_destinations(self) -> frozenset[int]:
        """Outputs receiving this input's audio."""
        return frozenset(self._audio_destinations)

    def _destinations(self, medium: Medium) -> set[int]:
        return self._video_destinations if medium is Medium.VIDEO else self._audio_destinations


class Output:
    """A matrix output and its current sources (None until reported)."""
    def __init__(self, output_id: int, label: str):
        self._id = output_id
        self._label = label
        self._video_source: Optional[int] = None
        self._audio_source: Optional[int] = None

    @property
    def id(self) -> int:
        return self._id

    @property
    def label(self) -> str:
        return self._label

    @property
    def video_source(self) -> Optional[int]:
        return self._video_source

    @property
    def audio_source(self) -> Optional[int]:
        return self._audio_source

    def source(self, medium: Medium) -> Optional[int]:
        return self._video_source if medium is Medium.VIDEO else self._audio_source

    def _set_source(self, medium: Medium, source: int):
        if medium is Medium.VIDEO:
            self._video_source = source
        else:
            self._audio_source = source


class Preset:
    def __init__(self, preset_id: int, label: str):
        self._id = preset_id
        self._label = label

    @property
    def id(self) -> int:
        return self._id

    @property
    def label(self) -> str:
        return self._label


def clamp_count(count: Optional[int]) -> int:
    """Clamp a capability count into the supported range; unknown counts as the minimum."""
    if count is None:
        return MIN_ENDPOINT_COUNT
    return min(MAX_ENDPOINT_COUNT, max(MIN_ENDPOINT_COUNT, int(count)))


class RoutingMatrix:
    """In-memory routing state of the matrix.

    Mutated only from the session's response path: rebuilt wholesale when the
    capability counts are known, then updated one route change at a time.
    Not safe for concurrent use.
    """

    def __init__(self):
        self._logger = logging.getLogger(__name__)
        self.inputs: dict[int, Input] = {}
        self.outputs: dict[int, Output] = {}
        self.presets: dict[int, Preset] = {}
        self.rebuild(None, None, None)

    def rebuild(self, input_count: Optional[int], output_count: Optional[int], preset_count: Optional[int]):
        """Replace every endpoint and preset, clamping each count into [1, 64]."""
        input_count = clamp_count(input_count)
        output_count = clamp_count(output_count)
        preset_count = clamp_count(preset_count)
        self._logger.debug(
            f"Initializing routing matrix: {input_count} inputs, {output_count} outputs, {preset_count} presets"
        )

        self.inputs = {SENTINEL_ID: Input(SENTINEL_ID, "Off")}
        self.outputs = {SENTINEL_ID: Output(SENTINEL_ID, "All")}
        self.presets = {}
        for i in range(1, input_count + 1):
            self.inputs[i] = Input(i, f"Input {i}")
        for i in range(1, output_count + 1):
            self.outputs[i] = Output(i, f"Output {i}")
        for i in range(1, preset_count + 1):
            self.presets[i] = Preset(i, f"Preset {i}")

    @property
    def input_count(self) -> int:
        return len(self.inputs) - 1

    @property
    def output_count(self) -> int:
        return len(self.outputs) - 1

    def apply_route_changed(self, medium: Medium, source: int, destination: int) -> list[int]:
        """Record that ``source`` now feeds ``destination`` for ``medium``.

        Source 0, or any source that is not a known input (such as an
        "inputs + 1" disconnect token), disconnects the output. Destination 0
        means every output.

        Returns:
            The ids of the outputs that were updated.
        """
        if source not in self.inputs:
            self._logger.debug(f"Source {source} is not a known input, treating as disconnect")
            source = SENTINEL_ID

        if destination == SENTINEL_ID:
            destinations = [output_id for output_id in self.outputs if output_id != SENTINEL_ID]
        elif destination in self.outputs:
            destinations = [destination]
        else:
            self._logger.warning(f"Ignoring {medium.value} route to unknown output {destination}")
            return []

        for output_id in destinations:
            output = self.outputs[output_id]
            previous = output.source(medium)
            if previous is not None and previous in self.inputs:
                self.inputs[previous]._destinations(medium).discard(output_id)
            output._set_source(medium, source)
            if source != SENTINEL_ID:
                self.inputs[source]._destinations(medium).add(output_id)
        return destinations

    def current_video_source(self, output_id: int) -> Optional[int]:
        output = self.outputs.get(output_id)
        return output.video_source if output else None

    def current_audio_source(self, output_id: int) -> Optional[int]:
        output = self.outputs.get(output_id)
        return output.audio_source if output else None

    def destinations_of(self, input_id: int, medium: Medium) -> frozenset[int]:
        """Outputs currently receiving ``medium`` from the given input."""
        source = self.inputs.get(input_id)
        if source is None:
            return frozenset()
        return frozenset(source._destinations(medium))
