import logging
from typing import Callable

from pykramer.const import Capability


class CapabilityCoordinator:
    """Counts the outstanding capability detection requests of a round.

    The session calls ``expect`` before enqueueing each detection command and
    ``resolve`` once that command completes, whether it was answered, refused
    or dropped after its retries ran out. When the tally returns to zero the
    round closes and ``on_complete`` receives the counts detected in it,
    exactly once per round.
    """

    def __init__(self, on_complete: Callable[[dict[Capability, int]], None]):
        self._logger = logging.getLogger(__name__)
        self._on_complete = on_complete
        self._tally: int = 0
        self._round_open: bool = False
        self._requested: set[Capability] = set()
        self._detected: dict[Capability, int] = {}

    @property
    def tally(self) -> int:
        return self._tally

    @property
    def round_open(self) -> bool:
        return self._round_open

    @property
    def detected(self) -> dict[Capability, int]:
        return dict(self._detected)

    def begin_round(self):
        self._tally = 0
        self._requested.clear()
        self._detected.clear()
        self._round_open = True
        self._logger.debug("Capability detection round started")

    def expect(self, *capabilities: Capability):
        """Count one detection request, answering every given capability."""
        if not self._round_open:
            self.begin_round()
        self._tally += 1
        self._requested.update(capabilities)
        names = " and ".join(c.name.lower() for c in capabilities)
        self._logger.debug(f"Detecting {names}, waiting for {self._tally} responses")

    def record(self, kind: Capability, count: int) -> bool:
        """Keep a detected count if this round asked for it."""
        if not self._round_open or kind not in self._requested:
            self._logger.debug(f"Ignoring unrequested {kind.name.lower()} count {count}")
            return False
        self._logger.info(f"Detected: {count} {kind.name.lower()}.")
        self._detected[kind] = count
        return True

    def resolve(self, capability: Capability):
        """One detection command finished; close the round when none remain."""
        if not self._round_open:
            return
        self._tally = max(0, self._tally - 1)
        if self._tally == 0:
            self._round_open = False
            detected = dict(self._detected)
            missing = self._requested.difference(detected)
            if missing:
                self._logger.warning(
                    f"Capability detection finished without {', '.join(sorted(c.name.lower() for c in missing))}"
                )
            self._on_complete(detected)

    def reset(self):
        """Abandon the current round, e.g. when the connection drops."""
        if self._round_open:
            self._logger.debug(f"Abandoning capability detection round with {self._tally} responses outstanding")
        self._tally = 0
        self._round_open = False
        self._requested.clear()
        self._detected.clear()
