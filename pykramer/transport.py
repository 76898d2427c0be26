import asyncio
import logging
from asyncio import Queue, Task
from typing import Any, Callable, Optional

from pykramer.codec import Command


class PendingCommand:
    """The command at the head of the queue and how often it has been sent."""
    def __init__(self, command: Command):
        self.command = command
        self.attempts: int = 0


class TransportQueue:
    """Serializes commands so that exactly one is outstanding at a time.

    The matrix protocol carries no request identifier, so a reply can only be
    attributed to "the command currently waiting". A single worker task sends
    the head, waits for ``complete()`` or the response timeout, and only then
    moves on. A timed out head is resent in place until ``max_attempts`` sends
    have gone unanswered, then dropped.
    """

    def __init__(
        self,
        send: Callable[[bytes], bool],
        response_timeout: float = 0.035,
        inter_message_delay: float = 0.0,
        max_attempts: int = 20,
        on_exhausted: Optional[Callable[[Command], None]] = None,
        on_send_failed: Optional[Callable[[], None]] = None,
    ):
        """
        Args:
            send: Writes a payload to the connection, returns False if it could not
            response_timeout: Seconds to wait for a reply before resending
            inter_message_delay: Seconds to wait after a reply before the next send
            max_attempts: Sends of one command before it is dropped
            on_exhausted: Called with a command dropped after max_attempts
            on_send_failed: Called when the connection refused a send
        """
        self._logger = logging.getLogger(__name__)
        self._send = send
        self._response_timeout = response_timeout
        self._inter_message_delay = inter_message_delay
        self._max_attempts = max_attempts
        self._on_exhausted = on_exhausted
        self._on_send_failed = on_send_failed

        self._command_queue: Queue = Queue()
        self._head: Optional[PendingCommand] = None
        self._ack_event = asyncio.Event()
        self._worker_task: Optional[Task[Any]] = None

    @property
    def head(self) -> Optional[Command]:
        """The outstanding command, or None when idle."""
        return self._head.command if self._head else None

    @property
    def attempts(self) -> int:
        return self._head.attempts if self._head else 0

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def __len__(self) -> int:
        return self._command_queue.qsize() + (1 if self._head else 0)

    def start(self):
        """Start sending; must be called from the running event loop."""
        if self.running:
            return
        self._worker_task = asyncio.get_running_loop().create_task(self._command_worker())

    def stop(self) -> int:
        """Stop sending and discard every queued command and attempt counter.

        Returns:
            The number of commands discarded.
        """
        if self._worker_task is not None and not self._worker_task.done():
            self._worker_task.cancel()
        self._worker_task = None
        dropped = 1 if self._head else 0
        self._head = None
        while True:
            try:
                self._command_queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._command_queue.task_done()
            dropped += 1
        if dropped:
            self._logger.info(f"QUEUE: Flushed {dropped} pending commands")
        return dropped

    def enqueue(self, command: Command):
        self._command_queue.put_nowait(command)
        self._logger.debug(f"QUEUE: Added {command.describe()}, queue size ~= {len(self)}")

    def complete(self) -> Optional[Command]:
        """Mark the outstanding command as answered.

        Any reply counts, including device errors and unparseable replies.

        Returns:
            The completed command, or None when nothing was outstanding.
        """
        pending = self._head
        if pending is None:
            self._logger.debug("RECV: Reply with no command outstanding")
            return None
        self._head = None
        self._ack_event.set()
        return pending.command

    async def wait_idle(self):
        """Wait until every enqueued command was answered or dropped."""
        await self._command_queue.join()

    async def _command_worker(self):
        """Worker task that sends queued commands one exchange at a time."""
        while True:
            try:
                command = await self._command_queue.get()
                pending = PendingCommand(command)
                try:
                    await self._exchange(pending)
                finally:
                    if self._head is pending:
                        self._head = None
                    self._command_queue.task_done()
                if self._inter_message_delay > 0:
                    await asyncio.sleep(self._inter_message_delay)
            except asyncio.CancelledError:
                self._logger.debug("Command worker cancelled")
                raise

    async def _exchange(self, pending: PendingCommand):
        command = pending.command
        self._head = pending
        while True:
            self._ack_event.clear()
            pending.attempts += 1
            self._logger.debug(f"SEND: {command.describe()} (attempt {pending.attempts}/{self._max_attempts})")
            if not self._send(command.payload):
                # Connection-level failure, not subject to the retry budget
                self._logger.error(f"SEND FAILED: {command.describe()} - not connected")
                if self._on_send_failed is not None:
                    self._on_send_failed()
                return
            try:
                await asyncio.wait_for(self._ack_event.wait(), self._response_timeout)
                return
            except asyncio.TimeoutError:
                if self._head is not pending:
                    # Completed in the same loop iteration the timeout fired
                    return
                if pending.attempts < self._max_attempts:
                    if pending.attempts == 1:
                        self._logger.warning(f"No response to {command.describe()}, resending")
                    continue
                self._logger.error(f"Error waiting for message: {command.describe()} ({pending.attempts} attempts)")
                if self._on_exhausted is not None:
                    self._on_exhausted(command)
                return
