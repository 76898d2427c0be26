import asyncio
import logging
from asyncio import Task
from typing import Any, Optional

from pykramer.const import ConnectionState, TransportKind
from pykramer.listener import ConnectionListener


class MatrixConnection(asyncio.Protocol):
    """Owns the socket to the matrix over TCP or UDP.

    Implements both the stream and the datagram protocol callbacks so the
    same object serves either transport. Connectivity is reported through
    ``ConnectionListener.state_changed``; received bytes through
    ``ConnectionListener.data_received``.
    """

    _transport: Optional[asyncio.BaseTransport]
    _reconnect_task: Optional[Task[Any]]

    def __init__(
        self,
        hostname: str,
        port: int,
        listener: ConnectionListener,
        transport_kind: TransportKind = TransportKind.STREAM,
        reconnect_time: float = 5.0,
    ):
        self._logger = logging.getLogger(__name__)
        self._hostname = hostname
        self._port = port
        self._listener = listener
        self._transport_kind = transport_kind
        self._reconnect_time = reconnect_time

        self._state = ConnectionState.DISCONNECTED
        self._reconnect = True
        self._transport = None
        self._reconnect_task = None
        self.peer_name = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState):
        if state is self._state:
            return
        self._logger.debug(f"Connection state {self._state.value} -> {state.value}")
        self._state = state
        try:
            self._listener.state_changed(state)
        except Exception as e:
            self._logger.error(f"Exception in state_changed() callback: {e}", exc_info=True)

    async def async_connect(self):
        """Open the connection; failures move to FAILED and schedule a reconnect."""
        if not self._hostname:
            self._logger.error("No host specified")
            self._set_state(ConnectionState.FAILED)
            return
        self._reconnect = True
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._open()
        except OSError as e:
            self._logger.error(f"Network error: {e}")
            self._set_state(ConnectionState.FAILED)
            self._schedule_reconnect()

    async def _open(self):
        loop = asyncio.get_running_loop()
        if self._transport_kind is TransportKind.DATAGRAM:
            await loop.create_datagram_endpoint(
                lambda: self, remote_addr=(self._hostname, self._port)
            )
        else:
            await loop.create_connection(
                lambda: self, host=self._hostname, port=self._port
            )

    def close(self):
        """Close the connection and stop reconnection attempts."""
        self._reconnect = False
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        if self._transport is not None:
            transport = self._transport
            self._transport = None
            transport.close()
        self._set_state(ConnectionState.DISCONNECTED)

    def send(self, payload: bytes) -> bool:
        if self._transport is None or not self.connected:
            return False
        try:
            if self._transport_kind is TransportKind.DATAGRAM:
                self._transport.sendto(payload)
            else:
                self._transport.write(payload)
        except (OSError, RuntimeError) as e:
            self._logger.error(f"Error writing to transport: {e}")
            return False
        return True

    def handle_connection_broken(self):
        """Handle a dead connection, detected either by asyncio or by a failed send."""
        if self._transport is not None:
            transport = self._transport
            self._transport = None
            transport.close()
        if not self._reconnect:
            self._logger.info(f"Disconnected from {self._hostname}, not reconnecting")
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._logger.error(
            f"Disconnected from {self._hostname}, will try to reconnect in {self._reconnect_time} seconds"
        )
        self._set_state(ConnectionState.FAILED)
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        if not self._reconnect:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._wait_to_reconnect())

    async def _wait_to_reconnect(self):
        """Attempt to reconnect after connection loss."""
        while not self.connected and self._reconnect:
            await asyncio.sleep(self._reconnect_time)
            if not self._reconnect:
                break
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._open()
            except OSError as e:
                # Debug only, a matrix that stays offline would flood the log
                self._logger.debug(f"Reconnect attempt failed: {e}")
                self._set_state(ConnectionState.FAILED)

    # ========== asyncio callbacks ==========

    def connection_made(self, transport):
        """Method from asyncio.Protocol"""
        self._transport = transport
        self.peer_name = transport.get_extra_info("peername")
        self._logger.info(f"Connection Made: {self.peer_name} ({self._transport_kind.value})")
        self._set_state(ConnectionState.CONNECTED)

    def data_received(self, data):
        """Method from asyncio.Protocol"""
        self._logger.debug(f"data_received client: {data}")
        self._listener.data_received(data)

    def datagram_received(self, data, addr):
        """Method from asyncio.DatagramProtocol"""
        self._logger.debug(f"datagram_received from {addr}: {data}")
        self._listener.data_received(data)

    def error_received(self, exc):
        """Method from asyncio.DatagramProtocol"""
        self._logger.warning(f"Network error: {exc}")

    def connection_lost(self, exc):
        """Method from asyncio.Protocol"""
        if self._transport is None:
            # Already handled by close() or handle_connection_broken()
            return
        if exc is not None:
            self._logger.error(f"Connection lost: {exc}")
        self.handle_connection_broken()
