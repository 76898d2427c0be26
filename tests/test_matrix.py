import asyncio

import pytest

from pykramer.config import MatrixConfig
from pykramer.const import Capability, ConnectionState, Medium, ProtocolVariant, RouteDialect
from pykramer.exceptions import ConfigurationError
from pykramer.matrix import KramerMatrix


def binary_config(**kwargs) -> MatrixConfig:
    kwargs.setdefault("response_timeout", 10)
    return MatrixConfig(host="matrix.local", protocol=ProtocolVariant.BINARY_FIXED, **kwargs)


def text_config(**kwargs) -> MatrixConfig:
    kwargs.setdefault("response_timeout", 10)
    return MatrixConfig(host="matrix.local", protocol=ProtocolVariant.TEXT_LINE, **kwargs)


def make_matrix(config, connection, listener) -> KramerMatrix:
    matrix = KramerMatrix(config, connection=connection)
    matrix.register_listener(listener)
    return matrix


class TestCapabilityDetection:
    @pytest.mark.asyncio
    async def test_binary_detection_then_status(self, fake_connection, recording_listener, settle):
        """Two missing counts are asked for in turn and the matrix is built once."""
        matrix = make_matrix(binary_config(preset_count=5, disable_audio=True), fake_connection, recording_listener)
        matrix._on_state_changed(ConnectionState.CONNECTED)
        await settle()

        assert recording_listener.events == ["connected"]
        assert fake_connection.sent == [bytes([0x3E, 0x81, 0x81, 0x81])]
        assert matrix._capabilities.tally == 2

        matrix._on_data_received(bytes([0x7E, 0x81, 0x88, 0x81]))
        await settle()
        assert fake_connection.sent[-1] == bytes([0x3E, 0x82, 0x81, 0x81])
        assert recording_listener.capabilities == []

        matrix._on_data_received(bytes([0x7E, 0x82, 0x84, 0x81]))
        await settle()
        assert recording_listener.capabilities == [{Capability.INPUTS: 8, Capability.OUTPUTS: 4}]
        assert recording_listener.rebuilds == [(8, 4, 5)]
        assert matrix.routing.input_count == 8
        assert matrix.routing.output_count == 4
        assert matrix.config.input_count == 8
        assert matrix.config.output_count == 4

        # Video status of every output follows, one at a time
        assert fake_connection.sent[-1] == bytes([0x05, 0x80, 0x81, 0x81])
        assert len(matrix.queue) == 4
        matrix.close()

    @pytest.mark.asyncio
    async def test_unanswered_detection_completes(self, fake_connection, recording_listener, settle):
        """A count the matrix never reports falls back to the minimum."""
        config = binary_config(preset_count=5, response_timeout=0.01, max_attempts=2, disable_audio=True)
        matrix = make_matrix(config, fake_connection, recording_listener)
        matrix._on_state_changed(ConnectionState.CONNECTED)
        await settle(0.005)

        matrix._on_data_received(bytes([0x7E, 0x81, 0x88, 0x81]))
        await asyncio.wait_for(recording_listener.detected.wait(), 2)

        assert recording_listener.capabilities == [{Capability.INPUTS: 8}]
        assert matrix.routing.input_count == 8
        assert matrix.routing.output_count == 1
        assert matrix.config.output_count is None
        assert len(recording_listener.errors) >= 1
        matrix.close()

    @pytest.mark.asyncio
    async def test_text_detection(self, fake_connection, recording_listener, settle):
        """Protocol 3000 asks for inputs and outputs with a single query."""
        matrix = make_matrix(text_config(), fake_connection, recording_listener)
        matrix._on_state_changed(ConnectionState.CONNECTED)
        await settle()
        assert fake_connection.sent == [b"#INFO-IO?\r"]
        assert matrix._capabilities.tally == 2

        matrix._on_data_received(b"~01@INFO-IO IN 11,OUT 9\r\n")
        await settle()
        assert fake_connection.sent == [b"#INFO-IO?\r", b"#INFO-PRST?\r"]
        matrix._on_data_received(b"~01@INFO-PRST VID 60,AUD 0\r\n")
        await settle()

        assert recording_listener.capabilities == [
            {Capability.INPUTS: 11, Capability.OUTPUTS: 9, Capability.PRESETS: 60}
        ]
        assert recording_listener.rebuilds == [(11, 9, 60)]
        assert fake_connection.sent[-1] == b"#VID? 1\r"
        matrix.close()

    @pytest.mark.asyncio
    async def test_text_detection_of_outputs_only(self, fake_connection, recording_listener, settle):
        """A known input count is not overwritten by the combined reply."""
        matrix = make_matrix(text_config(input_count=4, preset_count=2), fake_connection, recording_listener)
        matrix._on_state_changed(ConnectionState.CONNECTED)
        await settle()
        assert fake_connection.sent == [b"#INFO-IO?\r"]

        matrix._on_data_received(b"~01@INFO-IO IN 11,OUT 9\r\n")
        await settle()
        assert recording_listener.capabilities == [{Capability.OUTPUTS: 9}]
        assert recording_listener.rebuilds == [(4, 9, 2)]
        matrix.close()

    @pytest.mark.asyncio
    async def test_error_reply_resolves_detection(self, fake_connection, recording_listener, settle):
        matrix = make_matrix(binary_config(input_count=4, output_count=4), fake_connection, recording_listener)
        matrix._on_state_changed(ConnectionState.CONNECTED)
        await settle()
        assert fake_connection.sent == [bytes([0x3E, 0x83, 0x81, 0x81])]

        matrix._on_data_received(bytes([0x50, 0x80, 0x80, 0x81]))
        await settle()
        assert recording_listener.capabilities == [{}]
        assert len(recording_listener.errors) == 1
        assert len(matrix.routing.presets) == 1
        matrix.close()


class TestRouting:
    @pytest.mark.asyncio
    async def test_known_counts_request_status(self, fake_connection, recording_listener, settle):
        config = text_config(input_count=4, output_count=2, preset_count=2, route_dialect=RouteDialect.ROUTE)
        matrix = make_matrix(config, fake_connection, recording_listener)
        matrix._on_state_changed(ConnectionState.CONNECTED)
        await settle()

        assert recording_listener.rebuilds == [(4, 2, 2)]
        assert fake_connection.sent == [b"#ROUTE? 0,1\r"]
        assert len(matrix.queue) == 4

        matrix._on_data_received(b"~01@ROUTE 0,1,3 OK\r\n")
        await settle()
        assert matrix.current_video_source(1) == 3
        assert ("route", Medium.VIDEO, 1, 3) in recording_listener.events
        assert fake_connection.sent[-1] == b"#ROUTE? 0,2\r"
        matrix.close()

    @pytest.mark.asyncio
    async def test_switch_and_reply(self, fake_connection, recording_listener, settle):
        """Output 5 moves from input 3 to input 7."""
        matrix = make_matrix(binary_config(input_count=8, output_count=8, preset_count=4), fake_connection,
                             recording_listener)
        matrix._rebuild_routing()
        matrix.queue.start()

        matrix.switch_video(3, 5)
        await settle()
        matrix._on_data_received(bytes([0x41, 0x83, 0x85, 0x81]))
        matrix.switch_video(7, 5)
        await settle()
        matrix._on_data_received(bytes([0x41, 0x87, 0x85, 0x81]))
        await settle()

        assert matrix.current_video_source(5) == 7
        assert matrix.destinations_of(3, Medium.VIDEO) == frozenset()
        assert matrix.destinations_of(7, Medium.VIDEO) == {5}
        assert matrix.queue.head is None
        matrix.close()

    @pytest.mark.asyncio
    async def test_concatenated_replies(self, fake_connection, recording_listener, settle):
        matrix = make_matrix(text_config(input_count=8, output_count=8, preset_count=4), fake_connection,
                             recording_listener)
        matrix._rebuild_routing()
        matrix.queue.start()

        matrix.switch_video(3, 5)
        await settle()
        matrix._on_data_received(b"~01@VID 3>5 OK\r\n~01@VID 4>6 OK\r\n")
        await settle()

        assert matrix.current_video_source(5) == 3
        assert matrix.current_video_source(6) == 4
        assert matrix.queue.head is None
        matrix.close()

    @pytest.mark.asyncio
    async def test_binary_replies_survive_stray_byte(self, fake_connection, recording_listener, settle):
        """Frames after a stray byte on the stream still update the routing."""
        matrix = make_matrix(binary_config(input_count=8, output_count=8, preset_count=4), fake_connection,
                             recording_listener)
        matrix._rebuild_routing()
        matrix.queue.start()

        matrix.switch_video(3, 5)
        await settle()
        matrix._on_data_received(b"\x81")
        matrix._on_data_received(bytes([0x41, 0x83, 0x85, 0x81]))
        await settle()

        assert matrix.current_video_source(5) == 3
        assert matrix.queue.head is None
        matrix.close()

    @pytest.mark.asyncio
    async def test_replace_input(self, fake_connection, recording_listener, settle):
        """Every output showing input 3 is switched to input 6."""
        matrix = make_matrix(binary_config(input_count=8, output_count=8, preset_count=4), fake_connection,
                             recording_listener)
        matrix._rebuild_routing()
        for output_id in (2, 5, 7):
            matrix.routing.apply_route_changed(Medium.VIDEO, 3, output_id)
        matrix.routing.apply_route_changed(Medium.VIDEO, 4, 1)

        commands = matrix.replace_input(3, 6)
        assert [command.payload for command in commands] == [
            bytes([0x01, 0x86, 0x82, 0x81]),
            bytes([0x01, 0x86, 0x85, 0x81]),
            bytes([0x01, 0x86, 0x87, 0x81]),
        ]
        assert len(matrix.queue) == 3
        assert matrix.replace_input(2, 6) == []

    @pytest.mark.asyncio
    async def test_take_audio_and_video(self, fake_connection, recording_listener, settle):
        """Taking both media sends one audio and one video switch."""
        config = text_config(input_count=8, output_count=8, preset_count=4, route_dialect=RouteDialect.ROUTE)
        matrix = make_matrix(config, fake_connection, recording_listener)
        matrix.queue.start()

        commands = matrix.take(3, 5)
        assert [command.payload for command in commands] == [b"#ROUTE 1,5,3\r", b"#ROUTE 0,5,3\r"]
        await settle()
        matrix._on_data_received(b"~01@ROUTE 1,5,3 OK\r\n")
        await settle()
        assert fake_connection.sent == [b"#ROUTE 1,5,3\r", b"#ROUTE 0,5,3\r"]
        matrix.close()

    @pytest.mark.asyncio
    async def test_take_single_medium(self, fake_connection, recording_listener):
        config = text_config(input_count=8, output_count=8, preset_count=4, route_dialect=RouteDialect.ROUTE)
        matrix = make_matrix(config, fake_connection, recording_listener)

        assert [c.payload for c in matrix.take(3, 5, Medium.VIDEO)] == [b"#ROUTE 0,5,3\r"]
        assert [c.payload for c in matrix.take(3, 5, Medium.AUDIO)] == [b"#ROUTE 1,5,3\r"]
        assert len(matrix.queue) == 2

    @pytest.mark.asyncio
    async def test_take_without_source(self, fake_connection, recording_listener):
        matrix = make_matrix(text_config(input_count=8, output_count=8, preset_count=4), fake_connection,
                             recording_listener)
        assert matrix.take(0, 5) == []
        assert len(matrix.queue) == 0

    @pytest.mark.asyncio
    async def test_take_both_with_vid_dialect_queues_nothing(self, fake_connection, recording_listener):
        """The audio half can not be sent with #VID, so the video half is not sent either."""
        matrix = make_matrix(text_config(input_count=8, output_count=8, preset_count=4), fake_connection,
                             recording_listener)
        with pytest.raises(ConfigurationError):
            matrix.take(3, 5)
        assert len(matrix.queue) == 0
        assert [c.payload for c in matrix.take(3, 5, Medium.VIDEO)] == [b"#VID 3>5\r"]

    @pytest.mark.asyncio
    async def test_late_status_reply_is_not_misattributed(self, fake_connection, recording_listener):
        """A status reply arriving after its request was dropped changes nothing."""
        config = binary_config(input_count=8, output_count=8, preset_count=4, response_timeout=0.005)
        matrix = make_matrix(config, fake_connection, recording_listener)
        matrix._rebuild_routing()
        matrix.queue.start()

        matrix.request_video_status(5)
        matrix.switch_video(2, 7)
        await asyncio.wait_for(recording_listener.failed.wait(), 2)
        assert fake_connection.sent[:20] == [bytes([0x05, 0x80, 0x85, 0x81])] * 20
        assert matrix.queue.head.param_b == 7

        matrix._on_data_received(bytes([0x45, 0x80, 0x83, 0x81]))
        assert matrix.current_video_source(5) is None
        assert matrix.current_video_source(7) is None
        matrix.close()


class TestErrors:
    @pytest.mark.asyncio
    async def test_unexpressible_instruction_is_refused(self, fake_connection, recording_listener, settle):
        matrix = make_matrix(text_config(input_count=4, output_count=4, preset_count=1), fake_connection,
                             recording_listener)
        matrix.queue.start()

        with pytest.raises(ConfigurationError):
            matrix.switch_audio(1, 2)
        with pytest.raises(ConfigurationError):
            matrix.delete_setup(1)
        await settle()

        assert len(matrix.queue) == 0
        assert fake_connection.sent == []
        matrix.close()

    @pytest.mark.asyncio
    async def test_device_error_completes_exchange(self, fake_connection, recording_listener, settle):
        matrix = make_matrix(text_config(input_count=4, output_count=4, preset_count=1), fake_connection,
                             recording_listener)
        matrix._rebuild_routing()
        matrix.queue.start()

        matrix.switch_video(9, 1)
        await settle()
        matrix._on_data_received(b"~01@VID 9>1 ERR 004\r\n")
        await settle()

        assert matrix.queue.head is None
        assert len(fake_connection.sent) == 1
        assert recording_listener.errors == ["Matrix reported an error: ~01@VID 9>1 ERR 004"]
        assert matrix.current_video_source(1) is None
        matrix.close()

    @pytest.mark.asyncio
    async def test_disconnect_flushes_queue(self, fake_connection, recording_listener, settle):
        matrix = make_matrix(binary_config(), fake_connection, recording_listener)
        matrix._on_state_changed(ConnectionState.CONNECTED)
        await settle()
        assert len(matrix.queue) == 3

        matrix._on_state_changed(ConnectionState.FAILED)
        assert recording_listener.events == ["connected", "disconnected"]
        assert len(matrix.queue) == 0
        assert matrix._capabilities.tally == 0
        assert not matrix.connected

    @pytest.mark.asyncio
    async def test_send_failure_disconnects(self, fake_connection, recording_listener, settle):
        fake_connection.accept = False
        matrix = make_matrix(binary_config(), fake_connection, recording_listener)
        matrix._on_state_changed(ConnectionState.CONNECTED)
        await settle()

        assert recording_listener.events == ["connected", "disconnected"]
        assert len(matrix.queue) == 0
