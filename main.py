"""
Main command-line interface for pykramer.

This script provides a CLI to interact with a Kramer matrix switcher.
"""

import argparse
import asyncio
import logging
import os

from pykramer.config import MatrixConfig
from pykramer.const import Capability, DisconnectDialect, Medium, ProtocolVariant, RouteDialect, TransportKind
from pykramer.exceptions import ConfigurationError
from pykramer.listener import LoggingListener
from pykramer.matrix import KramerMatrix


class SnapshotListener(LoggingListener):
    """Saves the configuration once the matrix capabilities are detected."""

    def __init__(self, config: MatrixConfig, path: str):
        super().__init__(logging.getLogger("pykramer.cli"))
        self._config = config
        self._path = path

    def capabilities_detected(self, counts: dict[Capability, int]):
        super().capabilities_detected(counts)
        self._config.save(self._path)


def build_config(args) -> MatrixConfig:
    if args.config and os.path.exists(args.config):
        config = MatrixConfig.load(args.config)
    else:
        config = MatrixConfig()
    # Command line options override the snapshot
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.udp:
        config.transport = TransportKind.DATAGRAM
    if args.protocol is not None:
        config.protocol = ProtocolVariant(args.protocol)
    if args.route is not None:
        config.route_dialect = RouteDialect(args.route)
    if args.disconnect is not None:
        config.disconnect_dialect = DisconnectDialect(args.disconnect)
    for capability, value in (
        (Capability.INPUTS, args.inputs),
        (Capability.OUTPUTS, args.outputs),
        (Capability.PRESETS, args.presets),
    ):
        if value is not None:
            config.set_count(capability, value)
    return config


async def connect(config: MatrixConfig, snapshot_path) -> KramerMatrix:
    print(f"Connecting to matrix at {config.host}:{config.port} (Protocol {config.protocol.value})...")
    matrix = KramerMatrix(config)
    if snapshot_path:
        matrix.register_listener(SnapshotListener(config, snapshot_path))
    await matrix.async_connect()
    if not matrix.connected:
        matrix.close()
        raise SystemExit(f"Could not connect to {config.host}:{config.port}")
    # Wait for capability detection and the initial status queries
    await asyncio.sleep(1)
    await matrix.queue.wait_idle()
    return matrix


async def show_status(config: MatrixConfig, snapshot_path):
    """Query and display the routing of all outputs."""
    matrix = await connect(config, snapshot_path)
    routing = matrix.routing

    print("\nOutput Status:")
    print("-" * 60)
    for output_id, output in routing.outputs.items():
        if output_id == 0:
            continue
        video = output.video_source
        audio = output.audio_source
        video_str = "unknown" if video is None else ("OFF" if video == 0 else routing.inputs[video].label)
        audio_str = "unknown" if audio is None else ("OFF" if audio == 0 else routing.inputs[audio].label)
        print(f"{output.label + ':':20s} Video: {video_str:12s} | Audio: {audio_str}")
    print("-" * 60)
    print(f"{routing.input_count} inputs, {routing.output_count} outputs, {len(routing.presets)} presets")

    matrix.close()


async def run_command(config: MatrixConfig, snapshot_path, action, *params):
    """Send a single instruction and wait for the matrix to answer."""
    matrix = await connect(config, snapshot_path)
    try:
        action(matrix, *params)
    except ConfigurationError as e:
        print(f"Error: {e}")
        matrix.close()
        return
    await matrix.queue.wait_idle()
    matrix.close()
    print("Done")


def main():
    parser = argparse.ArgumentParser(description="Control a Kramer matrix switcher")
    parser.add_argument("--host", help="Matrix hostname or IP")
    parser.add_argument("--port", type=int, help="Matrix port (default: 5000)")
    parser.add_argument("--udp", action="store_true", help="Use UDP instead of TCP")
    parser.add_argument("--protocol", choices=["2000", "3000"], help="Matrix protocol (default: 3000)")
    parser.add_argument("--inputs", type=int, help="Input count (auto-detected when omitted)")
    parser.add_argument("--outputs", type=int, help="Output count (auto-detected when omitted)")
    parser.add_argument("--presets", type=int, help="Preset count (auto-detected when omitted)")
    parser.add_argument("--route", choices=["VID", "ROUTE"], help="Protocol 3000 route command (default: VID)")
    parser.add_argument("--disconnect", choices=["0", "+1"], help="Protocol 3000 disconnect parameter (default: 0)")
    parser.add_argument("--config", help="JSON configuration snapshot, updated with detected counts")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("status", help="Show routing of all outputs")

    video_parser = subparsers.add_parser("video", help="Route video from an input to an output")
    video_parser.add_argument("input", type=int, help="Input ID (0 disconnects)")
    video_parser.add_argument("output", type=int, help="Output ID (0 for all outputs)")

    audio_parser = subparsers.add_parser("audio", help="Route audio from an input to an output")
    audio_parser.add_argument("input", type=int, help="Input ID (0 disconnects)")
    audio_parser.add_argument("output", type=int, help="Output ID (0 for all outputs)")

    replace_parser = subparsers.add_parser("replace", help="Route input B to every output showing input A")
    replace_parser.add_argument("input_a", type=int, help="Input ID to replace")
    replace_parser.add_argument("input_b", type=int, help="Input ID to route instead")

    take_parser = subparsers.add_parser("take", help="Route audio and video from an input to an output")
    take_parser.add_argument("input", type=int, help="Input ID")
    take_parser.add_argument("output", type=int, help="Output ID (0 for all outputs)")
    take_parser.add_argument("--media", choices=["both", "video", "audio"], default="both",
                             help="Which signals to route (default: both)")

    for name, help_text in (("store", "Store a preset"), ("recall", "Recall a preset"), ("delete", "Delete a preset")):
        preset_parser = subparsers.add_parser(name, help=help_text)
        preset_parser.add_argument("preset", type=int, help="Preset ID")

    lock_parser = subparsers.add_parser("lock", help="Lock or unlock the front panel")
    lock_parser.add_argument("state", type=int, choices=[0, 1], help="1 to lock, 0 to unlock")

    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)

    try:
        config = build_config(args)
    except ConfigurationError as e:
        parser.error(str(e))
        return

    if args.command == "status":
        asyncio.run(show_status(config, args.config))
    elif args.command == "video":
        asyncio.run(run_command(config, args.config, KramerMatrix.switch_video, args.input, args.output))
    elif args.command == "audio":
        asyncio.run(run_command(config, args.config, KramerMatrix.switch_audio, args.input, args.output))
    elif args.command == "replace":
        asyncio.run(run_command(config, args.config, KramerMatrix.replace_input, args.input_a, args.input_b))
    elif args.command == "take":
        medium = None if args.media == "both" else Medium(args.media)
        asyncio.run(run_command(config, args.config, KramerMatrix.take, args.input, args.output, medium))
    elif args.command == "store":
        asyncio.run(run_command(config, args.config, KramerMatrix.store_setup, args.preset))
    elif args.command == "recall":
        asyncio.run(run_command(config, args.config, KramerMatrix.recall_setup, args.preset))
    elif args.command == "delete":
        asyncio.run(run_command(config, args.config, KramerMatrix.delete_setup, args.preset))
    elif args.command == "lock":
        asyncio.run(run_command(config, args.config, KramerMatrix.lock_front_panel, bool(args.state)))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
