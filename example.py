"""
Example usage of pykramer library.

Connects to a Protocol 2000 matrix, routes input 1 to every output and prints
which outputs input 1 now feeds.
"""

import asyncio
import logging

from pykramer import KramerMatrix, MatrixConfig, Medium, ProtocolVariant
from pykramer.listener import LoggingListener


async def main():
    logging.basicConfig(level=logging.INFO)
    config = MatrixConfig(host="192.168.1.39", port=5000, protocol=ProtocolVariant.BINARY_FIXED)
    matrix = KramerMatrix(config)
    matrix.register_listener(LoggingListener())
    await matrix.async_connect()
    await asyncio.sleep(1)
    await matrix.queue.wait_idle()

    matrix.switch_video(1, 0)
    await matrix.queue.wait_idle()
    print(f"Input 1 video destinations: {sorted(matrix.destinations_of(1, Medium.VIDEO))}")
    matrix.close()


if __name__ == "__main__":
    asyncio.run(main())
