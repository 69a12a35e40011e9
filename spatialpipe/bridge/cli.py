#!/usr/bin/env python
"""
Command Line Interface

Entry points for both ends of the pipe:

    spatialpipe serve                 run the render server
    spatialpipe send movie.wav        file mode: the server opens the file
    some-decoder | spatialpipe send   streaming mode: PCM from stdin
    spatialpipe fifo /tmp/snapfifo    relay stdin into a named pipe
    spatialpipe probe movie.mkv       print the path the renderer would open

Rendered PCM is written to stdout; all logging goes to stderr.
"""

import argparse
import logging
import os
import sys
import time

from .config import BridgeConfig, SUPPORTED_BIT_DEPTHS
from .exceptions import PipeError
from .fifo import relay
from .probe import prepare_source
from .producer import ProducerSession
from .renderers import ChannelMapRenderer
from .watchdog import ConnectionWatchdog, WatchdogListener

# Set up logging
logger = logging.getLogger(__name__)


class _ExitOnLaunchFailure(WatchdogListener):
    """Remembers whether the watchdog gave up on its endpoint."""

    def __init__(self):
        self.launch_failed = False

    def on_launch_failed(self, error):
        self.launch_failed = True


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(prog='spatialpipe', description='Spatial audio render pipe')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    parser.add_argument('--config', help='JSON configuration file')
    parser.add_argument('--socket', help='Socket path (default: discovered)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    serve = subparsers.add_parser('serve', help='Run the render server')
    serve.add_argument('--input-channels', type=int, help='Channels of streamed input PCM')
    serve.add_argument('--input-bit-depth', type=int, choices=SUPPORTED_BIT_DEPTHS,
                       help='Bit depth of streamed input PCM')
    serve.add_argument('--sample-rate', type=int, help='Sample rate of streamed input PCM')

    send = subparsers.add_parser('send', help='Render a file or stdin and write PCM to stdout')
    send.add_argument('file', nargs='?', help='File for the server to open (file mode); stdin if omitted')
    send.add_argument('--channels', type=int, help='Output channels')
    send.add_argument('--bit-depth', type=int, choices=SUPPORTED_BIT_DEPTHS, help='Output bit depth')
    send.add_argument('--prepare', action='store_true', help='Probe the file and convert it if needed')

    fifo = subparsers.add_parser('fifo', help='Relay stdin into a named pipe')
    fifo.add_argument('path', help='FIFO to write to')

    probe = subparsers.add_parser('probe', help='Print the path the renderer would open for a file')
    probe.add_argument('file')

    return parser.parse_args(argv)


def load_config(args) -> BridgeConfig:
    """Build the configuration from the optional file and command line overrides."""
    config = BridgeConfig.load(args.config) if args.config else BridgeConfig()

    data = config.to_dict()
    producer, server, renderer = data['producer'], data['server'], data['renderer']
    if args.socket:
        producer['socket_path'] = args.socket
        server['socket_path'] = args.socket

    if args.command == 'serve':
        for key, value in (('input_channels', args.input_channels),
                           ('input_bit_depth', args.input_bit_depth),
                           ('sample_rate', args.sample_rate)):
            if value is not None:
                renderer[key] = value
    elif args.command == 'send':
        if args.channels is not None:
            producer['output_channels'] = args.channels
        if args.bit_depth is not None:
            producer['bit_depth'] = args.bit_depth

    # Re-run validation on the merged values
    return BridgeConfig.from_dict(data)


def serve(config: BridgeConfig) -> int:
    listener = _ExitOnLaunchFailure()
    watchdog = ConnectionWatchdog(ChannelMapRenderer(config.renderer), config.server, listener)
    watchdog.start()
    try:
        while watchdog.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        watchdog.stop()
    return 1 if listener.launch_failed else 0


def send(config: BridgeConfig, file_path, prepare: bool) -> int:
    session = ProducerSession(config.producer)
    if file_path is not None:
        if not os.path.isfile(file_path):
            logger.error(f"File not found: {file_path}")
            return 1
        if prepare:
            file_path = prepare_source(file_path)
        session.run(sink=sys.stdout.buffer, path=file_path)
    else:
        session.run(source=sys.stdin.buffer, sink=sys.stdout.buffer)
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )

    try:
        config = load_config(args)
        if args.command == 'serve':
            return serve(config)
        if args.command == 'send':
            return send(config, args.file, args.prepare)
        if args.command == 'fifo':
            relay(sys.stdin.buffer, args.path)
            return 0
        if args.command == 'probe':
            print(prepare_source(args.file))
            return 0
    except PipeError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    return 2


if __name__ == "__main__":
    sys.exit(main())
