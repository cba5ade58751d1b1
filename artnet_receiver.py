#!/usr/bin/env python3
"""
Art-Net Receiver
================

Listens for Art-Net packets on a UDP port in a background thread and hands
every ArtDmx frame to the application through a blocking, iterable receiver.
Optionally answers ArtPoll discovery requests with a user supplied
ArtPollReply.

    receiver = ArtnetReceiverBuilder().build()
    for output in receiver:
        print(output.universe, output.data)

License: MIT
"""

import os
import sys
import copy
import queue
import socket
import logging
import weakref
import threading
import configparser
import dataclasses
import ipaddress
from datetime import datetime
from ipaddress import IPv4Address
from typing import Iterator, List, Optional, Tuple, Any

import psutil

from artnet_codec import (
    ARTNET_PORT,
    ArtCommand,
    ArtnetDecodeError,
    ArtnetEncodeError,
    Output,
    Poll,
    PollReply,
)


DEFAULT_IP = '0.0.0.0'
DEFAULT_PORT = ARTNET_PORT
DEFAULT_POLL_INTERVAL = 0.5  # seconds between shutdown checks while idle
RECV_BUFFER_SIZE = 1024

logger = logging.getLogger(__name__)


def as_ipv4(host: Any) -> Optional[IPv4Address]:
    """Return ``host`` as an IPv4 address, or None if it is IPv6 or not an address."""
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return None
    if address.version != 4:
        return None
    return address


def resolve_interface_ipv4(interface: str) -> str:
    """
    Look up the first IPv4 address assigned to a network interface.

    Args:
        interface: Interface name as reported by the OS (e.g. "eth0")

    Returns:
        Dotted-quad IPv4 address

    Raises:
        ValueError: If the interface does not exist or has no IPv4 address
    """
    addresses = psutil.net_if_addrs().get(interface)
    if addresses is None:
        raise ValueError(f"Unknown network interface: {interface}")
    for addr in addresses:
        if addr.family == socket.AF_INET:
            return addr.address
    raise ValueError(f"Network interface {interface} has no IPv4 address")


_END_OF_STREAM = object()


class _DeliveryChannel:
    """Unbounded FIFO between the listener thread and the consumer."""

    def __init__(self):
        self._queue = queue.Queue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, item: Output) -> bool:
        """Enqueue an item; returns False once the consumer has gone away."""
        if self._closed.is_set():
            return False
        self._queue.put(item)
        return True

    def get(self, timeout: Optional[float] = None) -> Any:
        return self._queue.get(timeout=timeout)

    def disconnect(self):
        """
        Mark the consumer as gone.

        Runs from the receiver's finalizer, possibly on the listener thread
        in the middle of ``send``, so it must not touch the queue's lock.
        """
        self._closed.set()

    def wake(self):
        """Unblock a reader waiting in ``get``."""
        self._queue.put(_END_OF_STREAM)

    def finish(self):
        """Called by the producer when it stops."""
        self._queue.put(_END_OF_STREAM)


class ArtnetReceiver:
    """
    Consumer end of the listener.

    Iterating yields ``Output`` packets in arrival order until the listener
    stops. Closing the receiver, or letting it be garbage collected, stops
    the listener thread.
    """

    def __init__(self, channel: _DeliveryChannel, thread: threading.Thread, local_address: Tuple[str, int]):
        self._channel = channel
        self._eof = False
        self.thread = thread
        self.local_address = local_address
        self._finalizer = weakref.finalize(self, channel.disconnect)

    def recv(self, timeout: Optional[float] = None) -> Optional[Output]:
        """
        Wait for the next ArtDmx packet.

        Args:
            timeout: Seconds to wait, or None to block indefinitely

        Returns:
            The next Output, or None once the listener has stopped

        Raises:
            queue.Empty: If no packet arrived within ``timeout``
        """
        if self._eof or self._channel.closed:
            return None
        item = self._channel.get(timeout)
        if item is _END_OF_STREAM:
            self._eof = True
            return None
        return item

    def __iter__(self) -> Iterator[Output]:
        while True:
            item = self.recv()
            if item is None:
                return
            yield item

    @property
    def closed(self) -> bool:
        return self._channel.closed

    def close(self):
        """Disconnect from the listener; the thread exits at its next check."""
        if self._finalizer.alive:
            self._finalizer()
            self._channel.wake()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the listener thread to exit. Returns True if it has."""
        self.thread.join(timeout)
        return not self.thread.is_alive()

    def __enter__(self) -> 'ArtnetReceiver':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class _ListenerWorker:
    """Receive loop run on the listener thread. Owns the socket."""

    def __init__(
        self,
        sock: socket.socket,
        channel: _DeliveryChannel,
        poll_reply: Optional[PollReply],
        bind_address: Tuple[str, int],
        poll_interval: Optional[float],
    ):
        self.sock = sock
        self.channel = channel
        self.poll_reply = poll_reply
        self.bind_address = bind_address
        self.poll_interval = poll_interval

    def run(self):
        """Receive, decode and dispatch datagrams until the consumer disconnects."""
        logger.info(f"Art-Net listener started on {self.bind_address[0]}:{self.bind_address[1]}")
        try:
            self.sock.settimeout(self.poll_interval)
            while not self.channel.closed:
                try:
                    data, remote = self.sock.recvfrom(RECV_BUFFER_SIZE)
                except socket.timeout:
                    continue
                except OSError as e:
                    logger.debug(f"Couldn't receive data: {e}")
                    continue

                try:
                    command = ArtCommand.from_buffer(data)
                except ArtnetDecodeError as e:
                    logger.debug(f"Ignoring {len(data)} byte packet from {remote}: {e}")
                    continue

                if isinstance(command, Poll):
                    self._reply_to_poll(remote)
                elif isinstance(command, Output):
                    if not self.channel.send(command):
                        logger.debug("Receiver dropped while delivering output")
                        break
                # PollReply and everything else is ignored
        finally:
            self.sock.close()
            self.channel.finish()
            logger.info("Art-Net listener stopped")

    def _local_address(self) -> Tuple[str, int]:
        try:
            return self.sock.getsockname()[:2]
        except OSError as e:
            logger.debug(f"Couldn't read local address, using bind address: {e}")
            return self.bind_address

    def _reply_to_poll(self, remote: Tuple):
        """Send the configured ArtPollReply back to the controller at ``remote``."""
        if self.poll_reply is None:
            return

        local_host, local_port = self._local_address()
        address = as_ipv4(local_host)
        if address is None:
            logger.debug(f"Local address {local_host} is not IPv4, not replying to poll")
            return
        bind_ip = as_ipv4(remote[0])
        if bind_ip is None:
            logger.debug(f"Poll from non-IPv4 address {remote[0]}, not replying")
            return

        reply = dataclasses.replace(self.poll_reply, address=address, port=local_port, bind_ip=bind_ip)
        try:
            packet = ArtCommand.to_bytes(reply)
        except ArtnetEncodeError as e:
            logger.debug(f"Couldn't encode poll reply: {e}")
            return

        try:
            self.sock.sendto(packet, remote)
        except OSError as e:
            logger.debug(f"Couldn't send poll reply to {remote}: {e}")
            return
        logger.debug(f"Sent poll reply to {remote[0]}:{remote[1]}")


class ArtnetReceiverBuilder:
    """
    Configures and starts an Art-Net listener.

    Defaults: address 0.0.0.0:6454, SO_REUSEADDR enabled, no poll reply,
    shutdown checks every 0.5 seconds. Setters return the builder so calls
    can be chained.
    """

    def __init__(self):
        self._ip = DEFAULT_IP
        self._port = DEFAULT_PORT
        self._reuse_address = True
        self._poll_reply: Optional[PollReply] = None
        self._poll_interval: Optional[float] = DEFAULT_POLL_INTERVAL

    def socket_address(self, ip: str, port: int) -> 'ArtnetReceiverBuilder':
        """Set the IP and port to bind to."""
        return self.ip_address(ip).port(port)

    def ip_address(self, ip: str) -> 'ArtnetReceiverBuilder':
        """Set the IP to bind to."""
        self._ip = str(ip)
        return self

    def port(self, port: int) -> 'ArtnetReceiverBuilder':
        """Set the UDP port to bind to (0 picks a free port)."""
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"Port must be between 0 and 65535, got {port}")
        self._port = port
        return self

    def reuse_address(self, reuse_address: bool) -> 'ArtnetReceiverBuilder':
        """Set SO_REUSEADDR, allowing several processes to listen on the same port."""
        self._reuse_address = reuse_address
        return self

    def poll_reply(self, poll_reply: Optional[PollReply]) -> 'ArtnetReceiverBuilder':
        """
        Set the ArtPollReply sent whenever an ArtPoll is received.

        The ``address``, ``port`` and ``bind_ip`` fields are filled in by the
        listener for every reply. With no reply set, polls are ignored.

        Raises:
            TypeError: If ``poll_reply`` is not a PollReply
            ArtnetEncodeError: If the reply cannot be written to the wire
        """
        if poll_reply is not None:
            if not isinstance(poll_reply, PollReply):
                raise TypeError(f"Expected PollReply, got {type(poll_reply).__name__}")
            ArtCommand.to_bytes(poll_reply)
        self._poll_reply = poll_reply
        return self

    def poll_interval(self, seconds: Optional[float]) -> 'ArtnetReceiverBuilder':
        """
        Set how often an idle listener checks whether the receiver was closed.

        None blocks in the socket receive; the listener then only notices a
        closed receiver when the next ArtDmx packet arrives.
        """
        if seconds is not None and seconds <= 0:
            raise ValueError(f"Poll interval must be positive, got {seconds}")
        self._poll_interval = seconds
        return self

    def build(self) -> ArtnetReceiver:
        """
        Bind the socket and start the listener thread.

        Raises:
            OSError: If the socket could not be created, configured or bound
        """
        bind_address = (self._ip, self._port)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1 if self._reuse_address else 0)
            sock.bind(bind_address)
            local_address = sock.getsockname()[:2]
        except OSError:
            sock.close()
            raise

        channel = _DeliveryChannel()
        worker = _ListenerWorker(
            sock,
            channel,
            copy.deepcopy(self._poll_reply),
            bind_address,
            self._poll_interval,
        )
        thread = threading.Thread(
            target=worker.run,
            daemon=True,
            name=f"ArtnetListener-{local_address[1]}",
        )
        thread.start()
        return ArtnetReceiver(channel, thread, local_address)


class ConfigManager:
    """Manages configuration file loading and validation."""

    def __init__(self, config_file: str = "config.ini", required: bool = False):
        self.config_file = config_file
        self.required = required
        self.config = configparser.ConfigParser()
        self.load_config()

    def load_config(self):
        """Load and validate configuration file."""
        if os.path.exists(self.config_file):
            self.config.read(self.config_file, encoding='utf-8')
        elif self.required:
            raise FileNotFoundError(f"Configuration file not found: {self.config_file}")
        self.validate_config()

    def validate_config(self):
        """Validate configuration settings."""
        port = self.getint('LISTENER', 'port', fallback=DEFAULT_PORT)
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"Invalid port: {port}")

        parse_poll_interval(self.get('LISTENER', 'poll_interval'))

        log_level = self.get('LOGGING', 'log_level', fallback='INFO')
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if log_level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {log_level}")

        poll_reply_from_config(self)

    def has_section(self, section: str) -> bool:
        return self.config.has_section(section)

    def get(self, section: str, key: str, fallback: Any = None) -> Any:
        """Get configuration value with fallback."""
        return self.config.get(section, key, fallback=fallback)

    def getint(self, section: str, key: str, fallback: int = 0) -> int:
        """Get integer configuration value with fallback. Accepts 0x prefixes."""
        value = self.config.get(section, key, fallback=None)
        if value is None or not value.strip():
            return fallback
        return int(value, 0)

    def getboolean(self, section: str, key: str, fallback: bool = False) -> bool:
        """Get boolean configuration value with fallback."""
        return self.config.getboolean(section, key, fallback=fallback)


def parse_poll_interval(value: Optional[str]) -> Optional[float]:
    """Parse the ``poll_interval`` setting; "none" disables shutdown polling."""
    if value is None:
        return DEFAULT_POLL_INTERVAL
    if value.strip().lower() in ('', 'none', 'off'):
        return None
    interval = float(value)
    if interval <= 0:
        raise ValueError(f"Invalid poll interval: {value}")
    return interval


def parse_mac(value: str) -> bytes:
    """Parse "aa:bb:cc:dd:ee:ff" (or '-' separated) into 6 bytes. Empty means all zeros."""
    if not value.strip():
        return b'\x00' * 6
    parts = value.strip().replace('-', ':').split(':')
    if len(parts) != 6:
        raise ValueError(f"Invalid MAC address: {value}")
    try:
        return bytes(int(part, 16) for part in parts)
    except ValueError:
        raise ValueError(f"Invalid MAC address: {value}") from None


def _parse_byte_list(value: Optional[str], size: int) -> bytes:
    """Parse "0x80, 0, 0, 0" into a fixed-size byte string."""
    if value is None or not value.strip():
        return b'\x00' * size
    items: List[int] = [int(item.strip(), 0) for item in value.split(',') if item.strip()]
    if len(items) > size:
        raise ValueError(f"Expected at most {size} values, got {len(items)}: {value}")
    return bytes(items).ljust(size, b'\x00')


def poll_reply_from_config(config: ConfigManager) -> Optional[PollReply]:
    """Build the ArtPollReply template from the [POLL_REPLY] section, if enabled."""
    if not config.has_section('POLL_REPLY'):
        return None
    if not config.getboolean('POLL_REPLY', 'enabled', fallback=True):
        return None

    def text(key: str) -> bytes:
        return config.get('POLL_REPLY', key, fallback='').encode('ascii', errors='replace')

    def word(key: str, fallback: int) -> bytes:
        value = config.getint('POLL_REPLY', key, fallback=fallback)
        if not 0 <= value <= 0xFFFF:
            raise ValueError(f"Invalid [POLL_REPLY] {key}: {value}")
        return value.to_bytes(2, 'big')

    reply = PollReply(
        version=bytes([0, 1]),
        oem=word('oem', 0x00FF),
        esta_code=config.getint('POLL_REPLY', 'esta_code', fallback=0),
        short_name=text('short_name'),
        long_name=text('long_name'),
        node_report=text('node_report'),
        num_ports=word('num_ports', 1),
        port_types=_parse_byte_list(config.get('POLL_REPLY', 'port_types'), 4),
        good_input=_parse_byte_list(config.get('POLL_REPLY', 'good_input'), 4),
        good_output=_parse_byte_list(config.get('POLL_REPLY', 'good_output'), 4),
        swout=_parse_byte_list(config.get('POLL_REPLY', 'swout'), 4),
        style=config.getint('POLL_REPLY', 'style', fallback=0),
        mac=parse_mac(config.get('POLL_REPLY', 'mac', fallback='')),
        bind_index=config.getint('POLL_REPLY', 'bind_index', fallback=1),
    )
    try:
        ArtCommand.to_bytes(reply)
    except ArtnetEncodeError as e:
        raise ValueError(f"Invalid [POLL_REPLY] section: {e}") from e
    return reply


def builder_from_config(config: ConfigManager) -> ArtnetReceiverBuilder:
    """Create a receiver builder from the [LISTENER] and [POLL_REPLY] sections."""
    interface = config.get('LISTENER', 'interface', fallback='')
    if interface:
        ip = resolve_interface_ipv4(interface)
        logger.info(f"Resolved interface {interface} to {ip}")
    else:
        ip = config.get('LISTENER', 'ip', fallback=DEFAULT_IP)

    return (
        ArtnetReceiverBuilder()
        .socket_address(ip, config.getint('LISTENER', 'port', fallback=DEFAULT_PORT))
        .reuse_address(config.getboolean('LISTENER', 'reuse_address', fallback=True))
        .poll_interval(parse_poll_interval(config.get('LISTENER', 'poll_interval')))
        .poll_reply(poll_reply_from_config(config))
    )


class LogManager:
    """Sets up logging to a timestamped file and prunes old log files."""

    LOG_PREFIX = "artnet_receiver_"

    def __init__(self, config: ConfigManager, log_dir: str = "logs"):
        self.config = config
        self.log_dir = log_dir
        self.file_handler: Optional[logging.FileHandler] = None
        self.setup_logging()

    def setup_logging(self):
        """Open this run's log file, install the handlers, then prune older files."""
        os.makedirs(self.log_dir, exist_ok=True)

        log_level = getattr(logging, self.config.get('LOGGING', 'log_level', fallback='INFO').upper())
        debug_mode = self.config.getboolean('LOGGING', 'debug_mode', fallback=False)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = os.path.join(self.log_dir, f"{self.LOG_PREFIX}{timestamp}.log")
        self.file_handler = logging.FileHandler(log_file, encoding='utf-8')

        logging.basicConfig(
            level=log_level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=[
                self.file_handler,
                logging.StreamHandler() if debug_mode else logging.NullHandler()
            ]
        )

        # The new file exists now, so it counts towards keep_logs
        self.cleanup_old_logs(current=log_file)
        logger.info(f"Logging to {log_file}")

    def cleanup_old_logs(self, current: Optional[str] = None):
        """Remove old log files so at most ``keep_logs`` remain, including ``current``."""
        keep_logs = max(self.config.getint('LOGGING', 'keep_logs', fallback=5), 1)

        log_files = [
            os.path.join(self.log_dir, name)
            for name in os.listdir(self.log_dir)
            if name.startswith(self.LOG_PREFIX) and name.endswith(".log")
        ]
        # Newest first, with the file just opened always kept
        log_files.sort(key=lambda path: (path == current, os.path.getmtime(path)), reverse=True)

        for old_file in log_files[keep_logs:]:
            try:
                os.remove(old_file)
                print(f"Removed old log file: {old_file}")
            except OSError as e:
                print(f"Error removing old log file {old_file}: {e}")


def format_output(output: Output, preview: int = 16) -> str:
    """One-line summary of an ArtDmx packet for the console."""
    data = output.data[:preview].hex(' ')
    if len(output.data) > preview:
        data += ' ...'
    return f"universe={output.universe} seq={output.sequence} len={len(output.data)} data={data}"


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    argv = sys.argv[1:] if argv is None else argv
    receiver = None
    try:
        if argv:
            config = ConfigManager(argv[0], required=True)
        else:
            config = ConfigManager()
        LogManager(config)

        receiver = builder_from_config(config).build()
        ip, port = receiver.local_address
        logger.info(f"Receiving Art-Net on {ip}:{port}")
        print(f"Listening for Art-Net on {ip}:{port} (Ctrl-C to stop)")

        for output in receiver:
            print(format_output(output))
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        print(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        if receiver:
            receiver.close()


if __name__ == "__main__":
    main()
