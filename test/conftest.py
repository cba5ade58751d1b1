"""
Pytest fixtures for the Art-Net receiver tests

- Loopback builder bound to an ephemeral port
- Controller-side UDP socket
- ArtPollReply template
"""
import os
import sys
import socket
import time
from typing import Callable, Generator

import pytest

# Make the top-level modules importable without installing
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from artnet_codec import ArtCommand, Output, PollReply
from artnet_receiver import ArtnetReceiver, ArtnetReceiverBuilder


@pytest.fixture
def builder() -> ArtnetReceiverBuilder:
    """Builder bound to 127.0.0.1 on a free port with fast shutdown checks."""
    return ArtnetReceiverBuilder().socket_address('127.0.0.1', 0).poll_interval(0.05)


@pytest.fixture
def receiver(builder: ArtnetReceiverBuilder) -> Generator[ArtnetReceiver, None, None]:
    rx = builder.build()
    try:
        yield rx
    finally:
        rx.close()
        rx.join(2.0)


@pytest.fixture
def controller() -> Generator[socket.socket, None, None]:
    """UDP socket playing the lighting controller."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(('127.0.0.1', 0))
    sock.settimeout(2.0)
    try:
        yield sock
    finally:
        sock.close()


@pytest.fixture
def poll_reply_template() -> PollReply:
    return PollReply(
        version=b'\x00\x01',
        oem=b'\x00\xff',
        esta_code=0x7FF0,
        short_name=b'pyartnet'.ljust(18, b'\x00'),
        long_name=b'Python Art-Net Receiver'.ljust(64, b'\x00'),
        node_report=b'#0001 [0000] OK'.ljust(64, b'\x00'),
        num_ports=b'\x00\x01',
        port_types=b'\x80\x00\x00\x00',
        good_output=b'\x80\x00\x00\x00',
        style=0,
        mac=bytes([0x02, 0x00, 0x00, 0xAA, 0xBB, 0xCC]),
        bind_index=1,
    )


def send_output(sock: socket.socket, address, universe: int, data: bytes, sequence: int = 0):
    sock.sendto(ArtCommand.to_bytes(Output(port_address=universe, data=data, sequence=sequence)), address)


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
