#!/usr/bin/env python3
"""
Art-Net Packet Codec
====================

Encodes and decodes the subset of Art-Net 4 packets needed by the receiver:
ArtPoll, ArtPollReply, ArtDmx (Output) and ArtSync. Other known opcodes are
decoded into a generic command carrying the raw body.

License: MIT
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from ipaddress import IPv4Address
from typing import Tuple, Union


ARTNET_ID = b'Art-Net\x00'
ARTNET_PORT = 6454
PROTOCOL_VERSION = (0, 14)

HEADER_SIZE = 10  # ID + opcode
MIN_DMX_LENGTH = 2
MAX_DMX_LENGTH = 512


class ArtnetDecodeError(ValueError):
    """Raised when a buffer is not a valid Art-Net packet."""


class ArtnetEncodeError(ValueError):
    """Raised when a command cannot be written to the wire."""


class OpCode(IntEnum):
    """Art-Net opcodes (transmitted little-endian)."""
    POLL = 0x2000
    POLL_REPLY = 0x2100
    DIAG_DATA = 0x2300
    COMMAND = 0x2400
    DATA_REQUEST = 0x2700
    DATA_REPLY = 0x2800
    OUTPUT = 0x5000
    NZS = 0x5100
    SYNC = 0x5200
    ADDRESS = 0x6000
    INPUT = 0x7000
    TOD_REQUEST = 0x8000
    TOD_DATA = 0x8100
    TOD_CONTROL = 0x8200
    RDM = 0x8300
    RDM_SUB = 0x8400
    TIME_CODE = 0x9700
    TIME_SYNC = 0x9800
    TRIGGER = 0x9900
    DIRECTORY = 0x9A00
    DIRECTORY_REPLY = 0x9B00
    IP_PROG = 0xF800
    IP_PROG_REPLY = 0xF900


def _fixed(value: bytes, size: int, name: str) -> bytes:
    """Pad a byte field to its wire width, rejecting overflow."""
    if isinstance(value, str):
        value = value.encode('ascii', errors='replace')
    value = bytes(value)
    if len(value) > size:
        raise ArtnetEncodeError(f"Field {name} is {len(value)} bytes, maximum is {size}")
    return value.ljust(size, b'\x00')


def _u8(value: int, name: str) -> int:
    if not 0 <= value <= 0xFF:
        raise ArtnetEncodeError(f"Field {name} out of range: {value}")
    return value


def _u16(value: int, name: str) -> int:
    if not 0 <= value <= 0xFFFF:
        raise ArtnetEncodeError(f"Field {name} out of range: {value}")
    return value


@dataclass(frozen=True)
class Poll:
    """ArtPoll: a controller asking nodes on the network to identify themselves."""
    version: Tuple[int, int] = PROTOCOL_VERSION
    talk_to_me: int = 0
    diagnostics_priority: int = 0

    opcode = OpCode.POLL

    @classmethod
    def from_body(cls, body: bytes) -> 'Poll':
        if len(body) < 4:
            raise ArtnetDecodeError(f"ArtPoll too short: {len(body) + HEADER_SIZE} bytes")
        return cls(version=(body[0], body[1]), talk_to_me=body[2], diagnostics_priority=body[3])

    def to_body(self) -> bytes:
        return bytes([
            _u8(self.version[0], 'version'),
            _u8(self.version[1], 'version'),
            _u8(self.talk_to_me, 'talk_to_me'),
            _u8(self.diagnostics_priority, 'diagnostics_priority'),
        ])


# IP, Port, VersInfo, NetSwitch/SubSwitch, Oem, UbeaVersion, Status1, EstaMan,
# ShortName, LongName, NodeReport, NumPorts, PortTypes, GoodInput, GoodOutput,
# SwIn, SwOut, SwVideo, SwMacro, SwRemote, Spare, Style, MAC, BindIp,
# BindIndex, Status2, Filler
_POLL_REPLY_FORMAT = struct.Struct('<4sH2s2s2sBBH18s64s64s2s4s4s4s4s4sBBB3sB6s4sBB26s')
POLL_REPLY_SIZE = HEADER_SIZE + _POLL_REPLY_FORMAT.size
# Art-Net 2/3 nodes stop after the MAC field
POLL_REPLY_MIN_SIZE = HEADER_SIZE + _POLL_REPLY_FORMAT.size - (4 + 1 + 1 + 26)


@dataclass(frozen=True)
class PollReply:
    """
    ArtPollReply: a node's identity and capabilities.

    Instances are immutable; use ``dataclasses.replace`` to derive a copy
    with different fields. Byte-array fields are padded with zeros to their
    wire width when encoded.
    """
    address: IPv4Address = IPv4Address('0.0.0.0')
    port: int = ARTNET_PORT
    version: bytes = b'\x00\x00'
    port_address: bytes = b'\x00\x00'
    oem: bytes = b'\x00\x00'
    ubea_version: int = 0
    status_1: int = 0
    esta_code: int = 0
    short_name: bytes = b''
    long_name: bytes = b''
    node_report: bytes = b''
    num_ports: bytes = b'\x00\x00'
    port_types: bytes = b'\x00\x00\x00\x00'
    good_input: bytes = b'\x00\x00\x00\x00'
    good_output: bytes = b'\x00\x00\x00\x00'
    swin: bytes = b'\x00\x00\x00\x00'
    swout: bytes = b'\x00\x00\x00\x00'
    sw_video: int = 0
    sw_macro: int = 0
    sw_remote: int = 0
    spare: bytes = b'\x00\x00\x00'
    style: int = 0
    mac: bytes = b'\x00' * 6
    bind_ip: IPv4Address = IPv4Address('0.0.0.0')
    bind_index: int = 0
    status_2: int = 0
    filler: bytes = b'\x00' * 26

    opcode = OpCode.POLL_REPLY

    @classmethod
    def from_body(cls, body: bytes) -> 'PollReply':
        if len(body) < POLL_REPLY_MIN_SIZE - HEADER_SIZE:
            raise ArtnetDecodeError(f"ArtPollReply too short: {len(body) + HEADER_SIZE} bytes")
        body = body[:_POLL_REPLY_FORMAT.size].ljust(_POLL_REPLY_FORMAT.size, b'\x00')
        (address, port, version, port_address, oem, ubea_version, status_1, esta_code,
         short_name, long_name, node_report, num_ports, port_types, good_input,
         good_output, swin, swout, sw_video, sw_macro, sw_remote, spare, style, mac,
         bind_ip, bind_index, status_2, filler) = _POLL_REPLY_FORMAT.unpack(body)
        return cls(
            address=IPv4Address(address),
            port=port,
            version=version,
            port_address=port_address,
            oem=oem,
            ubea_version=ubea_version,
            status_1=status_1,
            esta_code=esta_code,
            short_name=short_name,
            long_name=long_name,
            node_report=node_report,
            num_ports=num_ports,
            port_types=port_types,
            good_input=good_input,
            good_output=good_output,
            swin=swin,
            swout=swout,
            sw_video=sw_video,
            sw_macro=sw_macro,
            sw_remote=sw_remote,
            spare=spare,
            style=style,
            mac=mac,
            bind_ip=IPv4Address(bind_ip),
            bind_index=bind_index,
            status_2=status_2,
            filler=filler,
        )

    def to_body(self) -> bytes:
        return _POLL_REPLY_FORMAT.pack(
            IPv4Address(self.address).packed,
            _u16(self.port, 'port'),
            _fixed(self.version, 2, 'version'),
            _fixed(self.port_address, 2, 'port_address'),
            _fixed(self.oem, 2, 'oem'),
            _u8(self.ubea_version, 'ubea_version'),
            _u8(self.status_1, 'status_1'),
            _u16(self.esta_code, 'esta_code'),
            _fixed(self.short_name, 18, 'short_name'),
            _fixed(self.long_name, 64, 'long_name'),
            _fixed(self.node_report, 64, 'node_report'),
            _fixed(self.num_ports, 2, 'num_ports'),
            _fixed(self.port_types, 4, 'port_types'),
            _fixed(self.good_input, 4, 'good_input'),
            _fixed(self.good_output, 4, 'good_output'),
            _fixed(self.swin, 4, 'swin'),
            _fixed(self.swout, 4, 'swout'),
            _u8(self.sw_video, 'sw_video'),
            _u8(self.sw_macro, 'sw_macro'),
            _u8(self.sw_remote, 'sw_remote'),
            _fixed(self.spare, 3, 'spare'),
            _u8(self.style, 'style'),
            _fixed(self.mac, 6, 'mac'),
            IPv4Address(self.bind_ip).packed,
            _u8(self.bind_index, 'bind_index'),
            _u8(self.status_2, 'status_2'),
            _fixed(self.filler, 26, 'filler'),
        )

    def name(self) -> str:
        """Short name as text, without the trailing NULs."""
        return self.short_name.split(b'\x00', 1)[0].decode('ascii', errors='replace')


@dataclass(frozen=True)
class Output:
    """
    ArtDmx: one universe of channel levels.

    ``port_address`` is the 15-bit Port-Address (Net << 8 | Sub-Net << 4 | Universe).

    Decoding accepts odd lengths from 2 to 512, since some controllers send
    them; encoding only writes the even lengths the protocol requires.
    """
    port_address: int
    data: bytes
    sequence: int = 0
    physical: int = 0
    version: Tuple[int, int] = PROTOCOL_VERSION

    opcode = OpCode.OUTPUT

    @property
    def universe(self) -> int:
        return self.port_address

    @classmethod
    def from_body(cls, body: bytes) -> 'Output':
        if len(body) < 8:
            raise ArtnetDecodeError(f"ArtDmx too short: {len(body) + HEADER_SIZE} bytes")
        version = (body[0], body[1])
        sequence, physical, port_address = struct.unpack_from('<BBH', body, 2)
        length = struct.unpack_from('>H', body, 6)[0]  # the only big-endian length in the packet
        if not MIN_DMX_LENGTH <= length <= MAX_DMX_LENGTH:
            raise ArtnetDecodeError(f"ArtDmx length {length} outside {MIN_DMX_LENGTH}..{MAX_DMX_LENGTH}")
        data = body[8:8 + length]
        if len(data) < length:
            raise ArtnetDecodeError(f"ArtDmx declares {length} bytes but carries {len(data)}")
        return cls(
            port_address=port_address & 0x7FFF,
            data=bytes(data),
            sequence=sequence,
            physical=physical,
            version=version,
        )

    def to_body(self) -> bytes:
        length = len(self.data)
        if not MIN_DMX_LENGTH <= length <= MAX_DMX_LENGTH or length % 2:
            raise ArtnetEncodeError(f"ArtDmx data must be an even length between 2 and 512, got {length}")
        if not 0 <= self.port_address <= 0x7FFF:
            raise ArtnetEncodeError(f"Port-Address out of range: {self.port_address}")
        return struct.pack(
            '<BBBBH',
            _u8(self.version[0], 'version'),
            _u8(self.version[1], 'version'),
            _u8(self.sequence, 'sequence'),
            _u8(self.physical, 'physical'),
            self.port_address,
        ) + struct.pack('>H', length) + bytes(self.data)


@dataclass(frozen=True)
class Sync:
    """ArtSync: tells nodes to output previously received ArtDmx frames."""
    aux: bytes = b'\x00\x00'
    version: Tuple[int, int] = PROTOCOL_VERSION

    opcode = OpCode.SYNC

    @classmethod
    def from_body(cls, body: bytes) -> 'Sync':
        if len(body) < 4:
            raise ArtnetDecodeError(f"ArtSync too short: {len(body) + HEADER_SIZE} bytes")
        return cls(aux=bytes(body[2:4]), version=(body[0], body[1]))

    def to_body(self) -> bytes:
        return bytes([_u8(self.version[0], 'version'), _u8(self.version[1], 'version')]) + _fixed(self.aux, 2, 'aux')


@dataclass(frozen=True)
class OtherCommand:
    """A recognised opcode whose body is not interpreted."""
    opcode: OpCode
    data: bytes = b''

    def to_body(self) -> bytes:
        return bytes(self.data)


Command = Union[Poll, PollReply, Output, Sync, OtherCommand]

_DECODERS = {
    OpCode.POLL: Poll.from_body,
    OpCode.POLL_REPLY: PollReply.from_body,
    OpCode.OUTPUT: Output.from_body,
    OpCode.SYNC: Sync.from_body,
}


class ArtCommand:
    """Entry points for converting between datagrams and commands."""

    @staticmethod
    def from_buffer(buffer: bytes) -> Command:
        """
        Decode a datagram into a command.

        Args:
            buffer: Raw datagram bytes

        Returns:
            One of Poll, PollReply, Output, Sync or OtherCommand

        Raises:
            ArtnetDecodeError: If the buffer is not a valid Art-Net packet
        """
        if len(buffer) < HEADER_SIZE:
            raise ArtnetDecodeError(f"Packet too short: {len(buffer)} bytes")
        if bytes(buffer[:8]) != ARTNET_ID:
            raise ArtnetDecodeError("Missing Art-Net header")

        raw_opcode = struct.unpack_from('<H', buffer, 8)[0]
        try:
            opcode = OpCode(raw_opcode)
        except ValueError:
            raise ArtnetDecodeError(f"Unknown opcode: 0x{raw_opcode:04x}") from None

        body = bytes(buffer[HEADER_SIZE:])
        decoder = _DECODERS.get(opcode)
        if decoder is None:
            return OtherCommand(opcode=opcode, data=body)
        return decoder(body)

    @staticmethod
    def to_bytes(command: Command) -> bytes:
        """
        Encode a command as a complete datagram.

        Raises:
            ArtnetEncodeError: If a field does not fit its wire format
        """
        try:
            body = command.to_body()
        except ArtnetEncodeError:
            raise
        except (struct.error, ValueError, TypeError) as e:
            raise ArtnetEncodeError(str(e)) from e
        return ARTNET_ID + struct.pack('<H', int(command.opcode)) + body
