"""
Loopback tests for the Art-Net listener thread
"""
import dataclasses
import errno
import gc
import queue
import socket
import sys
import threading
from ipaddress import IPv4Address
from unittest.mock import MagicMock

import pytest

from artnet_codec import ArtCommand, Output, Poll, PollReply
from artnet_receiver import ArtnetReceiverBuilder, _DeliveryChannel, _ListenerWorker
from conftest import send_output, wait_for


POLL = ArtCommand.to_bytes(Poll())


def test_outputs_arrive_in_order(receiver, controller):
    frames = [(n % 4, bytes([n, 255 - n]) * 8) for n in range(20)]
    for sequence, (universe, data) in enumerate(frames, start=1):
        send_output(controller, receiver.local_address, universe, data, sequence)

    received = [receiver.recv(timeout=2.0) for _ in frames]

    assert [(o.universe, o.data) for o in received] == frames
    assert [o.sequence for o in received] == list(range(1, 21))
    with pytest.raises(queue.Empty):
        receiver.recv(timeout=0.1)


def test_malformed_packets_are_ignored(receiver, controller):
    address = receiver.local_address
    for junk in [b'hello', b'Art-Net\x00', b'Art-Net\x00\x34\x12' + b'\x00' * 8,
                 b'Art-Net\x00\x00\x50\x00\x0e\x00\x00\x00\x00\x02\x00']:
        controller.sendto(junk, address)
    send_output(controller, address, 3, b'\x10\x20')

    output = receiver.recv(timeout=2.0)

    assert output.universe == 3
    assert output.data == b'\x10\x20'
    with pytest.raises(queue.Empty):
        receiver.recv(timeout=0.1)
    assert receiver.thread.is_alive()


def test_non_output_commands_are_not_delivered(receiver, controller):
    controller.sendto(ArtCommand.to_bytes(PollReply()), receiver.local_address)
    controller.sendto(b'Art-Net\x00\x00\x52\x00\x0e\x00\x00', receiver.local_address)
    send_output(controller, receiver.local_address, 1, b'\x01\x02')

    assert receiver.recv(timeout=2.0).universe == 1


def test_poll_without_reply_template_gets_no_answer(receiver, controller):
    controller.settimeout(0.3)
    controller.sendto(POLL, receiver.local_address)

    with pytest.raises(socket.timeout):
        controller.recvfrom(1024)
    assert receiver.thread.is_alive()


def test_poll_gets_reply_with_addresses_filled_in(builder, controller, poll_reply_template):
    with builder.poll_reply(poll_reply_template).build() as receiver:
        controller.sendto(POLL, receiver.local_address)

        data, sender = controller.recvfrom(1024)
        reply = ArtCommand.from_buffer(data)

        assert sender == receiver.local_address
        assert isinstance(reply, PollReply)
        assert reply.address == IPv4Address(receiver.local_address[0])
        assert reply.port == receiver.local_address[1]
        assert reply.bind_ip == IPv4Address(controller.getsockname()[0])

        restored = dataclasses.replace(
            reply,
            address=poll_reply_template.address,
            port=poll_reply_template.port,
            bind_ip=poll_reply_template.bind_ip,
        )
        assert restored == poll_reply_template

        controller.settimeout(0.2)
        with pytest.raises(socket.timeout):
            controller.recvfrom(1024)


def test_changing_builder_after_build_does_not_affect_listener(builder, controller, poll_reply_template):
    with builder.poll_reply(poll_reply_template).build() as receiver:
        builder.poll_reply(PollReply(short_name=b'other'))
        controller.sendto(POLL, receiver.local_address)

        reply = ArtCommand.from_buffer(controller.recvfrom(1024)[0])

        assert reply.name() == 'pyartnet'


def _worker(poll_reply, sock=None, bind_address=('10.0.0.5', 6454)):
    sock = sock or MagicMock()
    return _ListenerWorker(sock, _DeliveryChannel(), poll_reply, bind_address, None)


def test_no_reply_when_local_address_is_not_ipv4(poll_reply_template):
    worker = _worker(poll_reply_template)
    worker.sock.getsockname.return_value = ('::1', 6454, 0, 0)

    worker._reply_to_poll(('10.0.0.9', 50000))

    worker.sock.sendto.assert_not_called()


@pytest.mark.parametrize('remote', [
    ('::ffff:10.0.0.9', 6454, 0, 0),
    ('fe80::1', 6454, 0, 2),
])
def test_no_reply_to_ipv6_controller(poll_reply_template, remote):
    worker = _worker(poll_reply_template)
    worker.sock.getsockname.return_value = ('10.0.0.5', 6454)

    worker._reply_to_poll(remote)

    worker.sock.sendto.assert_not_called()


def test_reply_uses_bind_address_when_local_address_unavailable(poll_reply_template):
    worker = _worker(poll_reply_template, bind_address=('10.0.0.5', 6454))
    worker.sock.getsockname.side_effect = OSError(errno.EBADF, 'Bad file descriptor')

    worker._reply_to_poll(('10.0.0.9', 50000))

    data, remote = worker.sock.sendto.call_args[0]
    reply = ArtCommand.from_buffer(data)
    assert remote == ('10.0.0.9', 50000)
    assert reply.address == IPv4Address('10.0.0.5')
    assert reply.port == 6454
    assert reply.bind_ip == IPv4Address('10.0.0.9')


def test_no_reply_when_bind_address_is_ipv6(poll_reply_template):
    worker = _worker(poll_reply_template, bind_address=('::', 6454))
    worker.sock.getsockname.side_effect = OSError(errno.EBADF, 'Bad file descriptor')

    worker._reply_to_poll(('10.0.0.9', 50000))

    worker.sock.sendto.assert_not_called()


def test_unencodable_reply_is_skipped():
    worker = _worker(PollReply(short_name=b'x' * 40))
    worker.sock.getsockname.return_value = ('10.0.0.5', 6454)

    worker._reply_to_poll(('10.0.0.9', 50000))

    worker.sock.sendto.assert_not_called()


def test_send_failure_is_not_fatal(poll_reply_template):
    worker = _worker(poll_reply_template)
    worker.sock.getsockname.return_value = ('10.0.0.5', 6454)
    worker.sock.sendto.side_effect = OSError(errno.ENETUNREACH, 'Network is unreachable')

    worker._reply_to_poll(('10.0.0.9', 50000))

    worker.sock.sendto.assert_called_once()


def test_receive_errors_do_not_stop_listener():
    sock = MagicMock()
    channel = _DeliveryChannel()
    output = ArtCommand.to_bytes(Output(port_address=2, data=b'\x05\x06'))
    sock.recvfrom.side_effect = [
        OSError(errno.ECONNREFUSED, 'Connection refused'),
        socket.timeout(),
        (output, ('10.0.0.9', 6454)),
        (output, ('10.0.0.9', 6454)),
    ]
    worker = _ListenerWorker(sock, channel, None, ('0.0.0.0', 6454), 0.05)
    original_send = channel.send

    def send_then_close(item):
        delivered = original_send(item)
        channel.disconnect()
        return delivered

    channel.send = send_then_close
    worker.run()

    sock.close.assert_called_once()
    assert sock.recvfrom.call_count == 3


def test_close_stops_idle_listener(builder):
    receiver = builder.build()

    receiver.close()

    assert receiver.join(2.0)
    assert receiver.closed
    assert receiver.recv() is None


def test_disconnect_does_not_wait_for_queue_lock():
    channel = _DeliveryChannel()
    with channel._queue.mutex:
        disconnecting = threading.Thread(target=channel.disconnect, daemon=True)
        disconnecting.start()
        disconnecting.join(1.0)
        assert not disconnecting.is_alive()

    assert channel.closed
    assert not channel.send(Output(port_address=0, data=b'\x00\x00'))


def test_close_ends_iteration_in_another_thread(receiver, controller):
    collected = []
    reader = threading.Thread(target=lambda: collected.extend(receiver))
    reader.start()
    send_output(controller, receiver.local_address, 5, b'\x01\x01')
    assert wait_for(lambda: len(collected) == 1)

    receiver.close()
    reader.join(2.0)

    assert not reader.is_alive()
    assert [o.universe for o in collected] == [5]


def test_dropped_receiver_stops_listener_on_next_output(builder, controller):
    receiver = builder.poll_interval(None).build()
    thread = receiver.thread
    address = receiver.local_address
    send_output(controller, address, 1, b'\x00\x00')
    first = receiver.recv(timeout=2.0)
    assert first.universe == 1

    del receiver
    gc.collect()
    thread.join(0.2)
    assert thread.is_alive()

    send_output(controller, address, 2, b'\x00\x00')
    thread.join(2.0)

    assert not thread.is_alive()


def test_dropped_receiver_stops_polling_listener_without_traffic(builder):
    receiver = builder.build()
    thread = receiver.thread

    del receiver
    gc.collect()

    thread.join(2.0)
    assert not thread.is_alive()


@pytest.mark.skipif(not sys.platform.startswith('linux'), reason="SO_REUSEADDR semantics for UDP differ by platform")
def test_reuse_address_allows_two_listeners_on_one_port():
    first = ArtnetReceiverBuilder().socket_address('127.0.0.1', 0).poll_interval(0.05).build()
    try:
        port = first.local_address[1]
        second = ArtnetReceiverBuilder().socket_address('127.0.0.1', port).poll_interval(0.05).build()
        second.close()
        assert second.local_address == first.local_address
    finally:
        first.close()


def test_without_reuse_address_second_bind_fails():
    first = (
        ArtnetReceiverBuilder()
        .socket_address('127.0.0.1', 0)
        .reuse_address(False)
        .poll_interval(0.05)
        .build()
    )
    try:
        port = first.local_address[1]
        with pytest.raises(OSError) as exc_info:
            ArtnetReceiverBuilder().socket_address('127.0.0.1', port).reuse_address(False).build()
        assert exc_info.value.errno == errno.EADDRINUSE
    finally:
        first.close()


def test_bind_failure_is_raised_from_build():
    # TEST-NET-3 is never assigned to a local interface
    with pytest.raises(OSError):
        ArtnetReceiverBuilder().socket_address('203.0.113.77', 0).build()


def test_builder_validates_settings():
    builder = ArtnetReceiverBuilder()

    with pytest.raises(ValueError):
        builder.port(70000)
    with pytest.raises(ValueError):
        builder.poll_interval(0)
    with pytest.raises(TypeError):
        builder.poll_reply(b'not a reply')
    with pytest.raises(ValueError):
        builder.poll_reply(PollReply(short_name=b'x' * 19))
