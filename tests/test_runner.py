from __future__ import annotations

import logging
import queue
import threading
import time

import pytest

from pollusens.config import SessionRuntime
from pollusens.descriptors import DescriptorError, PortSettings, SensorDescriptor, SensorNotFoundError
from pollusens.runner import SensorSession, SessionState, connect_by_name
from pollusens.transport import Transport


class FakeTransport(Transport):
    def __init__(self):
        self.chunks: "queue.Queue" = queue.Queue()
        self.written: list[bytes] = []
        self.closed = False

    def push(self, item) -> None:
        self.chunks.put(item)

    def read(self, size: int) -> bytes:
        item = self.chunks.get(timeout=5.0)
        if isinstance(item, Exception):
            raise item
        return item

    def write(self, data: bytes) -> None:
        if self.closed:
            raise OSError("closed")
        self.written.append(data)

    def cancel_read(self) -> None:
        self.chunks.put(b"")

    def close(self) -> None:
        self.closed = True
        self.chunks.put(b"")


class Opener:
    def __init__(self, transport=None, error=None):
        self.transport = transport or FakeTransport()
        self.error = error
        self.calls: list[PortSettings] = []

    def __call__(self, settings: PortSettings) -> Transport:
        self.calls.append(settings)
        if self.error is not None:
            raise self.error
        return self.transport


def make_descriptor(**extra) -> SensorDescriptor:
    entry = {
        "name": "gauge",
        "port": {"baudRate": 115200},
        "frame": {"length": 3, "startByte": "0xAA", "endByte": "none"},
        "data": {"v": "data[1]"},
    }
    entry.update(extra)
    return SensorDescriptor.from_entry(entry)


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def test_one_shot_requests_resolve_in_fifo_order() -> None:
    opener = Opener()
    readings: list[dict] = []
    session = SensorSession(make_descriptor(), opener)
    session.subscribe(on_reading=readings.append)
    session.connect()
    try:
        assert opener.calls[0].baud_rate == 115200
        first = session.next_reading()
        second = session.next_reading()
        opener.transport.push(bytes.fromhex("AA 01 00 AA 02 00"))
        assert first.result(timeout=2.0) == {"v": 1}
        assert second.result(timeout=2.0) == {"v": 2}
        opener.transport.push(b"")
        assert session.join(timeout=2.0)
        assert readings == [{"v": 1}, {"v": 2}]
        assert session.stats()["readings"] == 2
        assert session.stats()["frames"] == 2
    finally:
        session.disconnect()


def test_raw_frames_and_checksum_failures_are_reported() -> None:
    opener = Opener()
    raw: list[bytes] = []
    errors: list[str] = []
    descriptor = make_descriptor(checksum={"eval": "data[2]", "compare": "data[1]"})
    session = SensorSession(descriptor, opener)
    session.subscribe(on_raw_frame=raw.append, on_error=errors.append)
    with session:
        opener.transport.push(bytes.fromhex("AA 01 01 AA 01 02"))
        opener.transport.push(b"")
        assert session.join(timeout=2.0)
    assert raw == [bytes.fromhex("AA 01 01")]
    assert errors == ["Checksum failed"]
    assert session.state is SessionState.CLOSED


def test_end_of_stream_ends_loop_without_error() -> None:
    opener = Opener()
    errors: list[str] = []
    session = SensorSession(make_descriptor(), opener)
    session.subscribe(on_error=errors.append)
    session.connect()
    opener.transport.push(b"")
    assert session.join(timeout=2.0)
    assert errors == []
    session.disconnect()
    assert opener.transport.closed


def test_source_fault_is_reported_and_pending_requests_cancelled() -> None:
    opener = Opener()
    errors: list[str] = []
    session = SensorSession(make_descriptor(), opener)
    session.subscribe(on_error=errors.append)
    session.connect()
    try:
        pending = session.next_reading()
        opener.transport.push(OSError("device unplugged"))
        assert session.join(timeout=2.0)
        assert errors == ["Read loop error: device unplugged"]
        assert pending.cancelled()
        with pytest.raises(RuntimeError):
            session.next_reading()
    finally:
        session.disconnect()


def test_callback_exception_ends_loop() -> None:
    opener = Opener()
    errors: list[str] = []

    def explode(values) -> None:
        raise ValueError("boom")

    session = SensorSession(make_descriptor(), opener)
    session.subscribe(on_reading=explode, on_error=errors.append)
    session.connect()
    try:
        opener.transport.push(bytes.fromhex("AA 01 00"))
        assert session.join(timeout=2.0)
        assert errors == ["Read loop error: boom"]
    finally:
        session.disconnect()


def test_open_failure_leaves_session_closed() -> None:
    opener = Opener(error=OSError("no such device"))
    session = SensorSession(make_descriptor(), opener)
    with pytest.raises(OSError):
        session.connect()
    assert session.state is SessionState.CLOSED


def test_invalid_command_fails_before_opening() -> None:
    opener = Opener()
    session = SensorSession(make_descriptor(command="ZZ"), opener)
    with pytest.raises(DescriptorError):
        session.connect()
    assert opener.calls == []
    assert session.state is SessionState.CLOSED


def test_state_transitions_and_disconnect_cancels_requests() -> None:
    opener = Opener()
    session = SensorSession(make_descriptor(), opener, SessionRuntime(join_timeout_sec=2.0))
    assert session.state is SessionState.IDLE
    session.connect()
    assert session.state is SessionState.RUNNING
    with pytest.raises(RuntimeError):
        session.connect()
    pending = session.next_reading()
    session.disconnect()
    assert session.state is SessionState.CLOSED
    assert pending.cancelled()
    assert opener.transport.closed
    session.disconnect()
    assert session.state is SessionState.CLOSED
    with pytest.raises(RuntimeError):
        session.next_reading()


def test_commands_stop_after_disconnect() -> None:
    opener = Opener()
    session = SensorSession(make_descriptor(command="01 02", send_cmd_period=0.01), opener)
    session.connect()
    try:
        assert wait_for(lambda: len(opener.transport.written) >= 2)
    finally:
        session.disconnect()
    written = len(opener.transport.written)
    time.sleep(0.05)
    assert len(opener.transport.written) == written
    assert opener.transport.written[0] == b"\x01\x02"


def test_connect_by_name_resolves_inheritance() -> None:
    entries = [
        {"name": "base", "frame": {"length": 3, "startByte": "0xAA"}, "data": {"v": "data[1]"}},
        {"name": "child", "inherits_from": "base", "port": {"baudRate": 2400}},
    ]
    opener = Opener()
    session = connect_by_name(entries, "child", opener)
    try:
        assert session.state is SessionState.RUNNING
        assert opener.calls[0].baud_rate == 2400
        future = session.next_reading()
        opener.transport.push(bytes.fromhex("AA 09 00"))
        assert future.result(timeout=2.0) == {"v": 9}
    finally:
        session.disconnect()


def test_connect_by_name_unknown_sensor() -> None:
    opener = Opener()
    with pytest.raises(SensorNotFoundError):
        connect_by_name([{"name": "base", "frame": {"length": 3}}], "missing", opener)
    assert opener.calls == []


def test_disconnect_drops_frames_left_in_current_chunk() -> None:
    opener = Opener()
    delivered: list[int] = []
    entered = threading.Event()
    release = threading.Event()

    def slow_consumer(values) -> None:
        delivered.append(values["v"])
        if len(delivered) == 1:
            entered.set()
            release.wait(2.0)

    session = SensorSession(make_descriptor(), opener)
    session.subscribe(on_reading=slow_consumer)
    session.connect()
    opener.transport.push(bytes.fromhex("AA 01 00 AA 02 00 AA 03 00"))
    assert entered.wait(2.0)
    closer = threading.Thread(target=session.disconnect)
    closer.start()
    try:
        assert wait_for(lambda: opener.transport.closed)
    finally:
        release.set()
    closer.join(timeout=3.0)
    assert delivered == [1]
    assert session.state is SessionState.CLOSED


def test_unsubscribed_session_logs_readings_and_frames(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="pollusens.runner")
    opener = Opener()
    session = SensorSession(make_descriptor(), opener)
    session.connect()
    try:
        opener.transport.push(bytes.fromhex("AA 07 00"))
        opener.transport.push(b"")
        assert session.join(timeout=2.0)
    finally:
        session.disconnect()
    assert "gauge reading: v=7" in caplog.text
    assert "gauge frame: aa 07 00" in caplog.text
