import json
import shutil
import socket
import tempfile
import time
from pathlib import Path

import pytest

from media_ingest import config
from media_ingest.pipeline.control import SessionControl
from media_ingest.progress.channel import NullProgressChannel, ProgressChannel


class RecordingChannel(ProgressChannel):
    """Captures outbound messages with the control state at send time."""

    def __init__(self, control):
        super().__init__("/unused", "sess-1", control)
        self.sent = []

    def send(self, message):
        self.sent.append((message, self.control.paused, self.control.cancelled))


@pytest.fixture
def short_dir():
    # AF_UNIX paths are limited to ~104 bytes; pytest's tmp_path can exceed that
    d = tempfile.mkdtemp(prefix="mi-")
    try:
        yield Path(d)
    finally:
        shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def server(short_dir):
    path = str(short_dir / "p.sock")
    srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    srv.bind(path)
    srv.listen(1)
    srv.settimeout(5)
    try:
        yield path, srv
    finally:
        srv.close()


def _read_message(lines):
    return json.loads(lines.readline())


def test_messages_carry_identity(server):
    path, srv = server
    channel = ProgressChannel(path, session_id="sess-42")
    assert channel.connect()
    conn, _ = srv.accept()
    conn.settimeout(5)
    lines = conn.makefile("r", encoding="utf-8")
    try:
        channel.stage_started("copying", "Copying files", 4, 5)
        channel.progress("copying", completed=1, total=4, current_file="/card/IMG_0001.JPG",
                         bytes_done=50, total_bytes=200)
        channel.complete({"total": 4}, 0)

        started = _read_message(lines)
        assert started["type"] == "stage_started"
        assert started["session_id"] == "sess-42"
        assert started["app"] == config.TOOL_NAME
        assert started["app_version"] == config.TOOL_VERSION
        assert started["timestamp"]
        assert started["stage"] == {"name": "copying", "display_name": "Copying files",
                                    "number": 4, "total_stages": 5}

        progress = _read_message(lines)
        assert progress["items"]["completed"] == 1
        assert progress["current"]["item_short"] == "IMG_0001.JPG"
        assert progress["percent_complete"] == 25.0

        done = _read_message(lines)
        assert done["type"] == "complete"
        assert done["exit_code"] == 0
    finally:
        lines.close()
        conn.close()
        channel.close()


def test_inbound_pause_is_acknowledged(server):
    path, srv = server
    control = SessionControl()
    channel = ProgressChannel(path, session_id="s", control=control)
    assert channel.connect()
    conn, _ = srv.accept()
    conn.settimeout(5)
    lines = conn.makefile("r", encoding="utf-8")
    try:
        conn.sendall(b'{"type":"hello"}\n{"type":"control","command":"pause"}\n')
        ack = _read_message(lines)
        assert ack["type"] == "ack"
        assert ack["command"] == "pause"
        assert ack["status"] == "accepted"

        deadline = time.time() + 5
        while not control.paused and time.time() < deadline:
            time.sleep(0.01)
        assert control.paused
    finally:
        lines.close()
        conn.close()
        channel.close()
    assert not channel.connected


def test_ack_precedes_state_change():
    control = SessionControl()
    channel = RecordingChannel(control)

    channel.handle_line('{"type":"control","command":"pause"}')
    channel.handle_line('{"type":"control","command":"resume"}')
    channel.handle_line('{"type":"control","command":"cancel","reason":"operator"}')

    acks = [(m["command"], paused, cancelled) for m, paused, cancelled in channel.sent]
    assert acks == [("pause", False, False), ("resume", True, False), ("cancel", False, False)]
    assert control.cancelled
    assert control.cancel_reason == "operator"


def test_unknown_and_malformed_lines_ignored():
    control = SessionControl()
    channel = RecordingChannel(control)

    channel.handle_line("")
    channel.handle_line("not json")
    channel.handle_line('["control"]')
    channel.handle_line('{"type":"status"}')
    channel.handle_line('{"type":"control","command":"reboot"}')

    assert channel.sent == []
    assert not control.paused and not control.cancelled


def test_unreachable_socket_falls_back(short_dir, monkeypatch):
    monkeypatch.setenv(config.PROGRESS_SOCKET_ENV, str(short_dir / "nobody.sock"))
    monkeypatch.setenv(config.PROGRESS_SESSION_ENV, "sess-7")
    reporter = ProgressChannel.from_env(show_progress=False)

    assert isinstance(reporter, NullProgressChannel)
    assert reporter.session_id == "sess-7"
    assert not reporter.connected

    monkeypatch.delenv(config.PROGRESS_SOCKET_ENV)
    assert isinstance(ProgressChannel.from_env(), NullProgressChannel)


def test_null_channel_logs_errors(caplog):
    reporter = NullProgressChannel()
    with caplog.at_level("WARNING"):
        reporter.error("copy_failed", "disk full", item="IMG_0001.JPG")
    assert "copy_failed: disk full (IMG_0001.JPG)" in caplog.text


def test_wait_while_paused_sees_cancel():
    naps = []
    control = SessionControl(poll_interval=0.5)

    def sleep(seconds):
        naps.append(seconds)
        if len(naps) == 3:
            control.cancel("stop")

    control._sleep = sleep
    control.pause()
    assert control.wait_while_paused() is False
    assert naps == [0.5, 0.5, 0.5]

    fresh = SessionControl(sleep=naps.append)
    assert fresh.wait_while_paused() is True
