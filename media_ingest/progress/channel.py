"""
Progress and control channel to an external orchestrator.

Newline-delimited JSON over a Unix socket. Outbound messages carry the
session id, tool identity and a timestamp; inbound `control` messages
(pause / resume / cancel) are acknowledged before they take effect.
Unknown inbound message types are ignored.
"""
import json
import logging
import os
import socket
import threading
import time
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from tqdm import tqdm

from .. import config
from ..pipeline.control import SessionControl


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class ProgressReporter:
    """Shared message construction for both channel flavours."""

    def __init__(self, session_id: str = "", control: Optional[SessionControl] = None):
        self.session_id = session_id
        self.control = control or SessionControl()
        self.started_at = time.time()

    @property
    def connected(self) -> bool:
        return False

    def send(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    def reset_start_time(self) -> None:
        self.started_at = time.time()

    def stage_started(self, name: str, display_name: str, number: int, total_stages: int) -> None:
        self.send({
            "type": "stage_started",
            "stage": {"name": name, "display_name": display_name,
                      "number": number, "total_stages": total_stages},
        })

    def stage_completed(self, name: str, number: int, duration_ms: float, items_processed: int) -> None:
        self.send({
            "type": "stage_completed",
            "stage": {"name": name, "number": number},
            "duration_ms": round(duration_ms),
            "items_processed": items_processed,
        })

    def progress(self, stage: str, completed: int, total: int, failed: int = 0, skipped: int = 0,
                 current_file: Optional[str] = None, bytes_done: int = 0, total_bytes: int = 0) -> None:
        elapsed = time.time() - self.started_at
        done_ratio = (bytes_done / total_bytes) if total_bytes else (completed / total if total else 1.0)
        eta_ms = None
        if 0 < done_ratio < 1 and elapsed > 0:
            eta_ms = round(elapsed / done_ratio * (1 - done_ratio) * 1000)
        self.send({
            "type": "progress",
            "stage": {"name": stage},
            "items": {"total": total, "completed": completed, "failed": failed, "skipped": skipped},
            "bytes": {"total": total_bytes, "completed": bytes_done} if total_bytes else None,
            "current": {"item": current_file,
                        "item_short": os.path.basename(current_file) if current_file else None},
            "timing": {"started_at": datetime.fromtimestamp(self.started_at, UTC).isoformat(),
                       "elapsed_ms": round(elapsed * 1000), "eta_ms": eta_ms},
            "throughput": {"items_per_sec": round(completed / elapsed, 2) if elapsed else None,
                           "bytes_per_sec": round(bytes_done / elapsed) if elapsed else None},
            "percent_complete": round(done_ratio * 100, 1),
        })

    def item_completed(self, item: str, status: str, duration_ms: float, bytes_processed: int = 0) -> None:
        self.send({
            "type": "item_completed",
            "item": item,
            "status": status,
            "duration_ms": round(duration_ms),
            "bytes_processed": bytes_processed,
        })

    def error(self, code: str, message: str, item: Optional[str] = None, fatal: bool = False) -> None:
        self.send({
            "type": "error",
            "error": {"code": code, "message": message, "item": item, "fatal": fatal},
        })

    def complete(self, summary: Dict[str, Any], exit_code: int) -> None:
        self.send({
            "type": "complete",
            "summary": summary,
            "exit_code": exit_code,
        })

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ProgressChannel(ProgressReporter):
    def __init__(self, socket_path: str, session_id: str = "",
                 control: Optional[SessionControl] = None,
                 timeout: float = config.PROGRESS_CONNECT_TIMEOUT_SEC):
        super().__init__(session_id, control)
        self.socket_path = socket_path
        self.timeout = timeout
        self._sock: Optional[socket.socket] = None
        self._send_lock = threading.Lock()
        self._reader: Optional[threading.Thread] = None
        self._connected = False

    @classmethod
    def from_env(cls, control: Optional[SessionControl] = None, show_progress: bool = True) -> ProgressReporter:
        """Connected channel when PROGRESS_SOCKET is set and reachable, else standalone."""
        path = os.environ.get(config.PROGRESS_SOCKET_ENV)
        session_id = os.environ.get(config.PROGRESS_SESSION_ENV, "")
        if path:
            channel = cls(path, session_id, control)
            if channel.connect():
                return channel
            logging.warning(f"Progress socket {path} unreachable; running standalone")
        return NullProgressChannel(session_id, control, show_progress=show_progress)

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except OSError as e:
            logging.debug(f"Cannot connect to progress socket {self.socket_path}: {e}")
            sock.close()
            return False
        sock.settimeout(None)
        self._sock = sock
        self._connected = True
        self._reader = threading.Thread(target=self._read_loop, name="progress-reader", daemon=True)
        self._reader.start()
        logging.debug(f"Connected to progress socket {self.socket_path}")
        return True

    def _read_loop(self) -> None:
        try:
            with self._sock.makefile("r", encoding="utf-8") as lines:
                for line in lines:
                    self.handle_line(line)
        except (OSError, ValueError) as e:
            logging.debug(f"Progress reader stopped: {e}")
        self._connected = False

    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            msg = json.loads(line)
        except ValueError:
            logging.debug(f"Ignoring malformed control line: {line[:80]}")
            return
        if not isinstance(msg, dict) or msg.get("type") != "control":
            return
        self._handle_control(msg.get("command"), msg.get("reason"))

    def _handle_control(self, command: Optional[str], reason: Optional[str]) -> None:
        if command == "pause":
            self.send_ack("pause")
            self.control.pause()
        elif command == "resume":
            self.send_ack("resume")
            self.control.resume()
        elif command == "cancel":
            self.send_ack("cancel")
            self.control.cancel(reason)
        else:
            logging.debug(f"Ignoring unknown control command: {command}")

    def send_ack(self, command: str, status: str = "accepted") -> None:
        self.send({"type": "ack", "command": command, "status": status})

    def send(self, message: Dict[str, Any]) -> None:
        if self._sock is None or not self._connected:
            return
        full = {
            "type": message.get("type", "progress"),
            "timestamp": _now(),
            "session_id": self.session_id,
            "app": config.TOOL_NAME,
            "app_version": config.TOOL_VERSION,
            **message,
        }
        data = (json.dumps(full) + "\n").encode("utf-8")
        with self._send_lock:
            try:
                self._sock.sendall(data)
            except OSError as e:
                logging.debug(f"Progress socket closed: {e}")
                self._connected = False

    def close(self) -> None:
        self._connected = False
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logging.debug(f"Progress socket shutdown: {e}")
            self._sock.close()
            self._sock = None
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(timeout=1.0)


class NullProgressChannel(ProgressReporter):
    """Standalone mode: progress goes to the log and an optional tqdm bar."""

    def __init__(self, session_id: str = "", control: Optional[SessionControl] = None,
                 show_progress: bool = False):
        super().__init__(session_id, control)
        self.show_progress = show_progress
        self._bar: Optional[tqdm] = None
        self._lock = threading.Lock()

    def send(self, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == "stage_started":
            stage = message["stage"]
            logging.info(f"[{stage['number']}/{stage['total_stages']}] {stage['display_name']}")
        elif kind == "stage_completed":
            logging.debug(f"Stage {message['stage']['name']} done: {message['items_processed']} items "
                          f"in {message['duration_ms']} ms")
        elif kind == "progress":
            self._update_bar(message["items"]["completed"], message["items"]["total"])
        elif kind == "item_completed":
            logging.debug(f"{message['status']}: {message['item']}")
        elif kind == "error":
            err = message["error"]
            where = f" ({err['item']})" if err.get("item") else ""
            log = logging.error if err["fatal"] else logging.warning
            log(f"{err['code']}: {err['message']}{where}")
        elif kind == "complete":
            self._close_bar()
            logging.info(f"Import finished: {message['summary']} (exit {message['exit_code']})")

    def _update_bar(self, completed: int, total: int) -> None:
        if not self.show_progress:
            return
        with self._lock:
            if self._bar is None:
                self._bar = tqdm(total=total, desc="Importing", unit="file")
            self._bar.total = total
            self._bar.n = completed
            self._bar.refresh()

    def _close_bar(self) -> None:
        with self._lock:
            if self._bar is not None:
                self._bar.close()
                self._bar = None

    def close(self) -> None:
        self._close_bar()
