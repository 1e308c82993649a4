"""
Display sideband: a private channel between the running cell program and
the kernel, carrying rich display data and input requests.

The channel is a named pipe whose path is given to the child in
$NOTEBOOK_GO_PIPE. Each frame is a 4-byte big-endian length followed by
that many bytes of JSON.
"""

import fcntl
import logging
import os
import struct
import threading
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional

from pydantic import BaseModel, ValidationError

from notebook_go.errors import SidebandError


logger = logging.getLogger(__name__)

MAX_FRAME_SIZE = 64 * 1024 * 1024
_HEADER = struct.Struct(">I")


class FrameKind(str, Enum):
    DISPLAY = "display"
    INPUT_REQUEST = "input-request"
    INPUT_REPLY = "input-reply"
    HEARTBEAT = "heartbeat"


class Frame(BaseModel):
    """One sideband message."""
    kind: FrameKind
    mime_type: Optional[str] = None
    payload: str = ""
    masked: bool = False
    ack: bool = False
    display_id: Optional[str] = None

    @classmethod
    def display(cls, mime_type: str, payload: str, display_id: Optional[str] = None) -> "Frame":
        return cls(kind=FrameKind.DISPLAY, mime_type=mime_type, payload=payload,
                   display_id=display_id)

    @classmethod
    def input_request(cls, prompt: str, masked: bool = False) -> "Frame":
        return cls(kind=FrameKind.INPUT_REQUEST, payload=prompt, masked=masked)

    @classmethod
    def input_reply(cls, payload: str) -> "Frame":
        return cls(kind=FrameKind.INPUT_REPLY, payload=payload)

    @classmethod
    def heartbeat(cls, ack: bool = False) -> "Frame":
        return cls(kind=FrameKind.HEARTBEAT, ack=ack)


def encode_frame(frame: Frame) -> bytes:
    body = frame.model_dump_json(exclude_none=True).encode("utf-8")
    return _HEADER.pack(len(body)) + body


def decode_frame(body: bytes) -> Frame:
    try:
        return Frame.model_validate_json(body)
    except ValidationError as e:
        raise SidebandError(f"malformed frame: {e.errors()[0]['msg']}") from e


def _read_exactly(stream: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_frame(stream: BinaryIO) -> Optional[Frame]:
    """
    Read one frame. Returns None on a clean end of stream.

    Raises:
        SidebandError: on a truncated, oversized or undecodable frame
    """
    header = _read_exactly(stream, _HEADER.size)
    if not header:
        return None
    if len(header) < _HEADER.size:
        raise SidebandError("stream ended inside a frame header")
    (size,) = _HEADER.unpack(header)
    if size > MAX_FRAME_SIZE:
        raise SidebandError(f"frame of {size} bytes exceeds the {MAX_FRAME_SIZE} limit")
    body = _read_exactly(stream, size)
    if len(body) < size:
        raise SidebandError(f"stream ended inside a frame ({len(body)}/{size} bytes)")
    return decode_frame(body)


class SidebandChannel:
    """
    Named pipe owned by one execution.

    The kernel holds a write end open itself so the reader doesn't see an
    end of stream before the child opens the pipe, or between two opens.
    `release()` drops it once the child has exited.
    """

    def __init__(self, directory: Path, name: str = "sideband.pipe"):
        self.path = Path(directory) / name
        self._reader: Optional[BinaryIO] = None
        self._keepalive: Optional[int] = None

    def open(self) -> BinaryIO:
        if self.path.exists():
            self.path.unlink()
        os.mkfifo(self.path, 0o600)
        read_fd = os.open(self.path, os.O_RDONLY | os.O_NONBLOCK)
        self._keepalive = os.open(self.path, os.O_WRONLY)
        flags = fcntl.fcntl(read_fd, fcntl.F_GETFL)
        fcntl.fcntl(read_fd, fcntl.F_SETFL, flags & ~os.O_NONBLOCK)
        self._reader = os.fdopen(read_fd, "rb", buffering=0)
        return self._reader

    def release(self) -> None:
        if self._keepalive is not None:
            os.close(self._keepalive)
            self._keepalive = None

    def close(self) -> None:
        self.release()
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        if self.path.exists():
            self.path.unlink()


class SidebandReader:
    """
    Drains frames from the channel on a background thread.

    Handlers are called from the reader thread. A malformed frame stops the
    reader; stdout/stderr draining is not affected.
    """

    def __init__(self, stream: BinaryIO,
                 on_display: Callable[[Frame], None],
                 on_input_request: Callable[[Frame], None],
                 on_heartbeat: Optional[Callable[[Frame], None]] = None):
        self.stream = stream
        self.on_display = on_display
        self.on_input_request = on_input_request
        self.on_heartbeat = on_heartbeat
        self.frames_read = 0
        self.error: Optional[SidebandError] = None
        self._thread: Optional[threading.Thread] = None

    def _discard(self) -> None:
        # Keep the pipe empty so the child never blocks writing to it.
        try:
            while self.stream.read(65536):
                pass
        except (OSError, ValueError):
            pass

    def _loop(self) -> None:
        while True:
            try:
                frame = read_frame(self.stream)
            except SidebandError as e:
                logger.warning("sideband reader stopped: %s", e)
                self.error = e
                self._discard()
                return
            except (OSError, ValueError) as e:
                logger.warning("sideband channel broken: %s", e)
                self.error = SidebandError(str(e))
                return
            if frame is None:
                return
            self.frames_read += 1
            if frame.kind is FrameKind.DISPLAY:
                self.on_display(frame)
            elif frame.kind is FrameKind.INPUT_REQUEST:
                self.on_input_request(frame)
            elif frame.kind is FrameKind.HEARTBEAT and self.on_heartbeat is not None:
                self.on_heartbeat(frame)
            else:
                logger.debug("ignoring sideband frame of kind %s", frame.kind.value)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._loop, name="sideband-reader", daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


_WIDGETS_BOOTSTRAP = """<script>
(function() {
  if (!window.Jupyter || !Jupyter.notebook || !Jupyter.notebook.kernel) { return; }
  Jupyter.notebook.kernel.comm_manager.register_target("notebook_go", function(comm) {
    comm.on_msg(function(msg) {
      var data = msg.content.data;
      if (data.kind === "heartbeat" && !data.ack) {
        comm.send({kind: "heartbeat", ack: true});
      }
    });
  });
})();
</script>
<span>notebook-go widgets link installed.</span>"""


class WidgetLink:
    """Communication link with a front-end widget library, with a heartbeat check."""

    def __init__(self):
        self.installed = False
        self._pong = threading.Event()

    def install(self, bus) -> None:
        bus.publish_display({"text/html": _WIDGETS_BOOTSTRAP,
                             "text/plain": "notebook-go widgets link installed."})
        self.installed = True

    def on_comm_message(self, message: dict[str, Any]) -> None:
        """Called by the bus for every message coming from the front-end."""
        try:
            frame = Frame.model_validate(message)
        except ValidationError:
            logger.debug("ignoring comm message %r", message)
            return
        if frame.kind is FrameKind.HEARTBEAT and frame.ack:
            self._pong.set()

    def send_heartbeat_and_wait(self, bus, timeout: float) -> bool:
        """Send a heartbeat and wait up to `timeout` seconds for its ack."""
        self._pong.clear()
        bus.send_comm(Frame.heartbeat().model_dump(mode="json", exclude_none=True))
        return self._pong.wait(timeout)
