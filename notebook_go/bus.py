"""
MessageBus: the kernel's view of the notebook front-end.

The transport (Jupyter messaging or anything else) is not part of this
package; it plugs in by subclassing MessageBus. Outputs use the same dict
shapes as ExecutionResult.outputs.
"""

import threading
from collections import deque
from typing import Any, Callable, Iterable, Optional

from notebook_go.errors import InputNotAllowedError


class MessageBus:
    """Base bus: drops every output and refuses input."""

    def publish_stream(self, name: str, text: str) -> None:
        """Publish text on the "stdout" or "stderr" stream."""

    def publish_display(self, data: dict[str, Any], display_id: Optional[str] = None) -> None:
        """Publish a MIME bundle (mime type -> payload)."""

    def request_input(self, prompt: str, password: bool = False) -> str:
        """Ask the user for one line of input."""
        raise InputNotAllowedError("this front-end doesn't support input requests")

    def send_comm(self, message: dict[str, Any]) -> None:
        """Send a message over the widget communication link."""


class RecordingBus(MessageBus):
    """
    Bus that keeps everything it's given.

    Input replies come from a queue filled in advance; comm messages can be
    answered by an optional `on_comm` callback.
    """

    def __init__(self, replies: Iterable[str] = (), on_comm: Optional[Callable] = None):
        self.outputs: list[dict[str, Any]] = []
        self.prompts: list[tuple[str, bool]] = []
        self.comms: list[dict[str, Any]] = []
        self._replies = deque(replies)
        self._on_comm = on_comm
        self._lock = threading.Lock()

    def publish_stream(self, name: str, text: str) -> None:
        with self._lock:
            self.outputs.append({"type": "stream", "name": name, "text": text})

    def publish_display(self, data: dict[str, Any], display_id: Optional[str] = None) -> None:
        output = {"type": "display_data", "data": dict(data)}
        if display_id is not None:
            output["display_id"] = display_id
        with self._lock:
            self.outputs.append(output)

    def request_input(self, prompt: str, password: bool = False) -> str:
        with self._lock:
            self.prompts.append((prompt, password))
            if not self._replies:
                raise InputNotAllowedError("no reply available")
            return self._replies.popleft()

    def send_comm(self, message: dict[str, Any]) -> None:
        with self._lock:
            self.comms.append(message)
        if self._on_comm is not None:
            self._on_comm(message)

    def text(self, name: str = "stdout") -> str:
        """Concatenated text of one stream."""
        with self._lock:
            return "".join(
                o["text"] for o in self.outputs
                if o["type"] == "stream" and o["name"] == name
            )


class OutputRecorder(MessageBus):
    """Forwards to another bus while recording outputs for an ExecutionResult."""

    def __init__(self, bus: MessageBus):
        self.bus = bus
        self.outputs: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def publish_stream(self, name: str, text: str) -> None:
        if not text:
            return
        with self._lock:
            last = self.outputs[-1] if self.outputs else None
            if last and last["type"] == "stream" and last["name"] == name:
                last["text"] += text
            else:
                self.outputs.append({"type": "stream", "name": name, "text": text})
        self.bus.publish_stream(name, text)

    def publish_display(self, data: dict[str, Any], display_id: Optional[str] = None) -> None:
        with self._lock:
            self.outputs.append({"type": "display_data", "data": dict(data)})
        self.bus.publish_display(data, display_id)

    def publish_error(self, ename: str, evalue: str, traceback: Optional[list[str]] = None) -> None:
        with self._lock:
            self.outputs.append({
                "type": "error",
                "ename": ename,
                "evalue": evalue,
                "traceback": traceback or [],
            })
        self.bus.publish_stream("stderr", f"{ename}: {evalue}\n")

    def publish_markdown(self, text: str) -> None:
        self.publish_display({"text/markdown": text, "text/plain": text})

    def publish_html(self, html: str) -> None:
        self.publish_display({"text/html": html, "text/plain": html})

    def request_input(self, prompt: str, password: bool = False) -> str:
        return self.bus.request_input(prompt, password)

    def send_comm(self, message: dict[str, Any]) -> None:
        self.bus.send_comm(message)
