"""Line-oriented text protocol with chunked base64 image transfer.

The codec is transport agnostic: it consumes one text line at a time and
reports structured events, and it builds the outbound lines of an image
transfer. It performs no I/O.

Wire format::

    IMG_BEGIN <filename> <byte-count>
    <base64 chunk, at most 180 characters>
    ...
    IMG_END

``IMG_ERROR <reason>`` aborts a transfer; every other line is a regular
message.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable

from nuslink.core.model import (
    ImageCompleted,
    ImageFailed,
    ImageProgress,
    ImageStarted,
    ProtocolEvent,
    RegularMessage,
)

IMG_BEGIN = "IMG_BEGIN"
IMG_END = "IMG_END"
IMG_ERROR = "IMG_ERROR"
CMD_ON = "ON"
CMD_OFF = "OFF"
CMD_GET = "GET"
CMD_GET_IMAGE = "GET_IMAGE"

# ~5 MB decoded.
MAX_BASE64_CHARS = 7_000_000
IMAGE_CHUNK_CHARS = 180
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

REASON_BEGIN_BAD_FORMAT = "begin_bad_format"
REASON_TOO_LARGE = "too_large"
REASON_BASE64_INVALID = "base64_invalid"
REASON_NO_FILE_SELECTED = "no_file_selected"
REASON_NOT_PNG = "not_png"
REASON_READ_FAILED = "read_failed"

LOGGER = logging.getLogger(__name__)


def size_mismatch_reason(expected: int, got: int) -> str:
    return f"size_mismatch exp={expected} got={got}"


def error_line(reason: str) -> str:
    return f"{IMG_ERROR} {reason}"


def encode_image_lines(
    filename: str,
    data: bytes,
    *,
    chunk_chars: int = IMAGE_CHUNK_CHARS,
) -> list[str]:
    """Build the outbound lines for one image transfer.

    Payloads of at least 8 bytes must carry the PNG signature, otherwise the
    result is a single ``IMG_ERROR not_png`` line.
    """
    if chunk_chars <= 0:
        raise ValueError("chunk_chars must be positive")
    if len(data) >= len(PNG_SIGNATURE) and not data.startswith(PNG_SIGNATURE):
        return [error_line(REASON_NOT_PNG)]

    encoded = base64.b64encode(data).decode("ascii")
    lines = [f"{IMG_BEGIN} {filename} {len(data)}"]
    lines.extend(encoded[i : i + chunk_chars] for i in range(0, len(encoded), chunk_chars))
    lines.append(IMG_END)
    return lines


class LineCodec:
    """Finite-state parser bound to one logical inbound stream.

    States are Idle and ReceivingImage. ``feed`` returns the events produced
    by the line and also passes each of them to ``on_event`` when set.
    """

    def __init__(
        self,
        on_event: Callable[[ProtocolEvent], None] | None = None,
        *,
        max_base64_chars: int = MAX_BASE64_CHARS,
    ) -> None:
        self.on_event = on_event
        self.max_base64_chars = max_base64_chars
        self._receiving_image = False
        self._chunks: list[str] = []
        self._buffered_chars = 0
        self._expected_bytes = 0
        self._filename = ""

    @property
    def receiving_image(self) -> bool:
        return self._receiving_image

    @property
    def buffered_chars(self) -> int:
        return self._buffered_chars

    def feed(self, raw: str) -> list[ProtocolEvent]:
        line = raw.strip()
        if not line:
            return []

        events: list[ProtocolEvent] = []
        if self._receiving_image:
            self._process_chunk_or_end(line, events)
        elif not self._process_begin(line, events):
            self._process_regular_or_error(line, events)

        if self.on_event is not None:
            for event in events:
                self.on_event(event)
        return events

    def reset(self) -> None:
        self._receiving_image = False
        self._chunks = []
        self._buffered_chars = 0
        self._expected_bytes = 0
        self._filename = ""

    def _process_chunk_or_end(self, line: str, events: list[ProtocolEvent]) -> None:
        if line == IMG_END:
            self._complete(events)
            return

        if self._buffered_chars + len(line) > self.max_base64_chars:
            LOGGER.warning(
                "Image %s exceeds %d base64 characters, aborting",
                self._filename,
                self.max_base64_chars,
            )
            events.append(ImageFailed(REASON_TOO_LARGE))
            self.reset()
            return

        self._chunks.append(line)
        self._buffered_chars += len(line)
        if self._expected_bytes > 0:
            # base64 carries 3 bytes in every 4 characters
            estimated = self._buffered_chars * 3 // 4
            events.append(ImageProgress(estimated, self._expected_bytes))

    def _process_begin(self, line: str, events: list[ProtocolEvent]) -> bool:
        parts = line.split()
        if parts[0] != IMG_BEGIN:
            return False
        if len(parts) < 3:
            events.append(ImageFailed(REASON_BEGIN_BAD_FORMAT))
            return True

        try:
            expected = int(parts[2])
        except ValueError:
            expected = 0
        self.reset()
        self._receiving_image = True
        self._filename = parts[1]
        self._expected_bytes = expected
        LOGGER.debug("Receiving image %s (%d bytes)", self._filename, expected)
        events.append(ImageStarted(self._filename, expected))
        return True

    def _process_regular_or_error(self, line: str, events: list[ProtocolEvent]) -> None:
        events.append(RegularMessage(line))
        if line.startswith(IMG_ERROR):
            self.reset()

    def _complete(self, events: list[ProtocolEvent]) -> None:
        filename = self._filename
        expected = self._expected_bytes
        encoded = "".join(self._chunks).encode("ascii", "ignore")
        self.reset()

        try:
            data = base64.b64decode(encoded, validate=False)
        except (binascii.Error, ValueError):
            events.append(ImageFailed(REASON_BASE64_INVALID))
            return

        if expected > 0 and len(data) != expected:
            events.append(ImageFailed(size_mismatch_reason(expected, len(data))))
            return

        LOGGER.debug("Image %s complete (%d bytes)", filename, len(data))
        events.append(ImageCompleted(data, filename))
