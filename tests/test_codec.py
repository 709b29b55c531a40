from __future__ import annotations

import base64

from nuslink.core.codec import (
    IMAGE_CHUNK_CHARS,
    IMG_BEGIN,
    IMG_END,
    PNG_SIGNATURE,
    LineCodec,
    encode_image_lines,
    error_line,
)
from nuslink.core.model import ImageCompleted, ImageFailed, ImageProgress, ImageStarted, RegularMessage

NINE_BYTES = b"abcdefghi"
NINE_BYTES_B64 = base64.b64encode(NINE_BYTES).decode("ascii")


def _feed_all(codec: LineCodec, lines: list[str]) -> list:
    events = []
    for line in lines:
        events.extend(codec.feed(line))
    return events


def test_image_transfer_completes_with_payload_and_filename() -> None:
    codec = LineCodec()
    events = _feed_all(codec, ["IMG_BEGIN pic.png 9", NINE_BYTES_B64, "IMG_END"])

    completed = [e for e in events if isinstance(e, ImageCompleted)]
    assert len(completed) == 1
    assert completed[0].data == NINE_BYTES
    assert completed[0].filename == "pic.png"
    assert events[0] == ImageStarted("pic.png", 9)
    assert not codec.receiving_image


def test_size_mismatch_reports_both_sizes() -> None:
    codec = LineCodec()
    events = _feed_all(codec, ["IMG_BEGIN pic.png 20", NINE_BYTES_B64, "IMG_END"])

    assert events[-1] == ImageFailed("size_mismatch exp=20 got=9")
    assert not any(isinstance(e, ImageCompleted) for e in events)
    assert not codec.receiving_image


def test_begin_with_too_few_fields_stays_idle() -> None:
    codec = LineCodec()
    assert codec.feed("IMG_BEGIN onlyonearg") == [ImageFailed("begin_bad_format")]
    assert not codec.receiving_image

    assert codec.feed(NINE_BYTES_B64) == [RegularMessage(NINE_BYTES_B64)]


def test_oversized_transfer_fails_once_then_parses_fresh() -> None:
    codec = LineCodec(max_base64_chars=1000)
    codec.feed("IMG_BEGIN big.png 5000")

    chunk = "A" * 180
    events = []
    for _ in range(10):
        events.extend(codec.feed(chunk))

    failures = [e for e in events if isinstance(e, ImageFailed)]
    assert failures == [ImageFailed("too_large")]
    assert not codec.receiving_image
    # Lines after the fault are parsed from Idle.
    assert events[-1] == RegularMessage(chunk)
    assert codec.feed(IMG_END) == [RegularMessage(IMG_END)]


def test_default_cap_is_seven_million_characters() -> None:
    codec = LineCodec()
    codec.feed("IMG_BEGIN big.png 0")
    chunk = "A" * 1_000_000
    failures = []
    for _ in range(8):
        failures.extend(e for e in codec.feed(chunk) if isinstance(e, ImageFailed))
    assert failures == [ImageFailed("too_large")]


def test_progress_estimates_three_quarters_of_buffered_characters() -> None:
    codec = LineCodec()
    codec.feed("IMG_BEGIN pic.png 300")
    events = codec.feed("A" * 100)
    assert events == [ImageProgress(75, 300)]
    assert events[0].fraction == 0.25


def test_progress_fraction_is_capped_below_one() -> None:
    assert ImageProgress(500, 300).fraction == 0.99


def test_no_progress_without_positive_expected_size() -> None:
    codec = LineCodec()
    codec.feed("IMG_BEGIN pic.png unknown")
    assert codec.feed(NINE_BYTES_B64) == []
    events = codec.feed(IMG_END)
    assert events == [ImageCompleted(NINE_BYTES, "pic.png")]


def test_invalid_base64_fails_and_resets() -> None:
    codec = LineCodec()
    codec.feed("IMG_BEGIN pic.png 0")
    codec.feed("QUJDR")
    events = codec.feed(IMG_END)
    assert events == [ImageFailed("base64_invalid")]
    assert codec.feed("hello") == [RegularMessage("hello")]


def test_unknown_characters_in_chunks_are_ignored() -> None:
    codec = LineCodec()
    events = _feed_all(codec, ["IMG_BEGIN pic.png 3", "QUéJD", IMG_END])
    assert events[-1] == ImageCompleted(b"ABC", "pic.png")


def test_error_marker_passes_through_and_resets() -> None:
    codec = LineCodec()
    assert codec.feed("IMG_ERROR no_file_selected") == [RegularMessage("IMG_ERROR no_file_selected")]
    assert not codec.receiving_image


def test_lines_are_trimmed_and_blank_lines_ignored() -> None:
    codec = LineCodec()
    assert codec.feed("   ") == []
    assert codec.feed("  hello  ") == [RegularMessage("hello")]


def test_begin_marker_must_be_first_token() -> None:
    codec = LineCodec()
    assert codec.feed("IMG_BEGINNING a b") == [RegularMessage("IMG_BEGINNING a b")]
    assert not codec.receiving_image


def test_on_event_callback_sees_every_event() -> None:
    seen = []
    codec = LineCodec(on_event=seen.append)
    codec.feed("IMG_BEGIN pic.png 9")
    codec.feed(NINE_BYTES_B64)
    codec.feed(IMG_END)
    assert [type(e) for e in seen] == [ImageStarted, ImageProgress, ImageCompleted]


def test_encode_image_lines_chunks_png_payload() -> None:
    data = PNG_SIGNATURE + bytes(range(256)) * 2
    lines = encode_image_lines("shot.png", data)

    assert lines[0] == f"{IMG_BEGIN} shot.png {len(data)}"
    assert lines[-1] == IMG_END
    chunks = lines[1:-1]
    assert all(len(chunk) <= IMAGE_CHUNK_CHARS for chunk in chunks)
    assert base64.b64decode("".join(chunks)) == data


def test_encode_image_lines_rejects_non_png() -> None:
    assert encode_image_lines("notes.txt", b"not a png file") == [error_line("not_png")]


def test_encoded_lines_decode_back_through_codec() -> None:
    data = PNG_SIGNATURE + b"\x00" * 1000
    codec = LineCodec()
    events = _feed_all(codec, encode_image_lines("shot.png", data))
    assert events[-1] == ImageCompleted(data, "shot.png")
