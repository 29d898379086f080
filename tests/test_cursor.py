import base64
import json
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from pcbcrm.errors import CursorDecodeError
from pcbcrm.pagination.cursor import (
    MAX_CURSOR_LENGTH,
    Cursor,
    CursorCodec,
    decode_cursor,
    encode_cursor,
)

ID = "3f6c1c7e-52a4-4d8e-9f0b-2f4d2b1c9a10"


@pytest.mark.parametrize(
    "value",
    [
        None,
        True,
        False,
        0,
        -42,
        2**53 + 1,
        3.5,
        0.1,
        "",
        "Joe's Pizza & Subs",
        "café \U0001f355",
        datetime(2026, 2, 3, 4, 5, 6, 789000, tzinfo=timezone.utc),
        datetime(2026, 2, 3, 4, 5, 6),
        date(2026, 2, 3),
        Decimal("12345.6700"),
    ],
)
@pytest.mark.parametrize("direction", ["asc", "desc"])
def test_round_trip_preserves_value_and_type(value, direction):
    token = encode_cursor(value, ID, direction)
    cursor = decode_cursor(token)
    assert cursor == Cursor(value, ID, direction)
    assert type(cursor.sort_value) is type(value)


def test_integer_tie_break_id_round_trips():
    cursor = decode_cursor(encode_cursor(10, 99, "asc"))
    assert cursor.tie_break_id == 99


def test_token_is_url_safe():
    token = encode_cursor("?/+&=" * 20, ID, "asc")
    assert set(token) <= set(
        "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
    )


def test_encode_rejects_bad_direction():
    with pytest.raises(ValueError):
        encode_cursor(1, ID, "sideways")


@pytest.mark.parametrize("value", [float("nan"), float("inf"), Decimal("NaN")])
def test_encode_rejects_non_finite_values(value):
    with pytest.raises(ValueError):
        encode_cursor(value, ID, "asc")


def test_encode_rejects_unsupported_types():
    with pytest.raises(TypeError):
        encode_cursor(object(), ID, "asc")
    with pytest.raises(TypeError):
        encode_cursor(1, 1.5, "asc")


def _raw(payload) -> str:
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")


@pytest.mark.parametrize(
    "token",
    [
        "",
        "!!!",
        "not base64 at all",
        "=" * 8,
        "ééé",
        _raw({"v": 1}),
        _raw([]),
        _raw(["i", 1, ID]),
        _raw(["i", 1, ID, "asc", "extra"]),
        _raw(["zz", 1, ID, "asc"]),
        _raw(["i", "1", ID, "asc"]),
        _raw(["i", True, ID, "asc"]),
        _raw(["f", "NaN", ID, "asc"]),
        _raw(["dt", "yesterday", ID, "asc"]),
        _raw(["dec", "abc", ID, "asc"]),
        _raw(["d", 20260203, ID, "asc"]),
        _raw(["i", 1, ID, "up"]),
        _raw(["i", 1, None, "asc"]),
        _raw(["i", 1, True, "asc"]),
        _raw(["i", 1, [ID], "asc"]),
        _raw([["i"], 1, ID, ["asc"]]),
        base64.urlsafe_b64encode(b"\xff\xfe\x00").decode(),
        base64.urlsafe_b64encode(b"[" * 5000).decode()[:1000],
        "a" * (MAX_CURSOR_LENGTH + 1),
    ],
)
def test_decode_rejects_garbage_with_cursor_decode_error(token):
    with pytest.raises(CursorDecodeError):
        decode_cursor(token)


def test_decode_rejects_non_string():
    with pytest.raises(CursorDecodeError):
        decode_cursor(None)  # type: ignore[arg-type]


def test_decode_checks_exact_value_type():
    token = encode_cursor(datetime(2026, 1, 1, tzinfo=timezone.utc), ID, "desc")
    assert decode_cursor(token, datetime).sort_value.year == 2026
    with pytest.raises(CursorDecodeError):
        decode_cursor(token, date)
    with pytest.raises(CursorDecodeError):
        decode_cursor(encode_cursor(5, ID, "asc"), float)
    with pytest.raises(CursorDecodeError):
        decode_cursor(encode_cursor(True, ID, "asc"), int)


def test_cursor_decode_error_is_a_value_error():
    assert issubclass(CursorDecodeError, ValueError)


class TestSignedCodec:
    def test_round_trip(self):
        codec = CursorCodec("s3cret")
        token = codec.encode(Decimal("10.50"), ID, "asc")
        assert "." in token
        assert codec.decode(token) == Cursor(Decimal("10.50"), ID, "asc")

    def test_tampered_payload_is_rejected(self):
        codec = CursorCodec("s3cret")
        body, _, signature = codec.encode(100, ID, "asc").partition(".")
        forged = _raw(["i", 0, ID, "asc"])
        with pytest.raises(CursorDecodeError):
            codec.decode(f"{forged}.{signature}")
        with pytest.raises(CursorDecodeError):
            codec.decode(f"{body}.{'A' * len(signature)}")

    def test_unsigned_token_is_rejected(self):
        token = encode_cursor(1, ID, "asc")
        with pytest.raises(CursorDecodeError):
            CursorCodec("s3cret").decode(token)

    def test_other_secret_is_rejected(self):
        token = CursorCodec("one").encode(1, ID, "asc")
        with pytest.raises(CursorDecodeError):
            CursorCodec("two").decode(token)

    def test_unsigned_codec_rejects_signed_token(self):
        token = CursorCodec("s3cret").encode(1, ID, "asc")
        with pytest.raises(CursorDecodeError):
            CursorCodec().decode(token)


HUGE = 10**400
TAGS = ["n", "b", "i", "f", "s", "dt", "d", "dec"]


def _decode_or_none(codec, token):
    """Decode ``token``; None when rejected. Any other exception fails the test."""
    try:
        return codec.decode(token)
    except CursorDecodeError:
        return None


@pytest.mark.parametrize("tag", TAGS)
@pytest.mark.parametrize("value", [HUGE, -HUGE, 1e308, str(HUGE)])
def test_numeric_overflow_payloads_never_escape(tag, value):
    token = _raw([tag, value, ID, "asc"])
    assert len(token) <= MAX_CURSOR_LENGTH
    result = _decode_or_none(CursorCodec(), token)
    assert result is None or isinstance(result, Cursor)


def test_huge_float_payload_is_rejected():
    with pytest.raises(CursorDecodeError):
        decode_cursor(_raw(["f", HUGE, ID, "asc"]))


def test_huge_tie_break_id_decodes_to_an_int():
    # Range checks against the id column belong to the paginator.
    assert decode_cursor(_raw(["i", 1, HUGE, "asc"])).tie_break_id == HUGE


MUTATIONS = "A_-.0z=%"


@pytest.mark.parametrize(
    "value",
    [42, 3.25, "Corner Cafe", datetime(2026, 2, 3, 4, 5, 6, tzinfo=timezone.utc), Decimal("9.99")],
)
def test_every_single_character_mutation_is_handled(value):
    codec = CursorCodec()
    token = codec.encode(value, ID, "desc")
    for position in range(len(token)):
        for replacement in MUTATIONS:
            mutated = token[:position] + replacement + token[position + 1 :]
            result = _decode_or_none(codec, mutated)
            assert result is None or isinstance(result, Cursor)


@pytest.mark.parametrize("value", [42, "Corner Cafe", Decimal("9.99")])
def test_mutated_signed_cursor_never_decodes_to_another_position(value):
    codec = CursorCodec("s3cret")
    token = codec.encode(value, ID, "asc")
    original = codec.decode(token)
    for position in range(len(token)):
        for replacement in MUTATIONS:
            mutated = token[:position] + replacement + token[position + 1 :]
            result = _decode_or_none(codec, mutated)
            # Trailing base64 bits can change without changing the bytes.
            assert result is None or result == original
