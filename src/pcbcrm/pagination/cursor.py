"""Opaque pagination cursor encoding and decoding.

A cursor captures the last row of a page as ``(sort_value, tie_break_id,
direction)``. The payload is a compact JSON array carrying a type tag
for the sort value, so decoding reproduces the exact Python value that
was encoded, and it is wrapped in unpadded URL-safe base64. A codec
built with a secret appends a truncated HMAC-SHA256 tag; such cursors
fail decoding after any modification.

Decoding never raises anything but :class:`CursorDecodeError`, whatever
string the client sends.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Union

from pcbcrm.errors import CursorDecodeError

ASC = "asc"
DESC = "desc"
DIRECTIONS: tuple[str, ...] = (ASC, DESC)

MAX_CURSOR_LENGTH = 1024
_MAC_BYTES = 12

SortValue = Union[None, bool, int, float, str, datetime, date, Decimal]
TieBreakId = Union[str, int]


@dataclass(frozen=True)
class Cursor:
    """Decoded pagination position."""

    sort_value: SortValue
    tie_break_id: TieBreakId
    direction: str


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


def _tag_value(value: SortValue) -> tuple[str, Any]:
    """Map a sort value to its ``(tag, json_value)`` pair."""
    if value is None:
        return "n", None
    if isinstance(value, bool):
        return "b", value
    if isinstance(value, int):
        return "i", value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Cannot encode non-finite sort value: {value!r}")
        return "f", value
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"Cannot encode non-finite sort value: {value!r}")
        return "dec", str(value)
    if isinstance(value, datetime):
        return "dt", value.isoformat()
    if isinstance(value, date):
        return "d", value.isoformat()
    if isinstance(value, str):
        return "s", value
    raise TypeError(f"Unsupported sort value type: {type(value).__name__}")


def _untag_value(tag: Any, raw: Any) -> SortValue:
    """Inverse of :func:`_tag_value`; raises ValueError on any mismatch."""
    if tag == "n" and raw is None:
        return None
    if tag == "b" and isinstance(raw, bool):
        return raw
    if tag == "i" and isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    if tag == "f" and isinstance(raw, (int, float)) and not isinstance(raw, bool):
        try:
            value = float(raw)
        except OverflowError as exc:
            raise ValueError(f"Float sort value out of range: {raw!r}") from exc
        if math.isfinite(value):
            return value
    if tag == "s" and isinstance(raw, str):
        return raw
    if isinstance(raw, str):
        if tag == "dt":
            return datetime.fromisoformat(raw)
        if tag == "d":
            return date.fromisoformat(raw)
        if tag == "dec":
            try:
                value = Decimal(raw)
            except InvalidOperation as exc:
                raise ValueError(f"Invalid decimal: {raw!r}") from exc
            if value.is_finite():
                return value
    raise ValueError(f"Invalid sort value for tag {tag!r}")


class CursorCodec:
    """Encodes and decodes pagination cursors.

    Args:
        secret: Optional signing key. When set, every cursor carries an
            HMAC tag and unsigned or modified cursors are rejected.
    """

    def __init__(self, secret: str | None = None) -> None:
        self._key = secret.encode("utf-8") if secret else None

    @property
    def signed(self) -> bool:
        return self._key is not None

    def _mac(self, payload: bytes) -> bytes:
        assert self._key is not None
        return hmac.new(self._key, payload, hashlib.sha256).digest()[:_MAC_BYTES]

    def encode(
        self,
        sort_value: SortValue,
        tie_break_id: TieBreakId,
        direction: str,
    ) -> str:
        """Encode a page boundary into an opaque, URL-safe token.

        Args:
            sort_value: Value of the sort column on the boundary row.
            tie_break_id: Primary key of the boundary row.
            direction: ``"asc"`` or ``"desc"``.

        Returns:
            The cursor string.

        Raises:
            ValueError: If the direction or a value cannot be encoded.
            TypeError: If the sort value or id has an unsupported type.
        """
        if direction not in DIRECTIONS:
            raise ValueError(f"Invalid sort direction: {direction!r}")
        if isinstance(tie_break_id, bool) or not isinstance(tie_break_id, (str, int)):
            raise TypeError(
                f"Unsupported tie-break id type: {type(tie_break_id).__name__}"
            )
        tag, raw = _tag_value(sort_value)
        payload = json.dumps(
            [tag, raw, tie_break_id, direction],
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")
        token = _b64encode(payload)
        if self._key is not None:
            token = f"{token}.{_b64encode(self._mac(payload))}"
        return token

    def decode(self, token: str, value_type: type | None = None) -> Cursor:
        """Decode a token produced by :meth:`encode`.

        Args:
            token: The cursor string received from the client.
            value_type: Expected Python type of the sort value (the sort
                column's type). Checked exactly, so a ``datetime`` cursor
                does not pass for a ``date`` column.

        Returns:
            The decoded :class:`Cursor`.

        Raises:
            CursorDecodeError: For any malformed, tampered, or mismatched
                token.
        """
        if not isinstance(token, str) or not token or len(token) > MAX_CURSOR_LENGTH:
            raise CursorDecodeError("Invalid pagination cursor")
        try:
            cursor = self._decode(token)
        except CursorDecodeError:
            raise
        except (ValueError, TypeError, OverflowError, RecursionError) as exc:
            raise CursorDecodeError("Invalid pagination cursor") from exc

        if value_type is not None and type(cursor.sort_value) is not value_type:
            raise CursorDecodeError(
                f"Cursor sort value is not of type {value_type.__name__}"
            )
        return cursor

    def _decode(self, token: str) -> Cursor:
        body, sep, signature = token.partition(".")
        payload = _b64decode(body)

        if self._key is not None:
            if not sep:
                raise CursorDecodeError("Unsigned pagination cursor")
            if not hmac.compare_digest(_b64decode(signature), self._mac(payload)):
                raise CursorDecodeError("Pagination cursor signature mismatch")
        elif sep:
            raise CursorDecodeError("Unexpected pagination cursor signature")

        data = json.loads(payload.decode("utf-8"))
        if not isinstance(data, list) or len(data) != 4:
            raise CursorDecodeError("Pagination cursor has wrong arity")

        tag, raw, tie_break_id, direction = data
        if direction not in DIRECTIONS:
            raise CursorDecodeError("Pagination cursor has invalid direction")
        if isinstance(tie_break_id, bool) or not isinstance(tie_break_id, (str, int)):
            raise CursorDecodeError("Pagination cursor has invalid id")

        return Cursor(
            sort_value=_untag_value(tag, raw),
            tie_break_id=tie_break_id,
            direction=direction,
        )


_unsigned = CursorCodec()


def encode_cursor(sort_value: SortValue, tie_break_id: TieBreakId, direction: str) -> str:
    """Encode an unsigned cursor. See :meth:`CursorCodec.encode`."""
    return _unsigned.encode(sort_value, tie_break_id, direction)


def decode_cursor(token: str, value_type: type | None = None) -> Cursor:
    """Decode an unsigned cursor. See :meth:`CursorCodec.decode`."""
    return _unsigned.decode(token, value_type)
