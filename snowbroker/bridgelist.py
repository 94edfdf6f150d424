"""Bridge descriptions loaded from newline-delimited JSON records."""

from __future__ import annotations

import binascii
import json
import threading
from dataclasses import dataclass
from typing import Iterable, Union

FINGERPRINT_LENGTH = 20

_JSON_FIELDS = {
    "displayName": "display_name",
    "webSocketAddress": "web_socket_address",
    "fingerprint": "fingerprint",
}


class BridgeNotFoundError(LookupError):
    """Raised when no bridge is known for a requested fingerprint."""

    def __init__(
        self, message: str = "bridge with requested fingerprint is unknown to the broker"
    ) -> None:
        super().__init__(message)


@dataclass(frozen=True)
class BridgeInfo:
    """One bridge: a display name, its WebSocket URL and its hex fingerprint."""

    display_name: str = ""
    web_socket_address: str = ""
    fingerprint: str = ""


def fingerprint_from_bytes(data: bytes) -> bytes:
    """Validate a raw bridge fingerprint, which must be exactly 20 bytes."""
    raw = bytes(data)
    if len(raw) != FINGERPRINT_LENGTH:
        raise ValueError(
            f"fingerprint must be {FINGERPRINT_LENGTH} bytes, got {len(raw)}"
        )
    return raw


def fingerprint_from_hex(text: str) -> bytes:
    """Decode a hex-encoded bridge fingerprint."""
    try:
        raw = binascii.unhexlify(text.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise ValueError(f"invalid hex fingerprint {text!r}") from exc
    return fingerprint_from_bytes(raw)


def _parse_record(line: str) -> BridgeInfo:
    try:
        record = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid bridge record: {exc}") from exc
    if not isinstance(record, dict):
        raise ValueError("bridge record must be a JSON object")
    values = {}
    for key, value in record.items():
        if key not in _JSON_FIELDS:
            raise ValueError(f"unknown field {key!r} in bridge record")
        if value is None:
            continue
        if not isinstance(value, str):
            raise ValueError(f"field {key!r} must be a string")
        values[_JSON_FIELDS[key]] = value
    return BridgeInfo(**values)


def _iter_lines(lines: Union[str, bytes, Iterable[Union[str, bytes]]]) -> Iterable[str]:
    if isinstance(lines, (str, bytes)):
        lines = lines.splitlines()
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        if line.endswith("\n"):
            line = line[:-1]
        if line.endswith("\r"):
            line = line[:-1]
        yield line


class BridgeListHolder:
    """Thread-safe table of bridges keyed by their raw fingerprint."""

    def __init__(self) -> None:
        self._bridges: dict[bytes, BridgeInfo] = {}
        self._lock = threading.RLock()

    def get_bridge_info(self, fingerprint: bytes) -> BridgeInfo:
        """Return the bridge with this fingerprint or raise BridgeNotFoundError."""
        with self._lock:
            try:
                return self._bridges[bytes(fingerprint)]
            except KeyError:
                raise BridgeNotFoundError() from None

    def load_bridge_info(self, lines) -> None:
        """Replace the table with the records read from ``lines``.

        Every line must be a valid record; if any is not, ValueError is raised
        and the previously loaded table stays in place.
        """
        bridges: dict[bytes, BridgeInfo] = {}
        for line in _iter_lines(lines):
            info = _parse_record(line)
            bridges[fingerprint_from_hex(info.fingerprint)] = info
        with self._lock:
            self._bridges = bridges