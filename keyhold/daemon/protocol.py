"""Length-prefixed JSON protocol for daemon IPC.

Each frame is a 4-byte big-endian length followed by a UTF-8 JSON object.
A connection carries any number of requests; each request gets exactly one
response, in order.

Request format:
    {
        "id": str,              # Echoed back in the response
        "command": str,         # e.g. "health", "credentials.get"
        "params": {...}         # Command-specific parameters
    }

Response format:
    {
        "id": str,
        "status": "ok" | "error",
        "result": Any,                           # Command result
        "error": {"kind": str, "message": str}   # If status == "error"
    }
"""

import asyncio
import json
import socket
import struct
from typing import Any, Dict, Optional

from keyhold.errors import ErrorKind, FrameError, KeyholdError

HEADER = struct.Struct(">I")
MAX_FRAME_SIZE = 1 << 20  # 1 MiB


def encode_frame(message: Dict[str, Any]) -> bytes:
    payload = json.dumps(message, separators=(",", ":")).encode("utf-8")
    if len(payload) > MAX_FRAME_SIZE:
        raise FrameError(f"Frame of {len(payload)} bytes exceeds {MAX_FRAME_SIZE}")
    return HEADER.pack(len(payload)) + payload


def decode_payload(payload: bytes) -> Dict[str, Any]:
    try:
        message = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise FrameError(f"Invalid JSON frame: {e}") from None
    if not isinstance(message, dict):
        raise FrameError("Frame must contain a JSON object")
    return message


def _check_length(length: int) -> int:
    if length > MAX_FRAME_SIZE:
        raise FrameError(f"Frame of {length} bytes exceeds {MAX_FRAME_SIZE}")
    return length


async def read_frame(reader: asyncio.StreamReader) -> Optional[Dict[str, Any]]:
    """
    Read one frame from an asyncio stream.

    Returns:
        Decoded message, or None on a clean end of stream between frames

    Raises:
        FrameError: truncated, oversized or non-JSON frame
    """
    try:
        header = await reader.readexactly(HEADER.size)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise FrameError("Truncated frame header") from None

    (length,) = HEADER.unpack(header)
    _check_length(length)
    try:
        payload = await reader.readexactly(length)
    except asyncio.IncompleteReadError:
        raise FrameError("Truncated frame payload") from None
    return decode_payload(payload)


def _recv_exactly(sock: socket.socket, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = sock.recv(min(remaining, 65536))
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def recv_frame(sock: socket.socket) -> Optional[Dict[str, Any]]:
    """Blocking counterpart of read_frame for the CLI client."""
    header = _recv_exactly(sock, HEADER.size)
    if not header:
        return None
    if len(header) < HEADER.size:
        raise FrameError("Truncated frame header")
    (length,) = HEADER.unpack(header)
    _check_length(length)
    payload = _recv_exactly(sock, length)
    if len(payload) < length:
        raise FrameError("Truncated frame payload")
    return decode_payload(payload)


def serialize_request(
    command: str,
    params: Optional[Dict[str, Any]] = None,
    request_id: str = "",
) -> bytes:
    return encode_frame({"id": request_id, "command": command, "params": params or {}})


def serialize_response(
    request_id: Any,
    status: str,
    result: Any = None,
    error: Optional[Dict[str, str]] = None,
) -> bytes:
    return encode_frame(
        {"id": request_id, "status": status, "result": result, "error": error}
    )


def error_payload(exc: BaseException) -> Dict[str, str]:
    """Describe an exception for the wire without losing its class."""
    if isinstance(exc, KeyholdError):
        return {"kind": exc.kind.value, "type": type(exc).__name__, "message": str(exc)}
    return {"kind": ErrorKind.INTERNAL.value, "type": "InternalError", "message": "Internal daemon error"}
