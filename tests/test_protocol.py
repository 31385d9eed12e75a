"""
Tests for daemon socket framing.
"""

import asyncio
import socket
import unittest

from keyhold.daemon.protocol import (
    HEADER,
    MAX_FRAME_SIZE,
    encode_frame,
    error_payload,
    read_frame,
    recv_frame,
    serialize_request,
    serialize_response,
)
from keyhold.errors import FrameError, NotLoggedInError


def reader_with(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


class TestReadFrame(unittest.IsolatedAsyncioTestCase):

    async def test_reads_consecutive_frames(self):
        data = serialize_request("health", request_id="1") + serialize_request("logout", request_id="2")
        reader = reader_with(data)

        first = await read_frame(reader)
        second = await read_frame(reader)
        self.assertEqual(first, {"id": "1", "command": "health", "params": {}})
        self.assertEqual(second["command"], "logout")
        self.assertIsNone(await read_frame(reader))

    async def test_truncated_header(self):
        with self.assertRaises(FrameError):
            await read_frame(reader_with(b"\x00\x00"))

    async def test_truncated_payload(self):
        with self.assertRaises(FrameError):
            await read_frame(reader_with(HEADER.pack(10) + b"{}"))

    async def test_oversized_frame_rejected_before_reading(self):
        reader = reader_with(HEADER.pack(MAX_FRAME_SIZE + 1), eof=False)
        with self.assertRaises(FrameError):
            await read_frame(reader)

    async def test_non_object_payload(self):
        payload = b"[1,2,3]"
        with self.assertRaises(FrameError):
            await read_frame(reader_with(HEADER.pack(len(payload)) + payload))


class TestBlockingFrames(unittest.TestCase):

    def test_recv_frame_over_socketpair(self):
        left, right = socket.socketpair()
        try:
            left.sendall(serialize_response("7", "ok", result={"uptime": 1}))
            left.shutdown(socket.SHUT_WR)
            self.assertEqual(
                recv_frame(right),
                {"id": "7", "status": "ok", "result": {"uptime": 1}, "error": None},
            )
            self.assertIsNone(recv_frame(right))
        finally:
            left.close()
            right.close()

    def test_encode_rejects_oversized_message(self):
        with self.assertRaises(FrameError):
            encode_frame({"blob": "x" * (MAX_FRAME_SIZE + 1)})


class TestErrorPayload(unittest.TestCase):

    def test_keyhold_error_keeps_kind(self):
        payload = error_payload(NotLoggedInError())
        self.assertEqual(payload["kind"], "precondition")
        self.assertEqual(payload["type"], "NotLoggedInError")

    def test_unexpected_error_is_not_echoed(self):
        payload = error_payload(RuntimeError("token=abc123"))
        self.assertEqual(payload["kind"], "internal")
        self.assertNotIn("abc123", payload["message"])


if __name__ == "__main__":
    unittest.main()
