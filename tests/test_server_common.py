# Copyright © 2026 Apple Inc.

import json
import socket
import unittest

from mlx_serve.server_common import (
    BadRequest,
    RequestTooLarge,
    encode_chunk,
    frame_payload,
    parse_request,
    peer_closed,
    read_request,
    response_head,
)


class TestParseRequest(unittest.TestCase):
    def test_request_line_and_headers(self):
        raw = (
            b"POST /api/generate?x=1 HTTP/1.1\r\n"
            b"Host: localhost\r\n"
            b"Accept:  Text/Event-Stream \r\n"
            b"Content-Length: 2\r\n\r\n{}"
        )
        request = parse_request(raw)
        self.assertEqual(request.method, "POST")
        self.assertEqual(request.target, "/api/generate?x=1")
        self.assertEqual(request.path, "/api/generate")
        self.assertEqual(request.headers["accept"], "text/event-stream")
        self.assertTrue(request.accepts_sse())
        self.assertEqual(request.json(), {})

    def test_malformed_request_line(self):
        for raw in (b"", b"\r\n\r\n", b"GET\r\n\r\n"):
            with self.subTest(raw=raw):
                with self.assertRaises(BadRequest):
                    parse_request(raw)

    def test_invalid_json_body(self):
        request = parse_request(b"POST / HTTP/1.1\r\n\r\n{oops")
        with self.assertRaises(BadRequest):
            request.json()


class TestReadRequest(unittest.TestCase):
    def setUp(self):
        self.client, self.server = socket.socketpair()
        self.server.settimeout(5)

    def tearDown(self):
        self.client.close()
        self.server.close()

    def test_reads_content_length_body(self):
        body = json.dumps({"model": "llama"}).encode()
        head = f"POST /api/generate HTTP/1.1\r\nContent-Length: {len(body)}\r\n\r\n"
        self.client.sendall(head.encode() + body[:5])
        self.client.sendall(body[5:])
        data = read_request(self.server)
        self.assertEqual(parse_request(data).json(), {"model": "llama"})

    def test_get_without_body_does_not_wait(self):
        self.client.sendall(b"GET /api/health HTTP/1.1\r\nHost: x\r\n\r\n")
        data = read_request(self.server)
        self.assertEqual(parse_request(data).path, "/api/health")

    def test_post_without_length_reads_to_eof(self):
        self.client.sendall(b'POST /api/pull HTTP/1.1\r\n\r\n{"tag":')
        self.client.sendall(b' "x"}')
        self.client.shutdown(socket.SHUT_WR)
        data = read_request(self.server)
        self.assertEqual(parse_request(data).json(), {"tag": "x"})

    def test_too_large(self):
        head = b"POST / HTTP/1.1\r\nContent-Length: 1000\r\n\r\n"
        self.client.sendall(head)
        with self.assertRaises(RequestTooLarge):
            read_request(self.server, max_bytes=100)

    def test_timeout_is_bad_request(self):
        self.server.settimeout(0.1)
        self.client.sendall(b"POST / HTTP/1.1\r\nContent-Length: 10\r\n\r\n{")
        with self.assertRaises(BadRequest):
            read_request(self.server)


class TestFraming(unittest.TestCase):
    def test_encode_chunk(self):
        payload = b"x" * 26
        self.assertEqual(encode_chunk(payload), b"1A\r\n" + payload + b"\r\n")

    def test_frame_payload(self):
        self.assertEqual(frame_payload({"token": "a"}, sse=False), b'{"token": "a"}\n')
        self.assertEqual(
            frame_payload({"token": "a"}, sse=True), b'data: {"token": "a"}\n\n'
        )

    def test_response_head(self):
        head = response_head(404, {"Connection": "close"})
        self.assertEqual(head, b"HTTP/1.1 404 Not Found\r\nConnection: close\r\n\r\n")


class TestPeerClosed(unittest.TestCase):
    def test_detects_closed_peer(self):
        client, server = socket.socketpair()
        try:
            self.assertFalse(peer_closed(server))
            client.close()
            self.assertTrue(peer_closed(server))
        finally:
            server.close()

    def test_pending_data_is_not_closed(self):
        client, server = socket.socketpair()
        try:
            client.sendall(b"more")
            self.assertFalse(peer_closed(server))
        finally:
            client.close()
            server.close()


if __name__ == "__main__":
    unittest.main()
