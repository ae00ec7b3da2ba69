# Copyright © 2026 Apple Inc.

import json
import logging
import select
import socket
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

MAX_REQUEST_BYTES = 8 << 20
HEADER_TERMINATOR = b"\r\n\r\n"
CLOSING_CHUNK = b"0\r\n\r\n"
SSE_DONE = b"data: [DONE]\n\n"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "*",
    "Access-Control-Allow-Headers": "*",
}


class BadRequest(ValueError):
    status = HTTPStatus.BAD_REQUEST


class RequestTooLarge(BadRequest):
    status = HTTPStatus.REQUEST_ENTITY_TOO_LARGE


@dataclass
class HTTPRequest:
    method: str
    target: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def path(self) -> str:
        """Request path without the query string, used for routing."""
        return urlsplit(self.target).path

    def accepts_sse(self) -> bool:
        return "text/event-stream" in self.headers.get("accept", "")

    def json(self) -> Any:
        """Decode the body as JSON, raising :class:`BadRequest` on failure."""
        try:
            return json.loads(self.body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logging.debug(f"Invalid JSON body: {e}")
            raise BadRequest(f"Invalid JSON in request body: {e}") from e


def parse_request(data: bytes) -> HTTPRequest:
    """
    Parse one buffered HTTP/1.x request. Header names and values are trimmed
    and lowercased. Chunked request bodies are not supported.
    """
    head, _, body = data.partition(HEADER_TERMINATOR)
    try:
        text = head.decode("latin-1")
    except UnicodeDecodeError as e:
        raise BadRequest("malformed request") from e

    lines = text.split("\r\n")
    parts = lines[0].split()
    if len(parts) < 2:
        raise BadRequest("malformed request line")
    method, target = parts[0].upper(), parts[1]

    headers = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if not sep:
            continue
        headers[name.strip().lower()] = value.strip().lower()
    return HTTPRequest(method, target, headers, body)


def _content_length(head: bytes) -> Optional[int]:
    for line in head.split(b"\r\n")[1:]:
        name, sep, value = line.partition(b":")
        if sep and name.strip().lower() == b"content-length":
            try:
                length = int(value.strip())
            except ValueError as e:
                raise BadRequest("invalid Content-Length") from e
            if length < 0:
                raise BadRequest("invalid Content-Length")
            return length
    return None


def read_request(sock: socket.socket, max_bytes: int = MAX_REQUEST_BYTES) -> bytes:
    """
    Read one request from ``sock``: bytes up to the blank line, then
    ``Content-Length`` bytes of body. A body-carrying request without a
    length is read until the peer shuts down its side of the connection.
    """
    data = b""
    try:
        while HEADER_TERMINATOR not in data:
            chunk = sock.recv(65536)
            if not chunk:
                break
            data += chunk
            if len(data) > max_bytes:
                raise RequestTooLarge("request too large")

        head, sep, body = data.partition(HEADER_TERMINATOR)
        if not sep:
            return data

        length = _content_length(head)
        if length is None:
            method = head.split(b" ", 1)[0].upper()
            if method not in (b"POST", b"PUT", b"PATCH"):
                return data
            length = max_bytes + 1
        elif len(head) + len(sep) + length > max_bytes:
            raise RequestTooLarge("request too large")

        while len(body) < length:
            chunk = sock.recv(65536)
            if not chunk:
                break
            body += chunk
            if len(head) + len(sep) + len(body) > max_bytes:
                raise RequestTooLarge("request too large")
    except socket.timeout as e:
        raise BadRequest("timed out reading request") from e
    return head + sep + body


# Response writing


def response_head(status: int, headers: Dict[str, str]) -> bytes:
    try:
        reason = HTTPStatus(status).phrase
    except ValueError:
        reason = "Unknown"
    lines = [f"HTTP/1.1 {status} {reason}"]
    lines += [f"{name}: {value}" for name, value in headers.items()]
    lines += ["", ""]
    return "\r\n".join(lines).encode("latin-1")


def write_json_response(
    sock: socket.socket,
    status_code: int,
    payload: Any,
    headers: Optional[Dict[str, str]] = None,
) -> None:
    response_json = json.dumps(payload).encode()
    all_headers = {
        "Content-Type": "application/json",
        "Content-Length": str(len(response_json)),
        "Connection": "close",
    }
    all_headers.update(CORS_HEADERS)
    if headers:
        all_headers.update(headers)
    sock.sendall(response_head(status_code, all_headers) + response_json)


def write_stream_headers(sock: socket.socket, sse: bool) -> None:
    headers = {
        "Content-Type": "text/event-stream" if sse else "application/x-ndjson",
        "Transfer-Encoding": "chunked",
        "Cache-Control": "no-cache",
        "Connection": "close",
    }
    headers.update(CORS_HEADERS)
    sock.sendall(response_head(HTTPStatus.OK, headers))


def encode_chunk(payload: bytes) -> bytes:
    return f"{len(payload):X}\r\n".encode() + payload + b"\r\n"


def frame_payload(obj: Any, sse: bool) -> bytes:
    """Frame one JSON payload as an SSE event or an NDJSON line."""
    data = json.dumps(obj).encode()
    if sse:
        return b"data: " + data + b"\n\n"
    return data + b"\n"


def peer_closed(sock: socket.socket) -> bool:
    """Best effort check for a peer that has closed or reset the connection."""
    try:
        readable, _, _ = select.select([sock], [], [], 0)
        if not readable:
            return False
        return sock.recv(1, socket.MSG_PEEK) == b""
    except (OSError, ValueError):
        return True
