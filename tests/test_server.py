# Copyright © 2026 Apple Inc.

import json
import socket
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import patch

import requests

from mlx_serve import __version__
from mlx_serve.model_store import FileModelStore, ModelTag
from mlx_serve.runner import (
    GenerationCancelled,
    GenerationStream,
    LoadedModel,
    ModelID,
    ModelPathMissing,
    ModelRunner,
    RunnerError,
    TokenEvent,
)

from tests._server_test_utils import (
    ServerAPITestBase,
    collect_sse_payloads,
    decode_chunked,
    parse_payloads,
    raw_request,
    split_response,
)


class TestServer(ServerAPITestBase, unittest.TestCase):
    def test_health_check(self):
        response = requests.get(self.url("/api/health"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})
        self.assertEqual(response.headers["Connection"], "close")
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")

    def test_version(self):
        response = requests.get(self.url("/api/version"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"version": __version__})

    def test_unknown_route(self):
        response = requests.get(self.url("/api/nothing"))
        self.assertEqual(response.status_code, 404)
        self.assertIn("error", response.json())

    def test_wrong_method(self):
        response = requests.get(self.url("/api/generate"))
        self.assertEqual(response.status_code, 404)

    def test_invalid_json(self):
        response = requests.post(self.url("/api/generate"), data=b"{not json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("error", response.json())

    def test_non_object_body(self):
        response = requests.post(self.url("/api/generate"), json=["llama"])
        self.assertEqual(response.status_code, 400)

    def test_invalid_option_type(self):
        body = {"model": "llama", "prompt": "hi", "options": {"temperature": "hot"}}
        response = requests.post(self.url("/api/generate"), json=body)
        self.assertEqual(response.status_code, 400)
        self.assertIn("temperature", response.json()["error"])

    def test_invalid_model_tag(self):
        body = {"model": ":demo", "prompt": "hi"}
        response = requests.post(self.url("/api/generate"), json=body)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "invalid model tag"})

    def test_missing_manifest(self):
        body = {"model": "mistral:q4@v2", "prompt": "hi"}
        response = requests.post(self.url("/api/generate"), json=body)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "manifest not found"})

    def test_generate(self):
        body = {"model": "llama:demo@v1", "prompt": "hello model"}
        response = requests.post(self.url("/api/generate"), json=body)
        self.assertEqual(response.status_code, 200)
        result = response.json()
        self.assertEqual(result["model"], "llama:demo@v1")
        self.assertEqual(result["response"], "hi there")
        self.assertEqual(result["tokens"], ["hi", " there"])
        self.assertTrue(result["done"])
        self.assertEqual(result["prompt_eval_count"], 2)
        self.assertEqual(result["eval_count"], 2)
        self.assertNotIn("message", result)

    def test_generate_with_query_string(self):
        body = {"model": "llama", "prompt": "hi"}
        response = requests.post(self.url("/api/generate?verbose=1"), json=body)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["response"], "hi there")

    def test_chat(self):
        body = {
            "model": "llama",
            "messages": [{"role": "user", "content": "hi"}],
        }
        response = requests.post(self.url("/api/chat"), json=body)
        self.assertEqual(response.status_code, 200)
        result = response.json()
        self.assertEqual(
            result["message"], {"role": "assistant", "content": "hi there"}
        )

    def test_chat_completions(self):
        body = {
            "model": "llama:demo@v1",
            "messages": [{"role": "user", "content": "hi"}],
            "max_tokens": 10,
        }
        response = requests.post(self.url("/v1/chat/completions"), json=body)
        self.assertEqual(response.status_code, 200)
        result = response.json()
        self.assertEqual(result["object"], "chat.completion")
        self.assertEqual(result["model"], "llama:demo@v1")
        self.assertTrue(result["id"].startswith("chatcmpl-"))
        choice = result["choices"][0]
        self.assertEqual(choice["message"]["content"], "hi there")
        self.assertEqual(choice["finish_reason"], "stop")
        self.assertEqual(result["usage"]["completion_tokens"], 2)
        self.assertEqual(result["usage"]["total_tokens"], 2)

    def test_chat_completions_requires_messages(self):
        body = {"model": "llama"}
        response = requests.post(self.url("/v1/chat/completions"), json=body)
        self.assertEqual(response.status_code, 400)

    def test_chat_completions_with_content_fragments(self):
        body = {
            "model": "llama",
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Hello, "},
                        {"type": "text", "text": "world"},
                    ],
                }
            ],
        }
        response = requests.post(self.url("/v1/chat/completions"), json=body)
        self.assertEqual(response.status_code, 200)

    def test_generate_stream_ndjson(self):
        body = {"model": "llama", "prompt": "hi", "stream": True}
        response = requests.post(self.url("/api/generate"), json=body, stream=True)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["Content-Type"], "application/x-ndjson")
        self.assertEqual(response.headers["Transfer-Encoding"], "chunked")
        payloads = [json.loads(line) for line in response.iter_lines() if line]
        self.assertEqual(
            payloads,
            [
                {"token": "hi"},
                {"token": " there"},
                {"done": True, "response": "hi there"},
            ],
        )

    def test_generate_stream_sse(self):
        body = {"model": "llama", "prompt": "hi", "stream": True}
        response = requests.post(
            self.url("/api/generate"),
            json=body,
            headers={"Accept": "text/event-stream"},
            stream=True,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["Content-Type"], "text/event-stream")
        payloads = collect_sse_payloads(response)
        self.assertEqual(
            [p["token"] for p in payloads if "token" in p], ["hi", " there"]
        )
        self.assertEqual(payloads[-1], {"done": True, "response": "hi there"})

    def test_chat_completions_stream(self):
        body = {
            "model": "llama",
            "messages": [{"role": "user", "content": "hi"}],
            "stream": True,
        }
        response = requests.post(
            self.url("/v1/chat/completions"),
            json=body,
            headers={"Accept": "text/event-stream"},
            stream=True,
        )
        self.assertEqual(response.status_code, 200)
        chunks = collect_sse_payloads(response)
        self.assertEqual(len(chunks), 3)
        self.assertEqual(len({chunk["id"] for chunk in chunks}), 1)
        for chunk in chunks:
            self.assertEqual(chunk["object"], "chat.completion.chunk")
        deltas = [chunk["choices"][0]["delta"].get("content") for chunk in chunks]
        self.assertEqual(deltas, ["hi", " there", None])
        self.assertEqual(chunks[-1]["choices"][0]["finish_reason"], "stop")
        self.assertIsNone(chunks[0]["choices"][0]["finish_reason"])

    def test_raw_stream_framing_matches_runner(self):
        body = {"model": "llama", "prompt": "hi", "stream": True}
        for sse in (False, True):
            with self.subTest(sse=sse):
                headers = {"Accept": "text/event-stream"} if sse else {}
                raw = raw_request(self.port, "POST", "/api/generate", body, headers)
                status, response_headers, payload = split_response(raw)
                self.assertEqual(status, 200)
                self.assertEqual(response_headers["transfer-encoding"], "chunked")
                chunks, closed = decode_chunked(payload)
                self.assertTrue(closed)
                payloads = parse_payloads(chunks, sse)
                tokens = [p["token"] for p in payloads if "token" in p]
                self.assertEqual(tokens, list(self.runner_tokens))
                self.assertEqual(payloads[-1]["response"], "".join(tokens))

    def test_raw_openai_stream_ends_with_done(self):
        body = {
            "model": "llama",
            "messages": [{"role": "user", "content": "hi"}],
            "stream": True,
        }
        raw = raw_request(
            self.port,
            "POST",
            "/v1/chat/completions",
            body,
            {"Accept": "text/event-stream"},
        )
        _, _, payload = split_response(raw)
        chunks, closed = decode_chunked(payload)
        self.assertTrue(closed)
        payloads = parse_payloads(chunks, sse=True)
        self.assertEqual(payloads[-1], "[DONE]")
        self.assertEqual(payloads[-2]["choices"][0]["finish_reason"], "stop")

    def test_raw_openai_ndjson_has_no_done_marker(self):
        body = {
            "model": "llama",
            "messages": [{"role": "user", "content": "hi"}],
            "stream": True,
        }
        raw = raw_request(self.port, "POST", "/v1/chat/completions", body)
        _, headers, payload = split_response(raw)
        self.assertEqual(headers["content-type"], "application/x-ndjson")
        chunks, closed = decode_chunked(payload)
        self.assertTrue(closed)
        payloads = parse_payloads(chunks, sse=False)
        self.assertEqual(len(payloads), 3)

    def test_malformed_request_line(self):
        with socket.create_connection(("localhost", self.port), timeout=10) as sock:
            sock.sendall(b"GARBAGE\r\n\r\n")
            raw = b""
            while chunk := sock.recv(65536):
                raw += chunk
        status, _, body = split_response(raw)
        self.assertEqual(status, 400)
        self.assertIn("error", json.loads(body))

    def test_models_list(self):
        response = requests.get(self.url("/v1/models"))
        self.assertEqual(response.status_code, 200)
        result = response.json()
        self.assertEqual(result["object"], "list")
        ids = [model["id"] for model in result["data"]]
        self.assertIn("llama", ids)
        self.assertIn("llama:demo@v1", ids)
        self.assertEqual(ids, sorted(ids))
        for model in result["data"]:
            self.assertEqual(model["object"], "model")
            self.assertEqual(model["owned_by"], "local")
            self.assertIsInstance(model["created"], int)

    def test_load_failure_is_not_found(self):
        error = ModelPathMissing(ModelID("llama"))
        with patch.object(self.runner, "load", side_effect=error):
            body = {"model": "llama", "prompt": "hi"}
            response = requests.post(self.url("/api/generate"), json=body)
        self.assertEqual(response.status_code, 404)

    def test_load_error_is_internal(self):
        with patch.object(self.runner, "load", side_effect=RuntimeError("boom")):
            body = {"model": "llama", "prompt": "hi"}
            response = requests.post(self.url("/api/generate"), json=body)
        self.assertEqual(response.status_code, 500)
        self.assertNotIn("boom", response.text)

    def test_keep_alive_zero_unloads(self):
        with patch.object(self.runner, "unload", wraps=self.runner.unload) as unload:
            body = {"model": "llama", "prompt": "hi", "keep_alive": 0}
            response = requests.post(self.url("/api/generate"), json=body)
            self.assertEqual(response.status_code, 200)
            unload.assert_called_once()

            body = {"model": "llama", "prompt": "hi", "keep_alive": 30}
            requests.post(self.url("/api/generate"), json=body)
            unload.assert_called_once()

    def test_pull(self):
        artifact = Path(self.tmpdir.name) / "pulled.bin"
        artifact.write_bytes(b"pulled weights")
        body = {"tag": "pulled:q4@v3", "artifact": str(artifact)}
        response = requests.post(self.url("/api/pull"), json=body)
        self.assertEqual(response.status_code, 200)
        manifest = response.json()
        self.assertEqual(
            manifest["tag"], {"name": "pulled", "variant": "q4", "version": "v3"}
        )
        self.assertEqual(manifest["size_bytes"], len(b"pulled weights"))
        self.assertEqual(manifest["metadata"]["source"], "pull-api")

        body = {"model": "pulled:q4@v3", "prompt": "hi"}
        response = requests.post(self.url("/api/generate"), json=body)
        self.assertEqual(response.status_code, 200)

    def test_pull_into_other_root(self):
        artifact = Path(self.tmpdir.name) / "other.bin"
        artifact.write_bytes(b"other weights")
        root = Path(self.tmpdir.name) / "other-store"
        body = {"tag": "other", "artifact": str(artifact), "root": str(root)}
        response = requests.post(self.url("/api/pull"), json=body)
        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(FileModelStore(root).manifest(ModelTag("other")))
        self.assertIsNone(self.store.manifest(ModelTag("other")))

    def test_pull_missing_artifact(self):
        body = {"tag": "ghost", "artifact": "/does/not/exist.bin"}
        response = requests.post(self.url("/api/pull"), json=body)
        self.assertEqual(response.status_code, 400)

    def test_pull_invalid_tag(self):
        body = {"tag": "", "artifact": str(self.artifact)}
        response = requests.post(self.url("/api/pull"), json=body)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "invalid tag"})

    def test_verification_failure(self):
        artifact = Path(self.tmpdir.name) / "broken.bin"
        artifact.write_bytes(b"broken weights")
        body = {"tag": "broken", "artifact": str(artifact)}
        manifest = requests.post(self.url("/api/pull"), json=body).json()
        digest = manifest["digest"]["value"]
        blob = self.store.root / "blobs" / "sha256" / digest
        blob.write_bytes(b"tampered")

        body = {"model": "broken", "prompt": "hi"}
        response = requests.post(self.url("/api/generate"), json=body)
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "manifest verification failed"})

    def test_concurrent_requests(self):
        results = []

        def worker():
            body = {"model": "llama", "prompt": "hi"}
            response = requests.post(self.url("/api/generate"), json=body)
            results.append(response.json()["response"])

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(results, ["hi there"] * 8)


class ScriptedRunner(ModelRunner):
    """Fails or runs forever depending on the model name."""

    def __init__(self):
        self.cancelled = threading.Event()

    def load(self, model_id, options=None):
        return LoadedModel(model_id)

    def unload(self, model):
        pass

    def generate(self, request, model):
        def producer(emit):
            if model.id.name == "boom":
                emit(TokenEvent("partial"))
                raise RunnerError("engine exploded")
            try:
                while True:
                    emit(TokenEvent("x"))
                    time.sleep(0.01)
            except GenerationCancelled:
                self.cancelled.set()
                raise

        return GenerationStream(producer)


class TestServerRunnerFailures(ServerAPITestBase, unittest.TestCase):
    stored_tags = ("boom", "endless")

    @classmethod
    def make_runner(cls):
        return ScriptedRunner()

    def test_unary_failure(self):
        body = {"model": "boom", "prompt": "hi"}
        response = requests.post(self.url("/api/generate"), json=body)
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "generation failed"})

    def test_stream_failure_sends_error_then_closes(self):
        body = {"model": "boom", "prompt": "hi", "stream": True}
        raw = raw_request(self.port, "POST", "/api/generate", body)
        status, _, payload = split_response(raw)
        self.assertEqual(status, 200)
        chunks, closed = decode_chunked(payload)
        self.assertTrue(closed)
        payloads = parse_payloads(chunks, sse=False)
        self.assertEqual(payloads, [{"token": "partial"}, {"error": "generation failed"}])

    def test_client_disconnect_cancels_generation(self):
        body = json.dumps({"model": "endless", "prompt": "hi", "stream": True}).encode()
        request = (
            b"POST /api/generate HTTP/1.1\r\nHost: localhost\r\n"
            + f"Content-Length: {len(body)}\r\n\r\n".encode()
            + body
        )
        sock = socket.create_connection(("localhost", self.port), timeout=10)
        sock.sendall(request)
        self.assertTrue(sock.recv(1024).startswith(b"HTTP/1.1 200"))
        sock.close()
        self.assertTrue(self.runner.cancelled.wait(timeout=10))


if __name__ == "__main__":
    unittest.main()
