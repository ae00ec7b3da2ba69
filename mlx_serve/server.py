# Copyright © 2026 Apple Inc.

import argparse
import logging
import socket
import socketserver
import time
import uuid
import warnings
from http import HTTPStatus
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ._version import __version__
from .api import (
    NativeGenerateRequest,
    OpenAIChatRequest,
    OpenAIResponseBuilder,
    PullRequest,
    error_payload,
    models_response,
    native_done_payload,
    native_response,
    native_token_payload,
    normalize_native,
    normalize_openai,
)
from .mlx_runner import BACKENDS, MLXAdapter, MLXRunner
from .model_spec import (
    ArtifactMissingError,
    ModelSpecBuilder,
    TokenizerMissingError,
    import_spec,
)
from .model_store import (
    FileModelStore,
    ManifestDecodeError,
    ModelStoreError,
    ModelTag,
    default_store_root,
)
from .python_runner import PythonRunner
from .runner import (
    GenerationRequest,
    GenerationResult,
    LocalRunner,
    MockRunner,
    ModelLoadOptions,
    ModelNotLoaded,
    ModelRunner,
    TokenEvent,
    collect,
    load_model_paths,
)
from .server_common import (
    CLOSING_CHUNK,
    MAX_REQUEST_BYTES,
    SSE_DONE,
    BadRequest,
    HTTPRequest,
    encode_chunk,
    frame_payload,
    parse_request,
    peer_closed,
    read_request,
    write_json_response,
    write_stream_headers,
)

DEFAULT_PORT = 11434
REQUEST_TIMEOUT = 30.0


def _fields(**kwargs) -> str:
    return " ".join(f"{k}={v}" for k, v in kwargs.items() if v is not None)


class ClientDisconnected(Exception):
    pass


class HTTPError(Exception):
    """A failure answered with ``status`` and a JSON error body."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


# Dialects


class NativeDialect:
    def __init__(self, chat: bool = False):
        self.chat = chat

    def response(self, request, tokens, result):
        return native_response(request, tokens, result, chat=self.chat)

    def token(self, text: str):
        return native_token_payload(text)

    def done(self, result: GenerationResult) -> List[Dict[str, Any]]:
        return [native_done_payload(result)]

    def closing(self, sse: bool) -> Optional[bytes]:
        return None


class OpenAIDialect:
    def __init__(self, builder: OpenAIResponseBuilder):
        self.builder = builder

    def response(self, request, tokens, result):
        return self.builder.completion(result)

    def token(self, text: str):
        return self.builder.chunk(text)

    def done(self, result: GenerationResult) -> List[Dict[str, Any]]:
        return [self.builder.final_chunk()]

    def closing(self, sse: bool) -> Optional[bytes]:
        return SSE_DONE if sse else None


class APIHandler(socketserver.BaseRequestHandler):
    """Serves exactly one request per connection."""

    def __init__(
        self,
        runner: ModelRunner,
        store: FileModelStore,
        *args,
        request_timeout: float = REQUEST_TIMEOUT,
        max_request_bytes: int = MAX_REQUEST_BYTES,
        **kwargs,
    ):
        self.runner = runner
        self.store = store
        self.request_timeout = request_timeout
        self.max_request_bytes = max_request_bytes
        self.req_id = str(uuid.uuid4())
        self.status = None
        self.headers_sent = False
        super().__init__(*args, **kwargs)

    @property
    def routes(self) -> Dict[Tuple[str, str], Callable[[HTTPRequest], None]]:
        return {
            ("GET", "/api/health"): self.handle_health_check,
            ("GET", "/api/version"): self.handle_version,
            ("GET", "/v1/models"): self.handle_models_request,
            ("POST", "/api/generate"): self.handle_generate,
            ("POST", "/api/chat"): self.handle_chat,
            ("POST", "/api/pull"): self.handle_pull,
            ("POST", "/v1/chat/completions"): self.handle_chat_completions,
        }

    def handle(self):
        start = time.perf_counter()
        sock = self.request
        sock.settimeout(self.request_timeout)

        path = "-"
        try:
            request = parse_request(read_request(sock, self.max_request_bytes))
            path = request.path
            logging.info(f"request_start {_fields(path=path, req_id=self.req_id)}")
            self.dispatch(request)
        except BadRequest as e:
            self.send_json(e.status, error_payload(str(e)))
        except ValueError as e:
            self.send_json(HTTPStatus.BAD_REQUEST, error_payload(str(e)))
        except HTTPError as e:
            self.send_json(e.status, error_payload(e.message))
        except ClientDisconnected:
            logging.info(f"Client disconnected {_fields(req_id=self.req_id)}")
        except Exception:
            logging.exception(f"Unexpected error {_fields(path=path, req_id=self.req_id)}")
            if not self.headers_sent:
                self.send_json(
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                    error_payload("Internal server error"),
                )
        finally:
            duration_ms = int((time.perf_counter() - start) * 1000)
            logging.info(
                "request_end "
                + _fields(
                    path=path,
                    req_id=self.req_id,
                    status=self.status,
                    duration_ms=duration_ms,
                )
            )

    def dispatch(self, request: HTTPRequest):
        handler = self.routes.get((request.method, request.path))
        if handler is None:
            self.send_json(HTTPStatus.NOT_FOUND, error_payload("not found"))
            return
        handler(request)

    def send_json(self, status: int, payload: Any):
        self.status = int(status)
        try:
            write_json_response(self.request, status, payload)
        except OSError as e:
            logging.info(f"Failed to write response {_fields(req_id=self.req_id, error=e)}")
        self.headers_sent = True

    # Simple routes

    def handle_health_check(self, request: HTTPRequest):
        self.send_json(HTTPStatus.OK, {"status": "ok"})

    def handle_version(self, request: HTTPRequest):
        self.send_json(HTTPStatus.OK, {"version": __version__})

    def handle_models_request(self, request: HTTPRequest):
        try:
            manifests = self.store.list()
        except ModelStoreError as e:
            logging.error(f"Listing models failed {_fields(req_id=self.req_id, error=e)}")
            raise HTTPError(HTTPStatus.INTERNAL_SERVER_ERROR, "list failed") from e
        self.send_json(HTTPStatus.OK, models_response(manifests))

    def handle_pull(self, request: HTTPRequest):
        pull = PullRequest.from_dict(request.json())
        tag = ModelTag.parse(pull.tag)
        if tag is None:
            raise BadRequest("invalid tag")

        store = self.store
        if pull.root is not None:
            try:
                store = FileModelStore(pull.root)
            except ModelStoreError as e:
                logging.error(f"Store init failed {_fields(req_id=self.req_id, error=e)}")
                raise HTTPError(HTTPStatus.INTERNAL_SERVER_ERROR, "store init failed")

        artifact = Path(pull.artifact).expanduser()
        spec = import_spec(tag, artifact, pull.tokenizer, source="pull-api")
        try:
            manifest = ModelSpecBuilder(store).build(
                spec, artifact, tokenizer_path=pull.tokenizer, tag=tag
            )
        except (ArtifactMissingError, TokenizerMissingError) as e:
            raise BadRequest(str(e)) from e
        except ModelStoreError as e:
            logging.error(
                f"Pull failed {_fields(model=tag.display_name, req_id=self.req_id, error=e)}"
            )
            raise HTTPError(HTTPStatus.INTERNAL_SERVER_ERROR, "import failed") from e
        self.send_json(HTTPStatus.OK, manifest.to_dict())

    # Generation routes

    def handle_generate(self, request: HTTPRequest):
        self._handle_native(request, chat=False)

    def handle_chat(self, request: HTTPRequest):
        self._handle_native(request, chat=True)

    def _handle_native(self, request: HTTPRequest, chat: bool):
        body = NativeGenerateRequest.from_dict(request.json())
        generation = normalize_native(body)
        if generation is None:
            raise BadRequest("invalid model tag")
        self.generate_and_respond(
            generation, body.stream, request.accepts_sse(), NativeDialect(chat)
        )

    def handle_chat_completions(self, request: HTTPRequest):
        body = OpenAIChatRequest.from_dict(request.json())
        generation = normalize_openai(body)
        if generation is None:
            raise BadRequest("invalid model tag")
        builder = OpenAIResponseBuilder(body.model, self.req_id)
        self.generate_and_respond(
            generation, body.stream, request.accepts_sse(), OpenAIDialect(builder)
        )

    def generate_and_respond(
        self, generation: GenerationRequest, stream: bool, sse: bool, dialect
    ):
        model_name = generation.model.display_name
        try:
            manifest = self.store.manifest(generation.model.to_tag())
        except ManifestDecodeError as e:
            logging.error(
                f"Manifest unreadable {_fields(model=model_name, req_id=self.req_id, error=e)}"
            )
            raise HTTPError(HTTPStatus.INTERNAL_SERVER_ERROR, "manifest unreadable")
        if manifest is None:
            logging.error(f"Manifest missing {_fields(model=model_name, req_id=self.req_id)}")
            raise HTTPError(HTTPStatus.NOT_FOUND, "manifest not found")

        try:
            self.store.verify(manifest)
        except ModelStoreError as e:
            logging.error(
                "Manifest verification failed "
                + _fields(model=model_name, req_id=self.req_id, error=e)
            )
            raise HTTPError(
                HTTPStatus.INTERNAL_SERVER_ERROR, "manifest verification failed"
            )

        options = ModelLoadOptions(keep_alive=generation.keep_alive)
        try:
            loaded = self.runner.load(generation.model, options)
        except ModelNotLoaded as e:
            raise HTTPError(HTTPStatus.NOT_FOUND, str(e))
        except Exception as e:
            logging.error(f"Load failed {_fields(model=model_name, req_id=self.req_id, error=e)}")
            raise HTTPError(HTTPStatus.INTERNAL_SERVER_ERROR, "model load failed")

        try:
            if stream:
                self.stream_response(generation, loaded, dialect, sse)
            else:
                self.unary_response(generation, loaded, dialect)
        finally:
            if generation.keep_alive == 0:
                self.runner.unload(loaded)

    def unary_response(self, generation, loaded, dialect):
        try:
            tokens, result = collect(self.runner.generate(generation, loaded))
        except ModelNotLoaded as e:
            raise HTTPError(HTTPStatus.NOT_FOUND, str(e))
        except Exception as e:
            logging.error(
                "Generation failed "
                + _fields(
                    model=generation.model.display_name, req_id=self.req_id, error=e
                )
            )
            raise HTTPError(HTTPStatus.INTERNAL_SERVER_ERROR, "generation failed")
        self.send_json(HTTPStatus.OK, dialect.response(generation, tokens, result))

    def _send_chunk(self, payload: bytes):
        try:
            self.request.sendall(encode_chunk(payload))
        except OSError as e:
            raise ClientDisconnected() from e

    def stream_response(self, generation, loaded, dialect, sse: bool):
        sock = self.request
        try:
            write_stream_headers(sock, sse)
        except OSError as e:
            raise ClientDisconnected() from e
        self.headers_sent = True
        self.status = HTTPStatus.OK.value

        events = self.runner.generate(generation, loaded)
        try:
            for event in events:
                if peer_closed(sock):
                    raise ClientDisconnected()
                if isinstance(event, TokenEvent):
                    payloads = [dialect.token(event.text)]
                else:
                    payloads = dialect.done(event.result)
                for payload in payloads:
                    self._send_chunk(frame_payload(payload, sse))
            closing = dialect.closing(sse)
            if closing is not None:
                self._send_chunk(closing)
        except ClientDisconnected:
            events.cancel()
            logging.info(
                "Stream cancelled by client "
                + _fields(model=generation.model.display_name, req_id=self.req_id)
            )
        except Exception as e:
            events.cancel()
            logging.error(
                "Streaming failed "
                + _fields(
                    model=generation.model.display_name, req_id=self.req_id, error=e
                )
            )
            try:
                self._send_chunk(frame_payload(error_payload("generation failed"), sse))
            except ClientDisconnected:
                pass
        finally:
            try:
                sock.sendall(CLOSING_CHUNK)
            except OSError:
                pass


class ThreadingServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


def run(
    host: str,
    port: int,
    runner: ModelRunner,
    store: FileModelStore,
    server_class=ThreadingServer,
    handler_class=APIHandler,
):
    server_address = (host, port)
    infos = socket.getaddrinfo(
        *server_address, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
    )
    server_class.address_family, _, _, _, server_address = next(iter(infos))
    server = server_class(
        server_address,
        lambda *args, **kwargs: handler_class(runner, store, *args, **kwargs),
    )
    warnings.warn(
        "mlx_serve is not recommended for production as "
        "it only implements basic security checks."
    )
    logging.info(f"Starting server at {host} on port {port}...")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


def build_runner(args: argparse.Namespace) -> ModelRunner:
    if args.runner == "mock":
        return MockRunner(tokens=args.mock_tokens)

    if args.model_paths_json is None:
        raise ValueError(f"--model-paths-json is required for the {args.runner} runner")
    model_paths = load_model_paths(args.model_paths_json)

    if args.runner == "local":
        return LocalRunner(model_paths)

    python_runner = None
    if args.runner == "python" or args.mlx_backend == "python":
        python_runner = PythonRunner(
            model_paths,
            python_executable=args.python_path,
            disable_mps=args.disable_mps,
            allow_fallback=not args.no_fallback,
        )
    if args.runner == "python":
        return python_runner

    return MLXRunner(
        MLXAdapter.with_hf_tokenizer(
            model_paths, backend=args.mlx_backend, python_runner=python_runner
        )
    )


def configure_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MLX model serving daemon.")
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host for the HTTP server (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Port for the HTTP server (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--runner",
        type=str,
        default="mock",
        choices=["mock", "local", "python", "mlx"],
        help="Generation backend (default: mock)",
    )
    parser.add_argument(
        "--mlx-backend",
        type=str,
        default="native",
        choices=list(BACKENDS),
        help="Execution strategy of the mlx runner (default: native)",
    )
    parser.add_argument(
        "--model-paths-json",
        type=str,
        help="JSON file mapping model ids to artifact paths",
    )
    parser.add_argument(
        "--store-root",
        type=str,
        help="Model store root (default: $MLX_SERVE_HOME or ~/.mlx_serve)",
    )
    parser.add_argument(
        "--python-path",
        type=str,
        help="Python interpreter used to run mlx_lm for the python runner",
    )
    parser.add_argument(
        "--disable-mps",
        action="store_true",
        help="Run the python runner on the CPU only",
    )
    parser.add_argument(
        "--no-fallback",
        action="store_true",
        help="Do not retry failed python runs on the CPU",
    )
    parser.add_argument(
        "--mock-tokens",
        type=str,
        nargs="+",
        default=["hello", " world"],
        help="Tokens replayed by the mock runner",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)",
    )
    return parser


def main(argv=None):
    parser = configure_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), None),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    root = Path(args.store_root) if args.store_root else default_store_root()
    try:
        store = FileModelStore(root)
        runner = build_runner(args)
    except (ModelStoreError, ValueError, FileNotFoundError) as e:
        parser.error(str(e))
    logging.info(f"Using {args.runner} runner with store at {root}")
    run(args.host, args.port, runner, store)


if __name__ == "__main__":
    main()
