# Copyright © 2026 Apple Inc.

import codecs
import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from queue import Queue
from threading import Thread
from typing import Dict, List, Optional, Sequence

from .prompt import convert_chat
from .runner import (
    CompletedEvent,
    GenerationCancelled,
    GenerationResult,
    GenerationStats,
    GenerationStream,
    LoadedModel,
    LoadedModels,
    ModelID,
    ModelNotLoaded,
    ModelPathMissing,
    ModelRunner,
    RunnerError,
    TokenEvent,
    count_words,
)

DEFAULT_COMMAND = ("-m", "mlx_lm", "generate")

# Substrings in stderr that identify a GPU-path crash worth retrying on CPU.
DEFAULT_CRASH_SIGNATURES = ("NSRangeException",)


class ProcessFailed(RunnerError):
    def __init__(self, detail: str):
        super().__init__(f"Generation process failed: {detail}")
        self.detail = detail


def resolve_python_executable(preferred: Optional[str] = None) -> str:
    """
    Pick the interpreter used to run ``mlx_lm``. Preference order:

    1. ``preferred``
    2. the ``MLX_PYTHON`` environment variable
    3. ``.venv/bin/python3`` in the working directory
    4. the current interpreter
    """
    if preferred:
        return preferred
    env = os.environ.get("MLX_PYTHON")
    if env:
        return env
    venv = Path.cwd() / ".venv" / "bin" / "python3"
    if venv.exists():
        return str(venv)
    return sys.executable


@dataclass
class ProcessResult:
    text: str
    stderr: str
    returncode: int
    duration: float


def _read_stdout(stream, chunks: Queue):
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while data := stream.read1(4096):
            text = decoder.decode(data)
            if text:
                chunks.put(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            chunks.put(tail)
    finally:
        chunks.put(None)


def _read_stderr(stream, out: List[bytes]):
    for line in stream:
        out.append(line)


class PythonRunner(ModelRunner):
    """
    Runs generation by spawning the ``mlx_lm`` command line in a child
    process and streaming its standard output as token events.

    The first attempt uses the default device unless ``disable_mps`` is set.
    When it exits non-zero or prints a known crash signature to stderr, and
    ``allow_fallback`` is set, generation is retried once on the CPU.
    """

    def __init__(
        self,
        model_paths: Dict[ModelID, Path],
        python_executable: Optional[str] = None,
        command: Sequence[str] = DEFAULT_COMMAND,
        cwd: Optional[str] = None,
        disable_mps: bool = False,
        allow_fallback: bool = True,
        crash_signatures: Sequence[str] = DEFAULT_CRASH_SIGNATURES,
    ):
        self.model_paths = model_paths
        self.python_executable = resolve_python_executable(python_executable)
        self.command = list(command)
        self.cwd = cwd
        self.disable_mps = disable_mps
        self.allow_fallback = allow_fallback
        self.crash_signatures = [s.lower() for s in crash_signatures]
        self._loaded = LoadedModels()

    def load(self, model_id, options=None):
        path = self.model_paths.get(model_id)
        if path is None or not Path(path).exists():
            raise ModelPathMissing(model_id)
        self._loaded.add(model_id)
        return LoadedModel(model_id)

    def unload(self, model):
        # Nothing is held between runs beyond the loaded marker.
        self._loaded.discard(model.id)

    def _build_args(self, model_path: Path, prompt: str, max_tokens: Optional[int]):
        args = [self.python_executable, *self.command]
        args += ["--model", str(model_path), "--prompt", prompt]
        if max_tokens is not None:
            args += ["--max-tokens", str(max_tokens)]
        return args

    def _run_process(self, args, force_cpu: bool, emit) -> ProcessResult:
        env = os.environ.copy()
        if self.disable_mps or force_cpu:
            env["MLX_DISABLE_MPS"] = "1"
            env["MLX_DEVICE"] = "cpu"

        logging.debug(f"Executing: {' '.join(args)} (cpu={force_cpu})")
        start = time.perf_counter()
        process = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            cwd=self.cwd,
        )

        chunks = Queue()
        stderr_lines: List[bytes] = []
        stdout_thread = Thread(
            target=_read_stdout, args=(process.stdout, chunks), daemon=True
        )
        stderr_thread = Thread(
            target=_read_stderr, args=(process.stderr, stderr_lines), daemon=True
        )
        stdout_thread.start()
        stderr_thread.start()

        text = ""
        try:
            while (chunk := chunks.get()) is not None:
                text += chunk
                emit(TokenEvent(chunk))
        except GenerationCancelled:
            process.terminate()
            process.wait()
            raise
        returncode = process.wait()
        stdout_thread.join()
        stderr_thread.join()
        process.stdout.close()
        process.stderr.close()

        stderr = b"".join(stderr_lines).decode("utf-8", errors="replace")
        return ProcessResult(text, stderr, returncode, time.perf_counter() - start)

    def _crashed(self, result: ProcessResult) -> bool:
        if result.returncode != 0:
            return True
        stderr = result.stderr.lower()
        return any(signature in stderr for signature in self.crash_signatures)

    def generate(self, request, model):
        def producer(emit):
            if model.id not in self._loaded:
                raise ModelNotLoaded(model.id)
            model_path = self.model_paths.get(model.id)
            if model_path is None:
                raise ModelPathMissing(model.id)

            prompt = request.prompt
            if not prompt and request.messages:
                prompt = convert_chat([m.to_dict() for m in request.messages])
            args = self._build_args(model_path, prompt, request.config.max_tokens)

            force_cpu = self.disable_mps
            result = self._run_process(args, force_cpu, emit)

            # The first process has fully exited before a retry starts.
            if self._crashed(result) and self.allow_fallback and not force_cpu:
                logging.warning(
                    f"Generation for {model.id.display_name} failed on the default "
                    f"device (exit {result.returncode}), retrying on CPU"
                )
                result = self._run_process(args, True, emit)

            if self._crashed(result):
                raise ProcessFailed(result.stderr.strip() or f"exit {result.returncode}")

            stats = GenerationStats(
                prompt_token_count=count_words(prompt),
                generated_token_count=count_words(result.text),
                duration=result.duration,
            )
            emit(CompletedEvent(GenerationResult(result.text.strip(), stats)))

        return GenerationStream(producer)
