# Copyright © 2026 Apple Inc.

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from queue import Full, Queue
from threading import Thread
from typing import Callable, Dict, List, Optional, Sequence, Union

from .model_store import ModelTag

# Canonical data model


@dataclass(frozen=True)
class ModelID:
    name: str
    variant: Optional[str] = None
    version: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.to_tag().display_name

    def to_tag(self) -> ModelTag:
        return ModelTag(self.name, self.variant, self.version)

    @classmethod
    def from_tag(cls, tag: ModelTag) -> "ModelID":
        return cls(tag.name, tag.variant, tag.version)

    @classmethod
    def parse(cls, string: str) -> Optional["ModelID"]:
        tag = ModelTag.parse(string)
        return cls.from_tag(tag) if tag is not None else None

    def __str__(self):
        return self.display_name


@dataclass
class ModelLoadOptions:
    keep_alive: Optional[float] = None
    eager_load: bool = True


@dataclass(frozen=True)
class LoadedModel:
    id: ModelID
    loaded_at: float = field(default_factory=time.time)


@dataclass
class GenerationConfig:
    max_tokens: Optional[int] = 256
    temperature: float = 0.8
    top_p: float = 0.95
    stop_sequences: List[str] = field(default_factory=list)
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0


class ChatRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ChatMessage:
    role: ChatRole
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class GenerationRequest:
    model: ModelID
    prompt: str
    messages: List[ChatMessage] = field(default_factory=list)
    config: GenerationConfig = field(default_factory=GenerationConfig)
    system_prompt: Optional[str] = None
    keep_alive: Optional[float] = None


@dataclass
class GenerationStats:
    prompt_token_count: int
    generated_token_count: int
    duration: Optional[float] = None
    stop_hit: bool = False


@dataclass
class GenerationResult:
    text: str
    stats: GenerationStats


@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class CompletedEvent:
    result: GenerationResult


GenerationEvent = Union[TokenEvent, CompletedEvent]


# Errors


class RunnerError(Exception):
    pass


class ModelNotLoaded(RunnerError):
    def __init__(self, model_id: ModelID, message: Optional[str] = None):
        super().__init__(message or f"Model not loaded: {model_id.display_name}")
        self.model_id = model_id


class ModelPathMissing(ModelNotLoaded):
    def __init__(self, model_id: ModelID):
        super().__init__(
            model_id, f"No artifact found for model {model_id.display_name}"
        )


class GenerationCancelled(RunnerError):
    def __init__(self):
        super().__init__("Generation cancelled")


# Streaming

_DONE = object()

Emit = Callable[[GenerationEvent], None]


class GenerationStream:
    """
    Single-pass iterator over the events of one generation.

    The producer runs on its own thread and hands events over through a
    bounded queue, so a slow consumer applies backpressure only up to
    ``max_buffered`` events. The producer receives an ``emit`` callable which
    raises :class:`GenerationCancelled` once :meth:`cancel` has been called;
    any exception escaping the producer is re-raised to the consumer after
    the events that preceded it.
    """

    def __init__(self, producer: Callable[[Emit], None], max_buffered: int = 64):
        self._queue = Queue(maxsize=max_buffered)
        self._cancelled = threading.Event()
        self._finished = False
        self._thread = Thread(target=self._run, args=(producer,), daemon=True)
        self._thread.start()

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _emit(self, event: GenerationEvent):
        if self._cancelled.is_set():
            raise GenerationCancelled()
        while True:
            try:
                self._queue.put(event, timeout=0.1)
                return
            except Full:
                if self._cancelled.is_set():
                    raise GenerationCancelled()

    def _finish(self, item):
        while True:
            try:
                self._queue.put(item, timeout=0.1)
                return
            except Full:
                # Nobody will drain the queue after a cancel.
                if self._cancelled.is_set():
                    return

    def _run(self, producer):
        try:
            producer(self._emit)
        except Exception as e:
            self._finish(e)
        else:
            self._finish(_DONE)

    def __iter__(self):
        return self

    def __next__(self) -> GenerationEvent:
        if self._finished:
            raise StopIteration
        item = self._queue.get()
        if item is _DONE:
            self._finished = True
            raise StopIteration
        if isinstance(item, Exception):
            self._finished = True
            raise item
        return item

    def join(self, timeout: Optional[float] = None):
        self._thread.join(timeout)


def collect(stream: GenerationStream):
    """Drain a stream into ``(tokens, result)``."""
    tokens = []
    result = None
    for event in stream:
        if isinstance(event, TokenEvent):
            tokens.append(event.text)
        else:
            result = event.result
    return tokens, result


class LoadedModels:
    """Lock-guarded set of loaded model ids owned by one runner."""

    def __init__(self):
        self._lock = threading.Lock()
        self._loaded = set()

    def add(self, model_id: ModelID):
        with self._lock:
            self._loaded.add(model_id)

    def discard(self, model_id: ModelID):
        with self._lock:
            self._loaded.discard(model_id)

    def __contains__(self, model_id: ModelID) -> bool:
        with self._lock:
            return model_id in self._loaded


# Runners


class ModelRunner(ABC):
    """Uniform load / generate / unload contract over a generation backend."""

    @abstractmethod
    def load(
        self, model_id: ModelID, options: Optional[ModelLoadOptions] = None
    ) -> LoadedModel:
        pass

    @abstractmethod
    def unload(self, model: LoadedModel) -> None:
        pass

    @abstractmethod
    def generate(
        self, request: GenerationRequest, model: LoadedModel
    ) -> GenerationStream:
        pass


def count_words(text: str) -> int:
    return len(text.split())


def stream_tokens(
    tokens: Sequence[str],
    request: GenerationRequest,
    emit: Emit,
    token_delay: Optional[float] = None,
):
    start = time.perf_counter()
    text = ""
    for token in tokens:
        emit(TokenEvent(token))
        text += token
        if token_delay:
            time.sleep(token_delay)

    stats = GenerationStats(
        prompt_token_count=count_words(request.prompt),
        generated_token_count=len(tokens),
        duration=time.perf_counter() - start,
    )
    emit(CompletedEvent(GenerationResult(text, stats)))


class MockRunner(ModelRunner):
    """Loads anything and replays a fixed list of tokens."""

    def __init__(
        self, tokens: Sequence[str] = ("hello", " world"), token_delay: Optional[float] = None
    ):
        self.tokens = list(tokens)
        self.token_delay = token_delay
        self._loaded = LoadedModels()

    def load(self, model_id, options=None):
        self._loaded.add(model_id)
        return LoadedModel(model_id)

    def unload(self, model):
        self._loaded.discard(model.id)

    def generate(self, request, model):
        def producer(emit):
            if model.id not in self._loaded:
                raise ModelNotLoaded(model.id)
            stream_tokens(self.tokens, request, emit, self.token_delay)

        return GenerationStream(producer)


class LocalRunner(ModelRunner):
    """
    Validates that a model's artifact exists and streams placeholder tokens
    derived from its name. Stands in for a real engine.
    """

    def __init__(
        self, model_paths: Dict[ModelID, Path], token_delay: Optional[float] = None
    ):
        self.model_paths = model_paths
        self.token_delay = token_delay
        self._loaded = LoadedModels()

    def load(self, model_id, options=None):
        path = self.model_paths.get(model_id)
        if path is None or not Path(path).exists():
            raise ModelPathMissing(model_id)
        self._loaded.add(model_id)
        return LoadedModel(model_id)

    def unload(self, model):
        self._loaded.discard(model.id)

    def generate(self, request, model):
        def producer(emit):
            if model.id not in self._loaded:
                raise ModelNotLoaded(model.id)
            tokens = placeholder_tokens(model.id)
            stream_tokens(tokens, request, emit, self.token_delay)

        return GenerationStream(producer)


def placeholder_tokens(model_id: ModelID) -> List[str]:
    base = f"placeholder tokens streaming from {model_id.display_name} runner"
    return " ".join([base, base]).split(" ")


def load_model_paths(path: Union[str, os.PathLike]) -> Dict[ModelID, Path]:
    """
    Load a ``ModelID -> artifact path`` mapping from a JSON file.

    The file holds a list of objects with ``name``, optional ``variant`` and
    ``version``, and ``path``.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Model path mapping not found: {path}")

    with open(path, "r") as f:
        try:
            entries = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(entries, list):
        raise ValueError("Model path mapping must be a list of objects")

    mapping = {}
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError("Each model path entry must be an object")
        name, model_path = entry.get("name"), entry.get("path")
        if not isinstance(name, str) or not name:
            raise ValueError("Model path entry requires a non-empty name")
        if not isinstance(model_path, str):
            raise ValueError(f"Model path entry {name} requires a path")
        model_id = ModelID(name, entry.get("variant"), entry.get("version"))
        mapping[model_id] = Path(model_path).expanduser()

    logging.debug(f"Loaded {len(mapping)} model paths from {path}")
    return mapping
