# Copyright © 2026 Apple Inc.

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .prompt import convert_chat, llama3_prompt
from .python_runner import PythonRunner
from .runner import (
    CompletedEvent,
    GenerationConfig,
    GenerationEvent,
    GenerationRequest,
    GenerationResult,
    GenerationStats,
    GenerationStream,
    LoadedModel,
    ModelID,
    ModelLoadOptions,
    ModelNotLoaded,
    ModelPathMissing,
    ModelRunner,
    TokenEvent,
    count_words,
)
from .tokenizer import (
    HFTokenizerLoader,
    Tokenizer,
    TokenizerLoader,
    TokenizerLoadFailed,
    TokenizerUnavailable,
)


class ModelAdapter(ABC):
    """Backend hooks driven by :class:`MLXRunner`."""

    @abstractmethod
    def load_model(self, model_id: ModelID, options: ModelLoadOptions) -> Any:
        pass

    @abstractmethod
    def unload_model(self, context: Any) -> None:
        pass

    @abstractmethod
    def generate(
        self, request: GenerationRequest, context: Any
    ) -> Iterator[GenerationEvent]:
        pass


class MLXRunner(ModelRunner):
    """Runner that keeps one adapter context per loaded model."""

    def __init__(self, adapter: ModelAdapter):
        self.adapter = adapter
        self._lock = threading.Lock()
        self._contexts: Dict[ModelID, Any] = {}

    def load(self, model_id, options=None):
        context = self.adapter.load_model(model_id, options or ModelLoadOptions())
        with self._lock:
            self._contexts[model_id] = context
        return LoadedModel(model_id)

    def unload(self, model):
        with self._lock:
            context = self._contexts.pop(model.id, None)
        if context is not None:
            self.adapter.unload_model(context)

    def _context(self, model_id: ModelID):
        with self._lock:
            return self._contexts.get(model_id)

    def generate(self, request, model):
        def producer(emit):
            context = self._context(model.id)
            if context is None:
                raise ModelNotLoaded(model.id)
            events = self.adapter.generate(request, context)
            try:
                for event in events:
                    emit(event)
            finally:
                close = getattr(events, "close", None)
                if close is not None:
                    close()

        return GenerationStream(producer)


# Native engine interface


@dataclass
class SamplingParameters:
    max_tokens: Optional[int]
    temperature: float
    top_p: float
    repetition_penalty: Optional[float] = None
    repetition_context_size: int = 128


def repetition_penalty(config: GenerationConfig) -> Optional[float]:
    penalty = max(config.presence_penalty, config.frequency_penalty)
    return penalty if penalty > 0 else None


def sampling_parameters(config: GenerationConfig) -> SamplingParameters:
    return SamplingParameters(
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        top_p=config.top_p,
        repetition_penalty=repetition_penalty(config),
    )


@dataclass(frozen=True)
class EngineChunk:
    text: str


@dataclass(frozen=True)
class EngineToolCall:
    name: str
    arguments: Dict[str, Any]


@dataclass(frozen=True)
class EngineInfo:
    prompt_token_count: int
    generation_token_count: int
    prompt_time: float
    generate_time: float


def trim_stop_sequence(text: str, stops: Sequence[str]) -> Optional[str]:
    """Return ``text`` without a trailing stop sequence, or ``None``."""
    for stop in stops:
        if stop and text.endswith(stop):
            return text[: len(text) - len(stop)]
    return None


@dataclass
class MLXLmContext:
    model: Any
    tokenizer: Any


class MLXLmEngine:
    """Native engine backed by the ``mlx_lm`` Python API."""

    def __init__(self, tokenizer_config: Optional[Dict[str, Any]] = None):
        self.tokenizer_config = tokenizer_config or {}

    def load(self, model_path: Path) -> MLXLmContext:
        from mlx_lm import load

        model, tokenizer = load(str(model_path), tokenizer_config=self.tokenizer_config)
        return MLXLmContext(model, tokenizer)

    def stream(
        self,
        context: MLXLmContext,
        messages: List[Dict[str, str]],
        params: SamplingParameters,
    ):
        from mlx_lm import stream_generate
        from mlx_lm.sample_utils import make_logits_processors, make_sampler

        tokenizer = context.tokenizer
        if getattr(tokenizer, "has_chat_template", False):
            prompt = tokenizer.apply_chat_template(
                messages, add_generation_prompt=True, tokenize=True
            )
        else:
            prompt = tokenizer.encode(convert_chat(messages))

        sampler = make_sampler(params.temperature, top_p=params.top_p)
        logits_processors = make_logits_processors(
            None, params.repetition_penalty, params.repetition_context_size
        )

        last = None
        for gen in stream_generate(
            context.model,
            tokenizer,
            prompt,
            max_tokens=params.max_tokens if params.max_tokens is not None else -1,
            sampler=sampler,
            logits_processors=logits_processors,
        ):
            if gen.text:
                yield EngineChunk(gen.text)
            last = gen

        if last is not None:
            yield EngineInfo(
                prompt_token_count=last.prompt_tokens,
                generation_token_count=last.generation_tokens,
                prompt_time=last.prompt_tokens / last.prompt_tps if last.prompt_tps else 0.0,
                generate_time=(
                    last.generation_tokens / last.generation_tps
                    if last.generation_tps
                    else 0.0
                ),
            )


class ContextCache:
    """Lock-guarded cache of native engine contexts keyed by model id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._contexts: Dict[ModelID, Any] = {}

    def get(self, model_id: ModelID):
        with self._lock:
            return self._contexts.get(model_id)

    def get_or_load(self, model_id: ModelID, loader):
        # Holding the lock while loading keeps concurrent loads of one id
        # from building two contexts.
        with self._lock:
            if model_id not in self._contexts:
                self._contexts[model_id] = loader()
            return self._contexts[model_id]

    def remove(self, model_id: ModelID):
        with self._lock:
            self._contexts.pop(model_id, None)

    def __len__(self):
        with self._lock:
            return len(self._contexts)


@dataclass
class AdapterContext:
    id: ModelID
    model_path: Path
    tokenizer: Optional[Tokenizer]
    backend: str
    python_loaded: Optional[LoadedModel] = None
    native: Any = None


BACKENDS = ("placeholder", "python", "native")


class MLXAdapter(ModelAdapter):
    """
    Adapter over three execution strategies:

    - ``placeholder`` emits fixed tokens, proving the runner contract without
      an engine.
    - ``python`` delegates to a :class:`PythonRunner` with a templated prompt.
    - ``native`` runs an in-process engine (``MLXLmEngine`` by default) whose
      contexts are cached per model id.
    """

    def __init__(
        self,
        model_paths: Dict[ModelID, Path],
        placeholder_tokens: Sequence[str] = ("mlx", " adapter", " not", " wired"),
        tokenizer_loader: Optional[TokenizerLoader] = None,
        backend: str = "placeholder",
        python_runner: Optional[PythonRunner] = None,
        engine: Optional[Any] = None,
    ):
        if backend not in BACKENDS:
            raise ValueError(f"Unknown backend {backend}, expected one of {BACKENDS}")
        if backend == "python" and python_runner is None:
            raise ValueError("The python backend requires a python_runner")
        self.model_paths = model_paths
        self.placeholder_tokens = list(placeholder_tokens)
        self.tokenizer_loader = tokenizer_loader
        self.backend = backend
        self.python_runner = python_runner
        self.engine = engine if engine is not None else MLXLmEngine()
        self.cache = ContextCache()

    @classmethod
    def with_hf_tokenizer(cls, model_paths, **kwargs) -> "MLXAdapter":
        return cls(model_paths, tokenizer_loader=HFTokenizerLoader(), **kwargs)

    def _load_tokenizer(self, model_path: Path) -> Optional[Tokenizer]:
        if self.tokenizer_loader is None:
            if self.backend == "placeholder":
                raise TokenizerUnavailable()
            return None
        try:
            return self.tokenizer_loader.load_tokenizer(model_path)
        except Exception as e:
            # Python and native backends tokenize on their own.
            if self.backend != "placeholder":
                logging.debug(f"Tokenizer unavailable for {model_path}: {e}")
                return None
            if isinstance(e, TokenizerLoadFailed):
                raise
            raise TokenizerLoadFailed(str(e)) from e

    def load_model(self, model_id, options):
        model_path = self.model_paths.get(model_id)
        if model_path is None or not Path(model_path).exists():
            raise ModelPathMissing(model_id)
        model_path = Path(model_path)

        tokenizer = self._load_tokenizer(model_path)
        context = AdapterContext(model_id, model_path, tokenizer, self.backend)

        if self.backend == "python":
            context.python_loaded = self.python_runner.load(model_id, options)
        elif self.backend == "native":
            start = time.perf_counter()
            context.native = self.cache.get_or_load(
                model_id, lambda: self.engine.load(model_path)
            )
            logging.info(
                f"Model {model_id.display_name} ready in "
                f"{time.perf_counter() - start:.2f}s"
            )
        return context

    def unload_model(self, context):
        if context.backend == "python" and context.python_loaded is not None:
            self.python_runner.unload(context.python_loaded)
        elif context.backend == "native":
            self.cache.remove(context.id)

    def generate(self, request, context):
        history = [m.to_dict() for m in request.messages]
        templated = replace(
            request,
            prompt=llama3_prompt(request.system_prompt, history, request.prompt),
        )

        if context.backend == "placeholder":
            return self._placeholder_events(templated, context)
        if context.backend == "python":
            if context.python_loaded is None:
                raise ModelNotLoaded(request.model)
            return self._python_events(templated, context)
        return self._native_events(request, context)

    def _python_events(self, request, context):
        stream = self.python_runner.generate(request, context.python_loaded)
        try:
            yield from stream
        finally:
            stream.cancel()

    def _placeholder_events(self, request, context):
        tokens = self.placeholder_tokens
        if not tokens:
            tokens = request.prompt.split()
            if context.tokenizer is not None:
                try:
                    tokens = [
                        context.tokenizer.decode([t])
                        for t in context.tokenizer.encode(request.prompt)
                    ]
                except Exception as e:
                    logging.debug(f"Tokenizer failed, splitting on whitespace: {e}")

        start = time.perf_counter()
        for token in tokens:
            yield TokenEvent(token)

        stats = GenerationStats(
            prompt_token_count=len(tokens),
            generated_token_count=len(tokens),
            duration=time.perf_counter() - start,
        )
        yield CompletedEvent(GenerationResult("".join(tokens).strip(), stats))

    def _native_events(self, request, context):
        if context.native is None:
            raise ModelNotLoaded(request.model)

        messages = build_chat_messages(
            request.system_prompt, [m.to_dict() for m in request.messages], request.prompt
        )
        params = sampling_parameters(request.config)
        stops = request.config.stop_sequences

        start = time.perf_counter()
        collected = ""
        token_count = 0
        info = None
        stop_hit = False

        for event in self.engine.stream(context.native, messages, params):
            if isinstance(event, EngineChunk):
                candidate = collected + event.text
                trimmed = trim_stop_sequence(candidate, stops)
                if trimmed is not None:
                    collected = trimmed
                    stop_hit = True
                    break
                collected = candidate
                token_count += 1
                yield TokenEvent(event.text)
            elif isinstance(event, EngineInfo):
                info = event
            # Tool calls are not surfaced.

        if info is not None:
            stats = GenerationStats(
                prompt_token_count=info.prompt_token_count,
                generated_token_count=info.generation_token_count,
                duration=info.prompt_time + info.generate_time,
                stop_hit=stop_hit,
            )
        else:
            stats = GenerationStats(
                prompt_token_count=sum(count_words(m["content"]) for m in messages),
                generated_token_count=token_count,
                duration=time.perf_counter() - start,
                stop_hit=stop_hit,
            )
        yield CompletedEvent(GenerationResult(collected, stats))


def build_chat_messages(
    system_prompt: Optional[str], history: List[Dict[str, str]], user_prompt: str
) -> List[Dict[str, str]]:
    messages = []
    if system_prompt is not None:
        messages.append({"role": "system", "content": system_prompt})
    messages.extend({"role": m["role"], "content": m["content"]} for m in history)
    if user_prompt:
        messages.append({"role": "user", "content": user_prompt})
    return messages
