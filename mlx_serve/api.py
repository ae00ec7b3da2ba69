# Copyright © 2026 Apple Inc.

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .model_store import ModelManifest, ModelTag
from .runner import (
    ChatMessage,
    ChatRole,
    GenerationConfig,
    GenerationRequest,
    GenerationResult,
    ModelID,
)

DEFAULT_MAX_TOKENS = 256
DEFAULT_TEMPERATURE = 0.8
DEFAULT_TOP_P = 0.95


def _parse_stop(stop) -> List[str]:
    stop = stop or []
    if isinstance(stop, str):
        stop = [stop]
    if not isinstance(stop, list) or not all(isinstance(s, str) for s in stop):
        raise ValueError("stop must be a string or a list of strings")
    return stop


def process_message_content(content) -> str:
    """
    Flatten message content to a string. List content must only hold
    ``{"type": "text", "text": ...}`` fragments, which are concatenated.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        text_fragments = [
            fragment.get("text", "")
            for fragment in content
            if isinstance(fragment, dict) and fragment.get("type") == "text"
        ]
        if len(text_fragments) != len(content):
            raise ValueError("Only 'text' content type is supported.")
        return "".join(text_fragments)
    raise ValueError("message content must be a string or a list of text fragments")


def parse_messages(raw) -> List[ChatMessage]:
    """Convert dialect messages role by role. Unknown roles become ``user``."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("messages must be a list")

    messages = []
    for message in raw:
        if not isinstance(message, dict):
            raise ValueError("each message must be an object")
        try:
            role = ChatRole(message.get("role"))
        except ValueError:
            role = ChatRole.USER
        messages.append(ChatMessage(role, process_message_content(message.get("content"))))
    return messages


def _check_sampling(temperature, top_p, max_tokens):
    if not isinstance(temperature, (float, int)) or temperature < 0:
        raise ValueError("temperature must be a non-negative float")
    if not isinstance(top_p, (float, int)) or top_p < 0 or top_p > 1:
        raise ValueError("top_p must be a float between 0 and 1")
    if max_tokens is not None and (
        not isinstance(max_tokens, int) or isinstance(max_tokens, bool) or max_tokens < 0
    ):
        raise ValueError("max_tokens must be a non-negative integer")


def _check_penalty(name, value):
    if not isinstance(value, (float, int)) or value < 0:
        raise ValueError(f"{name} must be a non-negative float")


def _check_keep_alive(keep_alive):
    if keep_alive is not None and (
        not isinstance(keep_alive, (float, int)) or isinstance(keep_alive, bool)
    ):
        raise ValueError("keep_alive must be a number of seconds")


def _require_object(body) -> Dict[str, Any]:
    if not isinstance(body, dict):
        raise ValueError(f"Request should be an object, but got {type(body).__name__}")
    return body


# Native dialect


@dataclass
class GenerationOptions:
    temperature: float = DEFAULT_TEMPERATURE
    top_p: float = DEFAULT_TOP_P
    max_tokens: Optional[int] = DEFAULT_MAX_TOKENS
    stop: List[str] = field(default_factory=list)
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GenerationOptions":
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("options must be an object")

        max_tokens = data.get("max_tokens")
        if max_tokens is None:
            max_tokens = data.get("num_predict")
        if max_tokens is None:
            max_tokens = DEFAULT_MAX_TOKENS
        options = cls(
            temperature=data.get("temperature", DEFAULT_TEMPERATURE),
            top_p=data.get("top_p", DEFAULT_TOP_P),
            max_tokens=max_tokens,
            stop=_parse_stop(data.get("stop")),
            presence_penalty=data.get("presence_penalty", 0.0),
            frequency_penalty=data.get("frequency_penalty", 0.0),
        )
        _check_sampling(options.temperature, options.top_p, options.max_tokens)
        _check_penalty("presence_penalty", options.presence_penalty)
        _check_penalty("frequency_penalty", options.frequency_penalty)
        return options


@dataclass
class NativeGenerateRequest:
    """Body of ``/api/generate`` and ``/api/chat``."""

    model: str
    prompt: str = ""
    system: Optional[str] = None
    stream: bool = False
    keep_alive: Optional[float] = None
    options: GenerationOptions = field(default_factory=GenerationOptions)
    messages: List[ChatMessage] = field(default_factory=list)

    @classmethod
    def from_dict(cls, body) -> "NativeGenerateRequest":
        body = _require_object(body)
        request = cls(
            model=body.get("model"),
            prompt=body.get("prompt") or "",
            system=body.get("system"),
            stream=body.get("stream", False),
            keep_alive=body.get("keep_alive"),
            options=GenerationOptions.from_dict(body.get("options")),
            messages=parse_messages(body.get("messages")),
        )
        if not isinstance(request.model, str):
            raise ValueError("model must be a string")
        if not isinstance(request.prompt, str):
            raise ValueError("prompt must be a string")
        if request.system is not None and not isinstance(request.system, str):
            raise ValueError("system must be a string")
        if not isinstance(request.stream, bool):
            raise ValueError("stream must be a boolean")
        _check_keep_alive(request.keep_alive)
        return request


# OpenAI dialect


@dataclass
class OpenAIChatRequest:
    """Subset of the OpenAI chat completions request body."""

    model: str
    messages: List[ChatMessage]
    temperature: float = DEFAULT_TEMPERATURE
    top_p: float = DEFAULT_TOP_P
    max_tokens: Optional[int] = DEFAULT_MAX_TOKENS
    stream: bool = False
    stop: List[str] = field(default_factory=list)
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0

    @classmethod
    def from_dict(cls, body) -> "OpenAIChatRequest":
        body = _require_object(body)
        if "messages" not in body:
            raise ValueError("Request did not contain messages")

        max_tokens = body.get("max_completion_tokens")
        if max_tokens is None:
            max_tokens = body.get("max_tokens")
        request = cls(
            model=body.get("model"),
            messages=parse_messages(body["messages"]),
            temperature=body.get("temperature", DEFAULT_TEMPERATURE),
            top_p=body.get("top_p", DEFAULT_TOP_P),
            max_tokens=max_tokens if max_tokens is not None else DEFAULT_MAX_TOKENS,
            stream=body.get("stream", False),
            stop=_parse_stop(body.get("stop")),
            presence_penalty=body.get("presence_penalty", 0.0),
            frequency_penalty=body.get("frequency_penalty", 0.0),
        )
        if not isinstance(request.model, str):
            raise ValueError("model must be a string")
        if not isinstance(request.stream, bool):
            raise ValueError("stream must be a boolean")
        _check_sampling(request.temperature, request.top_p, request.max_tokens)
        _check_penalty("presence_penalty", request.presence_penalty)
        _check_penalty("frequency_penalty", request.frequency_penalty)
        return request


@dataclass
class PullRequest:
    """Body of ``/api/pull``: import a local artifact under ``tag``."""

    tag: str
    artifact: str
    tokenizer: Optional[str] = None
    root: Optional[str] = None

    @classmethod
    def from_dict(cls, body) -> "PullRequest":
        body = _require_object(body)
        request = cls(
            tag=body.get("tag"),
            artifact=body.get("artifact"),
            tokenizer=body.get("tokenizer"),
            root=body.get("root"),
        )
        if not isinstance(request.tag, str):
            raise ValueError("tag must be a string")
        if not isinstance(request.artifact, str) or not request.artifact:
            raise ValueError("artifact must be a non-empty string")
        for name in ("tokenizer", "root"):
            value = getattr(request, name)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"{name} must be a string")
        return request


# Normalization


def _model_id(model: str) -> Optional[ModelID]:
    tag = ModelTag.parse(model)
    return ModelID.from_tag(tag) if tag is not None else None


def normalize_native(req: NativeGenerateRequest) -> Optional[GenerationRequest]:
    model_id = _model_id(req.model)
    if model_id is None:
        return None

    options = req.options
    config = GenerationConfig(
        max_tokens=options.max_tokens,
        temperature=options.temperature,
        top_p=options.top_p,
        stop_sequences=list(options.stop),
        presence_penalty=options.presence_penalty,
        frequency_penalty=options.frequency_penalty,
    )
    return GenerationRequest(
        model=model_id,
        prompt=req.prompt,
        messages=list(req.messages),
        config=config,
        system_prompt=req.system,
        keep_alive=req.keep_alive,
    )


def normalize_openai(req: OpenAIChatRequest) -> Optional[GenerationRequest]:
    model_id = _model_id(req.model)
    if model_id is None:
        return None

    config = GenerationConfig(
        max_tokens=req.max_tokens,
        temperature=req.temperature,
        top_p=req.top_p,
        stop_sequences=list(req.stop),
        presence_penalty=req.presence_penalty,
        frequency_penalty=req.frequency_penalty,
    )
    # The history carries the content.
    return GenerationRequest(
        model=model_id, prompt="", messages=list(req.messages), config=config
    )


# Responses


def native_response(
    request: GenerationRequest,
    tokens: List[str],
    result: GenerationResult,
    chat: bool = False,
) -> Dict[str, Any]:
    response = {
        "model": request.model.display_name,
        "response": result.text,
        "tokens": tokens,
        "done": True,
        "prompt_eval_count": result.stats.prompt_token_count,
        "eval_count": result.stats.generated_token_count,
    }
    if chat:
        response["message"] = {"role": "assistant", "content": result.text}
    return response


def native_token_payload(text: str) -> Dict[str, Any]:
    return {"token": text}


def native_done_payload(result: GenerationResult) -> Dict[str, Any]:
    return {"done": True, "response": result.text}


class OpenAIResponseBuilder:
    """
    Builds ``chat.completion`` bodies and ``chat.completion.chunk`` objects
    for one request. All chunks of a stream share one id and timestamp.
    """

    def __init__(self, model: str, request_id: Optional[str] = None):
        self.model = model
        self.request_id = f"chatcmpl-{request_id or uuid.uuid4()}"
        self.created = int(time.time())

    def _base(self, object_type: str) -> Dict[str, Any]:
        return {
            "id": self.request_id,
            "object": object_type,
            "created": self.created,
            "model": self.model,
        }

    def completion(self, result: GenerationResult) -> Dict[str, Any]:
        stats = result.stats
        response = self._base("chat.completion")
        response["choices"] = [
            {
                "index": 0,
                "message": {"role": "assistant", "content": result.text},
                "finish_reason": "stop",
            }
        ]
        response["usage"] = {
            "prompt_tokens": stats.prompt_token_count,
            "completion_tokens": stats.generated_token_count,
            "total_tokens": stats.prompt_token_count + stats.generated_token_count,
        }
        return response

    def chunk(self, text: Optional[str], finish_reason: Optional[str] = None):
        delta = {} if text is None else {"role": "assistant", "content": text}
        response = self._base("chat.completion.chunk")
        response["choices"] = [
            {"index": 0, "delta": delta, "finish_reason": finish_reason}
        ]
        return response

    def final_chunk(self) -> Dict[str, Any]:
        return self.chunk(None, finish_reason="stop")


def models_response(manifests: List[ModelManifest]) -> Dict[str, Any]:
    models = [
        {
            "id": manifest.tag.display_name,
            "object": "model",
            "owned_by": "local",
            "created": int(manifest.created_at.timestamp()),
            "size": manifest.size_bytes,
        }
        for manifest in manifests
    ]
    return {"object": "list", "data": models}


def error_payload(message: str) -> Dict[str, str]:
    return {"error": message}
