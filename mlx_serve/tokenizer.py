# Copyright © 2026 Apple Inc.

import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Union

from .runner import RunnerError


class TokenizerUnavailable(RunnerError):
    def __init__(self):
        super().__init__("No tokenizer loader configured")


class TokenizerLoadFailed(RunnerError):
    def __init__(self, reason: str):
        super().__init__(f"Tokenizer failed to load: {reason}")
        self.reason = reason


class Tokenizer(ABC):
    @abstractmethod
    def encode(self, text: str) -> List[int]:
        pass

    @abstractmethod
    def decode(self, tokens: List[int]) -> str:
        pass


class TokenizerLoader(ABC):
    @abstractmethod
    def load_tokenizer(self, model_path: Union[str, os.PathLike]) -> Tokenizer:
        pass


class VocabTokenizer(Tokenizer):
    """
    Whitespace tokenizer over a fixed vocabulary. Unknown words encode to
    ``0``; unknown ids decode to their decimal form.
    """

    def __init__(self, vocab: Dict[str, int]):
        self.token_to_id = dict(vocab)
        self.id_to_token = {i: tok for tok, i in vocab.items()}

    def encode(self, text):
        return [self.token_to_id.get(word, 0) for word in text.split()]

    def decode(self, tokens):
        return " ".join(self.id_to_token.get(i, str(i)) for i in tokens)


class HFTokenizer(Tokenizer):
    def __init__(self, tokenizer):
        self._tokenizer = tokenizer

    def encode(self, text):
        return self._tokenizer.encode(text)

    def decode(self, tokens):
        return self._tokenizer.decode(tokens, skip_special_tokens=False)


class HFTokenizerLoader(TokenizerLoader):
    """Loads a Hugging Face tokenizer from the model's directory."""

    def __init__(self, **tokenizer_config):
        self.tokenizer_config = tokenizer_config

    def load_tokenizer(self, model_path):
        from transformers import AutoTokenizer

        model_path = Path(model_path)
        folder = model_path if model_path.is_dir() else model_path.parent
        try:
            tokenizer = AutoTokenizer.from_pretrained(
                str(folder), **self.tokenizer_config
            )
        except (OSError, ValueError) as e:
            raise TokenizerLoadFailed(str(e)) from e
        return HFTokenizer(tokenizer)
