"""
Local inference session: runs a GGUF model in-process with llama.cpp
(llama-cpp-python).
"""

import logging
import os
import platform
import sys
from typing import Iterator, List

from .base import LOCAL, BackendConfig, CancellationToken, InferenceSession
from ..errors import ConfigurationError, GenerationError, ModelLoadError

logger = logging.getLogger(__name__)


def gpu_layers_to_use() -> int:
    """Offload every layer on Apple Silicon, none elsewhere.

    llama.cpp clamps the value to the model's real layer count.
    """
    if sys.platform == "darwin" and platform.machine() == "arm64":
        return 100
    return 0


class LocalInferenceSession(InferenceSession):

    kind = LOCAL

    def __init__(self, session_id: str):
        super().__init__(session_id)
        self._model = None
        self._n_ctx = 0

    def _create_model(self, model_path: str, context_length: int):
        from llama_cpp import Llama

        return Llama(
            model_path=model_path,
            n_ctx=context_length,
            n_gpu_layers=gpu_layers_to_use(),
            verbose=False,
        )

    def _load(self, config: BackendConfig) -> None:
        if not config.model_path:
            raise ConfigurationError(f"Local model '{config.name}' has no model_path")
        if not os.path.isfile(config.model_path):
            raise ModelLoadError(f"Model file not found: {config.model_path}")

        logger.info("[session] Loading %s (n_ctx=%d, gpu_layers=%d)",
                    config.model_path, config.context_length, gpu_layers_to_use())
        try:
            self._model = self._create_model(config.model_path, config.context_length)
        except (ValueError, RuntimeError, OSError) as e:
            raise ModelLoadError(f"Could not load {config.model_path}: {e}") from e
        self._n_ctx = config.context_length

    def _tokenize(self, text: str) -> List[int]:
        return list(self._model.tokenize(text.encode("utf-8"), add_bos=False))

    def _context_length(self) -> int:
        return self._n_ctx or self._model.n_ctx()

    # ── Streaming generation ──

    def _iter_chunks(self, messages: List[dict], token: CancellationToken) -> Iterator[str]:
        try:
            stream = self._model.create_chat_completion(messages=messages, stream=True)
        except (ValueError, RuntimeError) as e:
            raise GenerationError(str(e)) from e

        try:
            while not token.is_cancelled:
                try:
                    chunk = next(stream)
                except StopIteration:
                    return
                except (ValueError, RuntimeError) as e:
                    raise GenerationError(str(e)) from e
                delta = chunk.get("choices", [{}])[0].get("delta", {})
                content = delta.get("content") or ""
                if content:
                    yield content
        finally:
            # Closing the llama.cpp generator stops token sampling
            close = getattr(stream, "close", None)
            if close is not None:
                close()

    def _release(self) -> None:
        model, self._model = self._model, None
        if model is not None:
            close = getattr(model, "close", None)
            if close is not None:
                close()
