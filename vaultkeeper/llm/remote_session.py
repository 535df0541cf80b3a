"""
Remote inference session: works with OpenAI, Groq, Together.ai, and any
other provider that implements the OpenAI chat/completions API.
"""

import json
import logging
from typing import Iterator, List

import requests
import tiktoken

from .base import REMOTE, BackendConfig, CancellationToken, InferenceSession
from ..errors import AuthenticationError, ConfigurationError, GenerationError

logger = logging.getLogger(__name__)

# Used when tiktoken does not know the model (custom or self-hosted models)
FALLBACK_ENCODING = "cl100k_base"


def load_encoding(model: str):
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        logger.debug("[session] No tiktoken mapping for %s, using %s", model, FALLBACK_ENCODING)
        return tiktoken.get_encoding(FALLBACK_ENCODING)


class RemoteInferenceSession(InferenceSession):

    kind = REMOTE

    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.base_url = ""
        self.model = ""
        self.api_key = ""
        self._encoding = None
        self._n_ctx = 0

    def _load(self, config: BackendConfig) -> None:
        if not config.model:
            raise ConfigurationError(f"Remote model '{config.name}' has no model id")
        if not config.api_url:
            raise ConfigurationError(f"Remote model '{config.name}' has no api_url")
        if not config.api_key:
            raise AuthenticationError(f"No API key configured for '{config.name}'")
        self.base_url = config.api_url.rstrip("/")
        self.model = config.model
        self.api_key = config.api_key
        self._n_ctx = config.context_length
        self._encoding = load_encoding(config.model)

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _tokenize(self, text: str) -> List[int]:
        return self._encoding.encode(text)

    def _context_length(self) -> int:
        return self._n_ctx

    # ── Streaming generation ──

    def _iter_chunks(self, messages: List[dict], token: CancellationToken) -> Iterator[str]:
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": True,
        }
        url = f"{self.base_url}/chat/completions"
        logger.debug("[session] POST %s (%d messages)", url, len(messages))

        try:
            response = requests.post(url, headers=self._headers(), json=payload,
                                     stream=True, timeout=(10, 120))
        except requests.exceptions.RequestException as e:
            raise GenerationError(f"Request to {url} failed: {e}") from e

        try:
            if response.status_code in (401, 403):
                raise AuthenticationError(
                    f"Authentication failed ({response.status_code}). Check the API key for {self.model}.")
            try:
                response.raise_for_status()
            except requests.exceptions.HTTPError as e:
                raise GenerationError(str(e)) from e

            try:
                for line in response.iter_lines(decode_unicode=True):
                    if token.is_cancelled:
                        return
                    if not line or not line.startswith("data: "):
                        continue
                    data_str = line[6:]
                    if data_str.strip() == "[DONE]":
                        return
                    try:
                        chunk = json.loads(data_str)
                    except json.JSONDecodeError:
                        continue
                    if "error" in chunk:
                        raise GenerationError(str(chunk["error"]))
                    choices = chunk.get("choices") or [{}]
                    content = (choices[0].get("delta") or {}).get("content") or ""
                    if content:
                        yield content
            except requests.exceptions.RequestException as e:
                raise GenerationError(f"Stream interrupted: {e}") from e
        finally:
            response.close()
