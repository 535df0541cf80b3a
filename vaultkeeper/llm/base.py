"""
Inference sessions: the common contract of local and remote chat backends.

A session owns its message history and a cancellation token. Streaming is
pull-based: :meth:`InferenceSession.stream` yields :class:`TokenEvent` objects
and :meth:`InferenceSession.streaming_prompt` adapts that to a callback.
"""

import enum
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

from ..cli_display import token_tracker
from ..errors import SessionBusy, SessionError, SessionStateError

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"


@dataclass
class BackendConfig:
    """Settings for one configured model."""
    name: str = ""
    kind: str = REMOTE          # "local" | "remote"
    model_path: str = ""        # local: GGUF file
    model: str = ""             # remote: model id sent to the API
    api_url: str = ""
    api_key: str = ""
    context_length: int = 4096


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    STREAMING = "streaming"
    DISPOSED = "disposed"


@dataclass(frozen=True)
class TokenEvent:
    message_type: str   # "success" | "error"
    content: str

    @property
    def is_error(self) -> bool:
        return self.message_type == "error"


class CancellationToken:
    """One-shot flag checked by the generation loop."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class InferenceSession(ABC):
    """Base class for chat sessions.

    States move ``UNINITIALIZED -> READY -> STREAMING -> READY`` and end in
    ``DISPOSED``. A failed :meth:`init` leaves the session uninitialised.
    """

    kind: str = ""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.state = SessionState.UNINITIALIZED
        self.config: Optional[BackendConfig] = None
        self.message_history: List[dict] = []
        self._token = CancellationToken()
        self._lock = threading.Lock()
        self._release_pending = False

    @property
    def model_name(self) -> str:
        if self.config is None:
            return ""
        return self.config.name or self.config.model

    # ── Lifecycle ──

    def init(self, config: BackendConfig) -> None:
        """Prepare the backend. Raises a :class:`SessionError` subclass on failure."""
        with self._lock:
            if self.state != SessionState.UNINITIALIZED:
                raise SessionStateError(
                    f"Session {self.session_id} cannot be initialised in state {self.state.value}")
        self._load(config)
        with self._lock:
            self.config = config
            self.state = SessionState.READY
        logger.info("[session] %s ready (%s, %s)", self.session_id, self.kind, self.model_name)

    def dispose(self) -> None:
        """Stop any stream and release the backend. Safe to call twice.

        If a stream is running, the backend is released by that stream once
        it has left the backend, not by this call.
        """
        with self._lock:
            if self.state == SessionState.DISPOSED:
                return
            release_now = self.state == SessionState.READY
            self._release_pending = self.state == SessionState.STREAMING
            self.state = SessionState.DISPOSED
            self._token.cancel()
        if release_now:
            self._release()
        self.message_history = []
        logger.info("[session] %s disposed", self.session_id)

    def _require_initialised(self) -> None:
        if self.state in (SessionState.UNINITIALIZED, SessionState.DISPOSED):
            raise SessionStateError(
                f"Session {self.session_id} is {self.state.value}")

    # ── Queries ──

    def tokenize(self, text: str) -> List[int]:
        self._require_initialised()
        return self._tokenize(text)

    def get_context_length(self) -> int:
        self._require_initialised()
        return self._context_length()

    # ── Streaming ──

    def abort(self) -> None:
        """Stop the current stream, if any. The partial reply is kept."""
        self._token.cancel()

    def stream(self, prompt: str, system_prompt: Optional[str] = None,
               ignore_history: bool = False) -> Iterator[TokenEvent]:
        """Generate a reply to *prompt*, yielding one event per delta.

        Backend faults end the stream with a single ``"error"`` event.
        Raises :class:`SessionStateError` or :class:`SessionBusy` on the
        first iteration if the session cannot stream.
        """
        with self._lock:
            self._require_initialised()
            if self.state == SessionState.STREAMING:
                raise SessionBusy(f"Session {self.session_id} is already streaming")
            self.state = SessionState.STREAMING
            token = self._token = CancellationToken()

        if ignore_history:
            self.message_history = []
        turn_start = len(self.message_history)
        if system_prompt:
            self.message_history.append({"role": "system", "content": system_prompt})
        self.message_history.append({"role": "user", "content": prompt})
        messages = [dict(m) for m in self.message_history]

        parts: List[str] = []
        failed = False
        chunks = self._iter_chunks(messages, token)
        try:
            for piece in chunks:
                if token.is_cancelled:
                    break
                if not piece:
                    continue
                parts.append(piece)
                yield TokenEvent("success", piece)
                if token.is_cancelled:
                    break
        except SessionError as e:
            failed = True
            logger.warning("[session] %s stream failed: %s", self.session_id, e)
            yield TokenEvent("error", f"Error during streaming session: {e}\n")
        finally:
            close = getattr(chunks, "close", None)
            if close is not None:
                close()
            reply = "".join(parts)
            with self._lock:
                disposed = self.state == SessionState.DISPOSED
                if self.state == SessionState.STREAMING:
                    self.state = SessionState.READY
                release, self._release_pending = self._release_pending, False
            if not disposed:
                if reply:
                    self.message_history.append({"role": "assistant", "content": reply})
                elif failed:
                    # No reply: drop this turn so user messages do not pile up
                    del self.message_history[turn_start:]
                self._record_usage(messages, reply)
            if release:
                self._release()
            if token.is_cancelled:
                logger.info("[session] %s aborted after %d deltas", self.session_id, len(parts))

    def streaming_prompt(self, prompt: str, on_token: Callable[[TokenEvent], None],
                         system_prompt: Optional[str] = None,
                         ignore_history: bool = False) -> str:
        """Run :meth:`stream` to completion, calling *on_token* per event.

        Returns the concatenated ``"success"`` content (partial if aborted).
        """
        parts: List[str] = []
        for event in self.stream(prompt, system_prompt=system_prompt,
                                 ignore_history=ignore_history):
            if not event.is_error:
                parts.append(event.content)
            on_token(event)
        return "".join(parts)

    def _record_usage(self, messages: List[dict], reply: str) -> None:
        try:
            prompt_tokens = sum(len(self._tokenize(m["content"])) for m in messages)
            completion_tokens = len(self._tokenize(reply)) if reply else 0
        except SessionError:
            return
        token_tracker.record(prompt_tokens, completion_tokens, model_name=self.model_name)

    # ── Subclass hooks ──

    @abstractmethod
    def _load(self, config: BackendConfig) -> None:
        """Validate *config* and acquire the backend (model, tokenizer, ...)."""

    @abstractmethod
    def _tokenize(self, text: str) -> List[int]:
        """Encode *text* with the model's tokenizer."""

    @abstractmethod
    def _context_length(self) -> int:
        """Context window of the loaded model, in tokens."""

    @abstractmethod
    def _iter_chunks(self, messages: List[dict], token: CancellationToken) -> Iterator[str]:
        """Yield reply deltas for *messages*.

        Backend faults must be raised as :class:`SessionError` subclasses.
        """

    def _release(self) -> None:
        """Free backend resources. Default: nothing to free."""
