"""
Programmatic API for vaultkeeper: the request boundary used by the CLI
and by any UI embedding the library.

Example usage::

    from vaultkeeper import VaultService

    with VaultService() as service:
        service.index_files_in_directory(progress=print)
        service.create_session("chat-1", model_name="mistral")
        prompt = service.augment_prompt_with_rag(
            "what did I write about sqlite?", "chat-1", service.config.VAULT_DIRECTORY)
        service.streaming_prompt("chat-1", prompt, on_token=lambda e: print(e.content, end=""))
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

from .config import Config
from .errors import ConfigurationError, NotFoundError
from .kb.prompt_builder import RetrievalPromptBuilder
from .kb.synchronizer import (
    INDEXING_ERROR_MESSAGE,
    KnowledgeSynchronizer,
    SyncReport,
)
from .kb.vector_table import Entry, VectorDB, VectorTable, connect, table_name
from .kb.watcher import VaultWatcher
from .llm.base import InferenceSession, TokenEvent
from .llm.registry import SessionRegistry

logger = logging.getLogger(__name__)


class VaultService:
    """
    Owns the vector database, one table per vault and the session registry.

    Parameters
    ----------
    config:
        Loaded configuration. Defaults to :meth:`Config.load`.
    db:
        Optional pre-opened :class:`VectorDB` (tests pass an in-memory one).
    """

    def __init__(self, config: Config | None = None, db: VectorDB | None = None) -> None:
        self.config = config or Config.load()
        self._db = db
        self._lock = threading.Lock()
        self._tables: dict[str, VectorTable] = {}
        self._synchronizers: dict[str, KnowledgeSynchronizer] = {}
        self._watchers: list[VaultWatcher] = []
        self.sessions = SessionRegistry()
        self.prompt_builder = RetrievalPromptBuilder()

    def __enter__(self) -> "VaultService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    @property
    def db(self) -> VectorDB:
        with self._lock:
            if self._db is None:
                self._db = connect(self.config.VECTOR_DB_PATH)
            return self._db

    def _embedding_options(self) -> dict:
        return {
            "ollama_base_url": self.config.OLLAMA_BASE_URL,
            "openai_api_key": self.config.OPENAI_API_KEY,
            "openai_base_url": self.config.OPENAI_BASE_URL,
        }

    def table_for(self, vault_directory: str, create: bool = False) -> VectorTable:
        """
        Return the vector table of *vault_directory*.

        Tables already present in the database are opened on first use.

        Raises
        ------
        NotFoundError
            If the vault has never been indexed and *create* is False.
        """
        vault = os.path.abspath(os.path.expanduser(vault_directory))
        with self._lock:
            table = self._tables.get(vault)
        if table is not None:
            return table

        db = self.db
        if not create and table_name(vault) not in db.table_names():
            raise NotFoundError(f"No index for vault {vault}. Run indexing first.")

        table = VectorTable()
        table.initialize(db, vault, self.config.DEFAULT_EMBEDDING_BACKEND,
                         **self._embedding_options())
        with self._lock:
            return self._tables.setdefault(vault, table)

    def synchronizer_for(self, vault_directory: str) -> KnowledgeSynchronizer:
        table = self.table_for(vault_directory, create=True)
        vault = table.vault_directory
        with self._lock:
            sync = self._synchronizers.get(vault)
            if sync is None:
                sync = KnowledgeSynchronizer(
                    table, vault,
                    batch_size=self.config.SYNC_BATCH_SIZE,
                    embed_workers=self.config.EMBED_WORKERS,
                )
                self._synchronizers[vault] = sync
        return sync

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def search(self, query: str, limit: int, vault_directory: str,
               filter: Optional[str] = None) -> list[Entry]:
        """Semantic search over one vault."""
        return self.table_for(vault_directory).search(query, limit, filter=filter)

    def augment_prompt_with_rag(self, query: str, session_id: str, vault_directory: str,
                                filter: Optional[str] = None) -> str:
        """
        Build a prompt for *session_id* grounded in the vault's best matches.

        Raises
        ------
        ConfigurationError
            If ``max_rag_examples`` is zero or unset.
        NotFoundError
            If the session or the vault's table does not exist.
        """
        if not self.config.MAX_RAG_EXAMPLES or self.config.MAX_RAG_EXAMPLES <= 0:
            raise ConfigurationError("max_rag_examples is not set. Set it to a positive number.")
        session = self.sessions.get(session_id)
        results = self.search(query, self.config.MAX_RAG_EXAMPLES, vault_directory, filter=filter)
        return self.prompt_builder.build(
            query, results, session.tokenize, session.get_context_length())

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def index_files_in_directory(
        self,
        progress: Optional[Callable[[float], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        vault_directory: Optional[str] = None,
    ) -> SyncReport:
        """
        Synchronise the configured vault (or *vault_directory*) with its index.

        Configuration problems and fatal write errors are reported through
        *on_error* before they are raised.
        """
        vault = vault_directory or self.config.VAULT_DIRECTORY
        try:
            if not vault:
                raise ConfigurationError("No vault directory configured")
            if not self.config.DEFAULT_EMBEDDING_BACKEND:
                raise ConfigurationError("No embedding backend configured")
            sync = self.synchronizer_for(vault)
        except ConfigurationError as exc:
            logger.error("[sync] Cannot index %s: %s", vault or "<unset>", exc)
            if on_error is not None:
                on_error(INDEXING_ERROR_MESSAGE.format(error=exc))
            raise
        return sync.sync(progress=progress, on_error=on_error)

    def watch(self, vault_directory: Optional[str] = None,
              debounce_seconds: float = 0.5) -> VaultWatcher:
        """Start a background watcher that keeps the vault's index current."""
        vault = vault_directory or self.config.VAULT_DIRECTORY
        if not vault:
            raise ConfigurationError("No vault directory configured")
        watcher = VaultWatcher(self.synchronizer_for(vault), debounce_seconds=debounce_seconds)
        watcher.start_background()
        with self._lock:
            self._watchers.append(watcher)
        return watcher

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session_id: str, model_name: Optional[str] = None) -> InferenceSession:
        """Create and initialise a session for a configured model (default: ``default_llm``)."""
        return self.sessions.create(session_id, self.config.llm_config(model_name))

    def streaming_prompt(self, session_id: str, prompt: str,
                         on_token: Callable[[TokenEvent], None],
                         system_prompt: Optional[str] = None,
                         ignore_history: bool = False) -> str:
        return self.sessions.get(session_id).streaming_prompt(
            prompt, on_token, system_prompt=system_prompt, ignore_history=ignore_history)

    def abort(self, session_id: str) -> None:
        self.sessions.get(session_id).abort()

    def dispose_session(self, session_id: str) -> None:
        self.sessions.dispose(session_id)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop watchers, dispose every session and close the database."""
        with self._lock:
            watchers, self._watchers = self._watchers, []
            db = self._db
            self._tables.clear()
            self._synchronizers.clear()
        for watcher in watchers:
            watcher.stop()
        self.sessions.dispose_all()
        if db is not None:
            db.close()
