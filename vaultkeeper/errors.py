"""
Exception hierarchy shared by the knowledge base and the inference sessions.

Every error raised on purpose by vaultkeeper derives from
:class:`VaultkeeperError`, so callers at the request boundary can catch one
type and surface ``str(exc)`` to the user.
"""


class VaultkeeperError(Exception):
    """Base class for all vaultkeeper errors."""


# ── Configuration ──

class ConfigurationError(VaultkeeperError):
    """Missing or invalid settings (no vault, max_rag_examples unset, ...)."""


class ConfigurationMismatch(ConfigurationError):
    """A vector table was re-initialised with different arguments."""


# ── Lookup ──

class NotFoundError(VaultkeeperError):
    """A vault table or session id does not exist."""


class DuplicateSessionId(VaultkeeperError):
    """A session with the requested id is already registered."""


# ── Storage ──

class StorageError(VaultkeeperError):
    """Base class for filesystem and vector-table faults."""


class ReadError(StorageError):
    """A vault file could not be read."""


class WriteError(StorageError):
    """The vector table rejected a write. Fatal to a sync pass."""


class EmbeddingError(VaultkeeperError):
    """The embedding backend failed for one or more texts."""


# ── Sessions ──

class SessionError(VaultkeeperError):
    """Base class for inference session errors."""


class ModelLoadError(SessionError):
    """The local model file could not be loaded."""


class AuthenticationError(SessionError):
    """The remote API rejected (or was not given) credentials."""


class GenerationError(SessionError):
    """The backend failed in the middle of a stream."""


class SessionBusy(SessionError):
    """A stream was requested while another one is in flight."""


class SessionStateError(SessionError):
    """The session is not in a state that allows the operation."""
