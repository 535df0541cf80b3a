"""
vaultkeeper: local-first retrieval-augmented chat over a markdown vault.

Public API for library usage::

    from vaultkeeper import VaultService

    with VaultService() as service:
        service.index_files_in_directory()
        results = service.search("sqlite locking", 5, service.config.VAULT_DIRECTORY)
"""

from .api import VaultService
from .config import Config

__all__ = ["VaultService", "Config"]
