"""
Knowledge base package for vaultkeeper.

Keeps one vector table per vault in sync with the markdown files on disk
and turns search results into context-bounded prompts.
"""

__version__ = "1.0.0"
