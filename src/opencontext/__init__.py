"""OpenContext: stable-id Markdown knowledge store with hybrid search."""

__version__ = "0.1.0"
