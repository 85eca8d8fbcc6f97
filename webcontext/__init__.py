"""Per-request context for web handlers: input, storage, errors, rendering and files."""

__version__ = "0.1.0"
__all__ = ["context", "debug", "errors", "fs", "render", "request", "store"]