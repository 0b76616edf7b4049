"""SharpFlow - asynchronous multi-agent job orchestration.

Jobs submitted over HTTP (or inferred from free text by the intent router)
are persisted, queued per task type and run by worker pools that push
progress to the owner's WebSocket connections. Conversation memory keeps a
bounded, summarized context window per owner and agent.

Logging is configured per process by ``sharpflow.logging.configure_logging``.
"""

from sharpflow.config import Settings

__version__ = "0.1.0"
__all__ = ["Settings", "__version__"]
