"""Specboard - live status dashboard for markdown specs and bugs."""

# No imports at package level; watcher and server pull in watchdog/websockets
# Import modules directly where needed

__all__ = [
    "classifier",
    "client",
    "collection",
    "config",
    "models",
    "ordering",
    "parser",
    "protocol",
    "server",
    "specboard_logging",
    "watcher",
]
