"""Tail every shard of a Kinesis data stream and print new records as they arrive."""

__all__ = [
    "app",
    "cli",
    "config",
    "errors",
    "fanin",
    "kinesis",
    "models",
    "poller",
    "render",
    "resolver",
    "retry",
    "shutdown",
]

__version__ = "0.3.0"
