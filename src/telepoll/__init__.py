"""Long-poll update acquisition for Telegram bots."""

from .poller import (
    LongPoller,
    MiddlewarePoller,
    Poller,
    PollingError,
    RetryPolicy,
    middleware,
)

__version__ = "0.1.0"

__all__ = [
    "LongPoller",
    "MiddlewarePoller",
    "Poller",
    "PollingError",
    "RetryPolicy",
    "__version__",
    "middleware",
]
