"""
Too Good To Go store watcher package.

This package contains modules for talking to the Too Good To Go mobile API
(sessions, request pacing, account rotation), parsing its answers, notifying
Discord or email and coordinating the polling loop.  See README.md for
details.
"""

__all__ = [
    "client",
    "codec",
    "config",
    "emailer",
    "errors",
    "main",
    "models",
    "notifier",
    "rotation",
    "scraper",
    "session",
    "utils",
]
