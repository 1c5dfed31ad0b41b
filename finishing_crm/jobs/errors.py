"""
Errors raised by outbox job handlers.

The runner maps them onto job transitions:
- TransientJobError -> attempts + 1, back to pending with backoff (or dead at max)
- PermanentJobError -> dead immediately

`result` carries handler progress that must be stored with the failure so a
later attempt can skip work that already succeeded.
"""
from typing import Any, Dict, Optional


class JobError(Exception):
    def __init__(self, message: str, result: Optional[Dict[str, Any]] = None):
        self.message = message
        self.result = result
        super().__init__(message)


class TransientJobError(JobError):
    """Failure a later attempt may not hit (network, rate limit, provider outage)."""


class PermanentJobError(JobError):
    """Failure that will repeat on every attempt (bad data, rejected request)."""
