# backend/expertmatch/core/errors.py
"""
Error taxonomy for the matching core.

- InputError: malformed brief / bad argument, rejected before any write
- NotFoundError: unknown brief or invitation id
- ConfigValidationError: rejected admin weight/synonym update
- InvariantViolation: duplicate invite, action on an allocated brief; callers
  log these and turn them into no-op results
"""

from __future__ import annotations


class MatchingError(Exception):
    """Base class for all matching-engine errors."""


class InputError(MatchingError, ValueError):
    pass


class NotFoundError(MatchingError, LookupError):
    pass


class ConfigValidationError(InputError):
    pass


class InvariantViolation(MatchingError):
    pass


__all__ = [
    "MatchingError",
    "InputError",
    "NotFoundError",
    "ConfigValidationError",
    "InvariantViolation",
]
