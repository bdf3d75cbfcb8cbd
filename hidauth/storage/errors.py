from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write collided with a unique key or referenced a missing row."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.constraint = constraint
        self.detail = detail or {}
        if constraint:
            self.detail.setdefault("constraint", constraint)


__all__ = ["ConstraintViolation"]
