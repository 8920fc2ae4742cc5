"""Error types raised by the scheduler core and mapped to HTTP by the API."""
from __future__ import annotations


class ProgramsError(Exception):
    """Base error carrying a machine-readable code."""

    status_code = 400

    def __init__(self, code: str, message: str = ""):
        self.code = code
        super().__init__(message or code)


class NotFoundError(ProgramsError):
    """Unknown program / admin / session, or no feasible slot."""

    status_code = 404


class ForbiddenError(ProgramsError):
    """Administrative caller could not be identified."""

    status_code = 403
