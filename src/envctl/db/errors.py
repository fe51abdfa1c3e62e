"""PostgREST error hierarchy.

Kept small so repositories can raise them without leaking httpx.Response
objects (or the service-role key).
"""

from __future__ import annotations

from envctl.errors import EnvctlError


class SupabaseError(EnvctlError):
    """Base error for PostgREST requests."""

    def __init__(
        self,
        *,
        status_code: int,
        message: str,
        code: str | None = None,
        details: str | None = None,
        hint: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details
        self.hint = hint
        super().__init__(str(self))

    def __str__(self) -> str:
        bits: list[str] = [f"{type(self).__name__}(status={self.status_code})", self.message]
        if self.code:
            bits.append(f"code={self.code}")
        if self.details:
            bits.append(f"details={self.details}")
        return " ".join(bits)


class SupabaseAuthError(SupabaseError):
    """401/403 (bad key, RLS)."""


class SupabaseNotFoundError(SupabaseError):
    """404 (missing table/view/route)."""


class SupabaseConflictError(SupabaseError):
    """409 conflicts, e.g. the unique slug index."""
