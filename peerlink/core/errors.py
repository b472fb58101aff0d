from __future__ import annotations


class PeerlinkError(Exception):
    """Base error for peerlink."""


class DatabaseError(PeerlinkError):
    """Database layer failure."""


class IdentityUnavailableError(PeerlinkError):
    """Identity store unreachable, not initialized, or timed out."""


class VerificationNotConfiguredError(PeerlinkError):
    """No token verification strategy is configured."""
