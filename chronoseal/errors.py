"""Error taxonomy shared by the owner, searcher and index layers.

Callers can catch ``ChronosealError`` for everything raised by this package,
or the specific subclasses to tell "access denied" apart from "malformed
data" apart from "the store said no".
"""

from __future__ import annotations


class ChronosealError(Exception):
    """Base class for all Chronoseal errors."""


class ConfigError(ChronosealError):
    """Persisted key material or configuration is missing or malformed."""


class PolicyCompileError(ChronosealError):
    """An access-policy label could not be compiled."""


class KeyDerivationError(ChronosealError):
    """An attribute key or index credential could not be derived."""


class DelegationScopeError(KeyDerivationError):
    """A delegated credential was asked for a partition it does not cover."""

    def __init__(self, requested: str, granted: str) -> None:
        super().__init__(
            f"Credential is scoped to partition {granted!r}, not {requested!r}"
        )
        self.requested = requested
        self.granted = granted


class AccessDenied(ChronosealError):
    """The attribute key does not satisfy the ciphertext's policy."""


class DecodeError(ChronosealError):
    """A ciphertext, token or document is structurally malformed."""


class RecordError(ChronosealError, ValueError):
    """A record or query time falls outside the indexable range."""


class RemoteError(ChronosealError):
    """The remote store rejected a request or could not be reached."""


class StoreRejected(RemoteError):
    """The store answered and refused the request; nothing was applied."""


class OperationCancelled(RemoteError):
    """The caller's deadline expired before the remote call completed."""
