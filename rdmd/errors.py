"""Error taxonomy for the relay core."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for errors raised by rdmd."""


class ValidationError(RelayError, ValueError):
    """A client supplied a malformed or missing field."""


class PersistenceError(RelayError):
    """The message or user store could not complete a read or write."""


class DeliveryFailure(RelayError):
    """An outbound packet could not be handed to its link.

    Soft failure: the record stays in the store and is never reported to
    either party.
    """
