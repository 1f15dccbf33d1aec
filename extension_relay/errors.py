from __future__ import annotations


class RelayError(Exception):
    pass


class TransportError(RelayError):
    """Posting to (or reading from) a channel failed because the remote end is gone."""


class ExternalOperationError(RelayError):
    """A window/tab/storage call to the browser failed or could not be issued."""


class MalformedMessage(RelayError):
    """A recognized control action arrived without a field it requires."""
