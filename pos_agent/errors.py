"""
Error taxonomy shared by the local store, the remote gateway and the sync engine.

Only direct user actions let these escape to the cashier UI (checkout at the
local-write step, force sync while offline). Inside a sync pass every error is
converted into a log record or a queued retry.
"""


class PosError(Exception):
    """Base class for all POS agent errors."""


class ValidationError(PosError):
    """Bad input shape or range. Never retried."""


class NotFoundError(PosError):
    """Referenced product or order does not exist."""


class NetworkError(PosError):
    """Transient transport failure (timeout, DNS, refused, 5xx). Always retried."""


class AuthError(PosError):
    """Expired or invalid device credential. Order sync pauses until it is fixed."""


class StorageError(PosError):
    """Local persistence failure. Fatal to the one operation, never to the app."""


class OfflineError(PosError):
    """A user-initiated sync was requested while the device is offline."""


# Remote rejections that will fail the same way no matter how often they are retried.
PERMANENT_REMOTE_ERRORS = (ValidationError, NotFoundError)
