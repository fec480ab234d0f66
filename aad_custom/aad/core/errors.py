# aad/core/errors.py
"""
Exceptions raised by the AD tape and the custom-operation layer.

Both kinds of failure are fatal for the computation that triggered them:
they are raised immediately and never retried or swallowed.
"""


class ADError(Exception):
    """Base class for all automatic-differentiation failures."""
    pass


class CustomOpError(ADError):
    """A custom operation broke its contract (e.g. eval() returned an attached value)."""
    pass


class TapeConsistencyError(ADError):
    """Tape bookkeeping was violated (bad handle, refcount underflow, ...)."""
    pass
