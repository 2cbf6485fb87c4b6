"""
    Errors raised while building or running a procedure.

    None of them are recoverable for the current batch step:
    the traversal stops and the error reaches the caller.
"""


class ProcedureError(Exception):
    pass


class ArgumentMissingError(ProcedureError, ValueError):
    """An expression was built without a required argument node."""


class InvalidParameterError(ProcedureError, ValueError):
    """An operation was constructed with a parameter out of its range."""


class ArgumentUndefinedError(ProcedureError, RuntimeError):
    """An argument node has no value for the requested sample index."""


class GradientUndefinedError(ProcedureError, RuntimeError):
    """The result node has no gradient for the requested sample index."""


class CacheMissingError(ProcedureError, RuntimeError):
    """Backward step of a caching operation without a matching forward step."""
