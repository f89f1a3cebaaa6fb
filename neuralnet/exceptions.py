"""
Exceptions
==========

Error types raised by the library. Shape and topology errors derive from
ValueError so that code written against plain numpy checks keeps working.
"""


class ShapeError(ValueError):
    """Raised when tensor shapes or layer contracts don't match."""


class NetworkBuildError(ValueError):
    """Raised when a network or computation graph topology is invalid."""


class ComputationError(RuntimeError):
    """Raised when a parallel loop fails to complete."""


class TensorReleasedError(RuntimeError):
    """Raised on double free or on access to a released tensor."""
