# minnet/errors.py

from __future__ import annotations


class MinnetError(Exception):
    """Base class for errors raised by the model layer."""


class CostNodeError(MinnetError, ValueError):
    """The graph does not carry exactly one COST-labelled node."""


class UnrollError(MinnetError, ValueError):
    """Unrolled graph does not expose one output and one cost per step."""


class CollationError(MinnetError, RuntimeError):
    """Parameter arena is missing, already built, or inconsistent."""


class BindError(MinnetError, ValueError):
    """External buffers do not match the leaves they are bound to."""


class ShapeMismatchError(MinnetError, ValueError):
    """Operation children have incompatible shapes."""


class ModelFormatError(MinnetError, ValueError):
    """Model file body is truncated or malformed."""
