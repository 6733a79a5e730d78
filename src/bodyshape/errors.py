"""Error kinds raised by bodyshape.

Each class doubles as a builtin exception type so that callers that only know about
``ValueError``/``KeyError``/``RuntimeError`` keep working.
"""

from __future__ import annotations


class BodyShapeError(Exception):
    """Base class of all errors raised by this package."""


class ModelConfigError(BodyShapeError, ValueError):
    """Model asset files are missing, malformed or inconsistent with each other."""


class InvalidJointError(BodyShapeError, KeyError):
    """A joint operation was requested for a joint that does not support it."""

    def __str__(self):
        # KeyError quotes its message otherwise
        return str(self.args[0]) if self.args else ''


class NoDetectionsError(BodyShapeError, RuntimeError):
    """Keypoint mapping was requested before any keypoints were detected."""


class ParameterFileError(BodyShapeError, ValueError):
    """A parameter dump could not be parsed."""
