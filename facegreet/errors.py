"""Typed failures raised by the identity engine.

Matching never raises: it reports problems through `MatchVerdict` values. The
store, the preprocessing pipeline, the persistence codec and the extractor
adapters raise the exceptions below to their immediate caller.
"""


class FaceGreetError(Exception):
    """Base class for every error raised by this package."""


class InvalidInput(FaceGreetError, ValueError):
    """Empty or malformed image, signature, name or configuration value."""


class DimensionMismatch(FaceGreetError, ValueError):
    """Signature length disagrees with the dimensionality of the store."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"signature has {actual} values, store holds {expected}-D signatures")
        self.expected = int(expected)
        self.actual = int(actual)


class EmptyStore(FaceGreetError):
    """Operation needs at least one enrolled record."""


class PersistenceError(FaceGreetError):
    """Base class for save/load failures."""


class NotFound(PersistenceError, FileNotFoundError):
    """One of the two database artifacts is missing."""


class CorruptFormat(PersistenceError):
    """An artifact exists but cannot be decoded."""


class Inconsistent(PersistenceError):
    """The names artifact and the features artifact do not describe the same records."""

    def __init__(self, names: int, signatures: int, detail: str = ""):
        msg = detail or f"{signatures} signatures vs {names} names"
        super().__init__(f"inconsistent database: {msg}")
        self.names = int(names)
        self.signatures = int(signatures)


class ExtractionError(FaceGreetError):
    """The embedding extractor failed to produce a signature."""


class NotificationError(FaceGreetError):
    """A notification sink failed to deliver."""
