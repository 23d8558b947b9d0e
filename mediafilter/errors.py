"""Error taxonomy for derivative generation.

Configuration problems fail fast before any asset is touched. Transform
problems only abort the current asset. Storage problems propagate to the
caller that drives the batch.
"""


class MediaFilterError(Exception):
    """Base class for all media filter errors."""


class ConfigurationError(MediaFilterError):
    """Raised while building a task from invalid or incomplete properties."""


class TransformError(MediaFilterError):
    """A single asset could not be turned into a derivative."""


class DecodeError(TransformError):
    pass


class EncodeError(TransformError):
    pass


class CollaboratorFailure(MediaFilterError):
    """Storage or authorization failure reported by a repository."""
