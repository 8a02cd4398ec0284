"""
Error taxonomy for the retrieval and calibration engine.

Only IndexBuildFailed is expected to reach the service boundary. Everything
else is recovered locally: backend errors through the embedding tier chain,
cache problems through a rebuild, bad records through exclusion.
"""


class GeoWraithError(Exception):
    """Base class for all engine errors."""


class ModelUnavailable(GeoWraithError):
    """Required backend package or model weights are missing or failed to load."""

    def __init__(self, backend: str, reason: str = ""):
        self.backend = backend
        self.reason = reason
        message = f"Embedding backend '{backend}' is unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class InvalidImage(GeoWraithError):
    """Image bytes could not be decoded."""


class EmbeddingDimensionMismatch(GeoWraithError):
    """A backend produced a vector whose length differs from the system dimension."""

    def __init__(self, expected: int, actual: int, backend: str = ""):
        self.expected = expected
        self.actual = actual
        self.backend = backend
        super().__init__(
            f"Embedding dimension {actual} does not match expected dimension {expected}"
            + (f" (backend '{backend}')" if backend else "")
        )


class InvalidRecord(GeoWraithError):
    """A coordinate or reference entry violates the record schema."""

    def __init__(self, record_id: str, reason: str):
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Invalid record '{record_id}': {reason}")


class IndexSizeMismatch(GeoWraithError):
    """An ANN index on disk does not hold the expected number of vectors."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"ANN index holds {actual} vectors, store holds {expected}")


class SourceFetchFailed(GeoWraithError):
    """Anchor image download or parsing failed after all retries."""

    def __init__(self, source_ref: str, reason: str = ""):
        self.source_ref = source_ref
        self.reason = reason
        super().__init__(f"Failed to fetch anchor source '{source_ref}': {reason}")


class IndexBuildFailed(GeoWraithError):
    """No embedding tier could produce a reference store. No predictions are possible."""


class PredictionCancelled(GeoWraithError):
    """The caller cancelled a prediction before embedding completed."""
