"""
Error taxonomy for the matching pipeline.

Local failures (decoding, local store) are fatal to the call that hit
them. Remote failures (SyncError) are caught and logged by the
repository and never reach the caller. ProviderError is fatal unless
the caller opts into degraded enrollment.
"""


class VisualMatchError(Exception):
    """Base class for every error raised by visual_match."""


class DecodeError(VisualMatchError):
    """Input could not be decoded as a raster image."""


class ProviderError(VisualMatchError):
    """The embedding or label service failed or answered garbage.

    Attributes:
        kind: Short failure category ("http", "transport", "timeout",
              "malformed", "dimension").
    """

    def __init__(self, kind: str, message: str):
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message


class DimensionMismatchError(VisualMatchError):
    """Two vectors of different length were compared."""

    def __init__(self, left: int, right: int):
        super().__init__(f"Vector dimensions differ: {left} vs {right}")
        self.left = left
        self.right = right


class DuplicateConflictError(VisualMatchError):
    """Enrollment blocked: a near-identical image belongs to another product."""

    def __init__(self, product_id: int, conflicting_product_id: int,
                 similarity: float):
        super().__init__(
            f"Similar image already enrolled for product "
            f"{conflicting_product_id} (similarity {similarity:.3f}), "
            f"cannot enroll it for product {product_id}"
        )
        self.product_id = product_id
        self.conflicting_product_id = conflicting_product_id
        self.similarity = similarity


class SyncError(VisualMatchError):
    """Remote system of record push or pull failed."""

    def __init__(self, kind: str, message: str):
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message


class LocalStoreError(VisualMatchError):
    """Local persistent store failed. Always fatal."""


class EngineNotReadyError(VisualMatchError):
    """Engine used before initialize() or after dispose()."""


class EngineBusyError(VisualMatchError):
    """An action was started while another one is still in flight."""


class InvalidStateTransition(VisualMatchError):
    """State machine was asked to make a transition it does not allow."""
