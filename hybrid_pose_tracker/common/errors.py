class TrackingError(RuntimeError):
    """Raised when a frame's pose update cannot be completed."""

    reason = "tracking_error"


class InsufficientDataError(TrackingError):
    reason = "not_enough_data"


class DivergedError(TrackingError):
    reason = "diverged"


class InteractionMatrixError(TrackingError):
    reason = "interaction_matrix"
