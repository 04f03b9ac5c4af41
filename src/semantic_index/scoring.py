"""Distance-to-score normalisation shared by every search path."""

SCORE_DISTANCE_SCALE = 10.0


def distance_to_score(distance: float) -> float:
    """Convert an L2 distance into a relevance score in ``[0, 1]``.

    ``score = max(0, 1 - distance / 10)``: monotonically non-increasing in
    distance, with distances of 10 or more clamping to 0.

    Example:
        >>> distance_to_score(0.0)
        1.0
        >>> distance_to_score(2.5)
        0.75
        >>> distance_to_score(42.0)
        0.0
    """
    return min(1.0, max(0.0, 1.0 - distance / SCORE_DISTANCE_SCALE))
