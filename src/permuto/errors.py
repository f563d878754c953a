"""Exceptions raised by the permutohedral encoding."""


class PermutoConfigError(ValueError):
    """Invalid encoding configuration (levels, feature widths, list lengths)."""


class PermutoShapeError(ValueError):
    """Tensor arguments inconsistent with the encoding meta."""
