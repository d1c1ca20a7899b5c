"""Pairwise compatibility scoring over analysis records."""

from soundmatch.scoring.compatibility import (
    DEFAULT_WEIGHTS,
    CompatibilityScorer,
    create_scorer,
)

__all__ = ["CompatibilityScorer", "DEFAULT_WEIGHTS", "create_scorer"]
