"""
Analyzer implementations for the descriptor families of an analysis record.
"""

from soundmatch.analyzers.musical.librosa_musical import LibrosaMusicalAnalyzer
from soundmatch.analyzers.rhythmic.librosa_rhythmic import LibrosaRhythmicAnalyzer
from soundmatch.analyzers.spectral.librosa_spectral import LibrosaSpectralAnalyzer

__all__ = [
    "LibrosaMusicalAnalyzer",
    "LibrosaRhythmicAnalyzer",
    "LibrosaSpectralAnalyzer",
]
