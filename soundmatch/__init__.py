"""
SoundMatch - audio feature extraction and compatibility scoring

Decodes audio assets, extracts tempo, key, spectral, harmonic and rhythmic
descriptors with librosa, derives custom metrics, stores one immutable
record per (fingerprint, model version) and scores pairs of records for
compatibility.
"""

__version__ = "1.0.0"
