"""
Common base for the descriptor analyzers.

Every analyzer reads the shared FrameFeatures of one clip and returns its
own descriptor group. Name and version end up in the extractor's model
version, so a change to an analyzer's output must bump its version.
"""

import logging
import time
from abc import abstractmethod
from typing import Generic, TypeVar

from soundmatch.core.models import FrameFeatures
from soundmatch.utils.errors import (
    PipelineTransientError,
    SoundMatchError,
    UnanalyzableAudioError,
)

T = TypeVar('T')


class BaseAnalyzer(Generic[T]):
    """
    Template method: ``analyze`` guards, times and normalises errors,
    subclasses implement ``_analyze_impl``.
    """

    def __init__(self, name: str, version: str):
        self._name = name
        self._version = version
        self.logger = logging.getLogger(f"analyzer.{name}")

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> str:
        return self._version

    def analyze(self, frames: FrameFeatures) -> T:
        """
        Derive this analyzer's descriptors from shared frame features.

        Raises:
            UnanalyzableAudioError: The frame grid is empty
            SoundMatchError: Taxonomy errors raised by the analyzer
            PipelineTransientError: Any other failure inside the analyzer
        """
        if frames.n_frames == 0:
            raise UnanalyzableAudioError(
                f"{self.name}: no frames to analyse", reason="empty"
            )

        started = time.perf_counter()
        try:
            result = self._analyze_impl(frames)
        except SoundMatchError:
            raise
        except Exception as e:
            self.logger.error(f"{self.name} failed on {frames.n_frames} frames: {e!r}")
            raise PipelineTransientError(
                f"{self.name} analysis failed: {e}",
                stage=self.name,
                original_error=e
            ) from e

        self.logger.debug(
            f"{frames.n_frames} frames analysed in {time.perf_counter() - started:.3f}s"
        )
        return result

    @abstractmethod
    def _analyze_impl(self, frames: FrameFeatures) -> T:
        raise NotImplementedError
