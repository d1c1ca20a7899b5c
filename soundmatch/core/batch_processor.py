"""
Batch processor for analysing a bounded list of assets.

Items share the orchestrator's worker pool and admission capacity. Results come back
in submission order, and one item's failure never affects its siblings.
"""

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, List, Optional, Union

from soundmatch.core.models import AnalysisRecord, AudioAsset
from soundmatch.utils.errors import BackpressureRejectedError, SoundMatchError
from soundmatch.utils.logging import create_logger_with_context

if TYPE_CHECKING:
    from soundmatch.core.engine import AnalysisOrchestrator, Submission


@dataclass
class BatchItemResult:
    """Outcome of one batch item: exactly one of record/error is set."""

    index: int
    asset_id: Optional[str]
    fingerprint: Optional[str]
    record: Optional[AnalysisRecord] = None
    error: Optional[SoundMatchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self):
        return {
            'index': self.index,
            'asset_id': self.asset_id,
            'fingerprint': self.fingerprint,
            'ok': self.ok,
            'record': self.record.to_dict() if self.record else None,
            'error': {
                'type': type(self.error).__name__,
                'message': str(self.error),
                'retryable': self.error.retryable,
            } if self.error else None,
        }


@dataclass
class BatchResult:
    """Result of a batch processing operation."""

    items: List[BatchItemResult] = field(default_factory=list)
    total_time: float = 0.0

    @property
    def total_items(self) -> int:
        return len(self.items)

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.items if item.ok)

    @property
    def failure_count(self) -> int:
        return self.total_items - self.success_count

    @property
    def success_rate(self) -> float:
        """Success rate as percentage."""
        if not self.items:
            return 0.0
        return (self.success_count / self.total_items) * 100

    @property
    def records(self) -> List[AnalysisRecord]:
        return [item.record for item in self.items if item.record is not None]

    @property
    def failed(self) -> List[BatchItemResult]:
        return [item for item in self.items if not item.ok]


class BatchProcessor:
    """
    Feeds a batch through an orchestrator.

    Items wait for admission rather than being rejected: the batch itself
    is bounded by ``max_batch_size``.
    """

    def __init__(
        self,
        orchestrator: "AnalysisOrchestrator",
        max_batch_size: int = 64,
        progress_callback: Optional[Callable[[int, int, Any], None]] = None
    ):
        """
        Args:
            orchestrator: Orchestrator owning the pool (dependency injection)
            max_batch_size: Largest accepted batch
            progress_callback: Optional callback(current, total, item_result)
        """
        self.orchestrator = orchestrator
        self.max_batch_size = max_batch_size
        self.progress_callback = progress_callback

    def process(self, assets: Iterable[AudioAsset]) -> BatchResult:
        """
        Analyse every asset and collect per-item outcomes.

        Raises:
            BackpressureRejectedError: Batch larger than ``max_batch_size``
        """
        assets = list(assets)
        if len(assets) > self.max_batch_size:
            raise BackpressureRejectedError(
                f"Batch of {len(assets)} exceeds limit of {self.max_batch_size}",
                capacity=self.max_batch_size,
                in_use=len(assets)
            )

        start_time = time.time()
        log = create_logger_with_context("batch_processor", {"batch_size": len(assets)})
        log.info(f"Processing batch of {len(assets)} assets")

        slots: List[Union["Submission", SoundMatchError]] = []
        for asset in assets:
            try:
                slots.append(self.orchestrator.submit(asset, block=True))
            except SoundMatchError as e:
                slots.append(e)

        result = BatchResult()
        for index, (asset, slot) in enumerate(zip(assets, slots)):
            item = BatchItemResult(
                index=index,
                asset_id=asset.asset_id,
                fingerprint=asset.fingerprint,
            )
            if isinstance(slot, SoundMatchError):
                item.error = slot
            else:
                try:
                    item.record = slot.result()
                except SoundMatchError as e:
                    item.error = e

            if item.error is not None:
                log.bind(index=index, asset_id=asset.asset_id).warning(
                    f"Batch item failed: {type(item.error).__name__}: {item.error}"
                )
            result.items.append(item)

            if self.progress_callback:
                self.progress_callback(index + 1, len(assets), item)

        result.total_time = time.time() - start_time
        log.info(
            f"Batch complete: {result.success_count}/{result.total_items} succeeded "
            f"in {result.total_time:.2f}s"
        )
        return result
