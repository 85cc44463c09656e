# core/batch_processor.py

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from tqdm import tqdm

from embedcache.core.errors import EmbeddingCacheError, InvalidOptionsError

logger = logging.getLogger(__name__)


@dataclass
class BatchItemResult:
    """Outcome for one input item"""
    index: int
    item: Any
    value: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchReport:
    results: List[BatchItemResult] = field(default_factory=list)
    batches_run: int = 0
    timed_out: bool = False
    elapsed: float = 0.0

    @property
    def succeeded(self) -> List[BatchItemResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[BatchItemResult]:
        return [r for r in self.results if not r.ok]


class BatchProcessor:
    """
    Runs a function over items in fixed-size batches

    Items inside a batch run in parallel on a thread pool; batch N+1 is not
    submitted until every item of batch N has finished. Per-item failures
    from the cache/extraction layer are recorded, not raised.
    """

    def __init__(self,
                 batch_size: int = 10,
                 n_workers: Optional[int] = None,
                 show_progress: bool = False):
        if batch_size <= 0:
            raise InvalidOptionsError(f"batch_size must be positive, got {batch_size}")
        self.batch_size = batch_size
        self.n_workers = n_workers or batch_size
        self.show_progress = show_progress

    def process_in_batches(self,
                           items: Sequence[Any],
                           process_func: Callable[[Any], Any],
                           deadline: Optional[float] = None) -> BatchReport:
        """
        Apply ``process_func`` to every item

        Args:
            items: Inputs, processed in order
            process_func: Called once per item from a worker thread
            deadline: time.monotonic() instant after which no new batch starts

        Returns:
            BatchReport with one result per processed item, in input order
        """
        report = BatchReport()
        start = time.time()
        items = list(items)

        batch_starts = range(0, len(items), self.batch_size)
        if self.show_progress:
            batch_starts = tqdm(batch_starts, desc="Extracting features", unit="batch")

        with ThreadPoolExecutor(max_workers=self.n_workers) as executor:
            for offset in batch_starts:
                if deadline is not None and time.monotonic() >= deadline:
                    logger.warning(f"Deadline reached after {report.batches_run} batches; "
                                   f"{len(items) - offset} items not processed")
                    report.timed_out = True
                    break

                batch = items[offset:offset + self.batch_size]
                futures = [executor.submit(process_func, item) for item in batch]
                wait(futures)

                for position, (item, future) in enumerate(zip(batch, futures)):
                    result = BatchItemResult(index=offset + position, item=item)
                    try:
                        result.value = future.result()
                    except EmbeddingCacheError as e:
                        logger.warning(f"Skipping item {offset + position}: {e}")
                        result.error = e
                    report.results.append(result)

                report.batches_run += 1

        report.elapsed = time.time() - start
        return report
