"""
Bounded fan-out for scheduler jobs. Each item runs in its own worker; one
item failing never stops the others.
"""
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass
class WorkResult:
    item: Any
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_isolated(items: Iterable, work: Callable, max_workers: int, label: str) -> List[WorkResult]:
    items = list(items)
    if not items:
        return []
    results = []
    with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix=label) as executor:
        futures = {executor.submit(work, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                results.append(WorkResult(item=item, value=future.result()))
            except Exception as e:
                logger.exception("[SCHEDULER] %s failed for %s: %s", label, item, e)
                results.append(WorkResult(item=item, error=e))
    return results
