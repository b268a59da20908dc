"""
Matching engine - evaluates a segment's criteria against its guest corpus.

Criteria are conjunctive: each guest is checked against the predicates in
declaration order and rejected at the first one that fails.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from guest_segments.config import settings
from guest_segments.core.exceptions import CorpusUnavailable, MatchTimeout
from guest_segments.segmentation.corpus import CorpusHandle
from guest_segments.segmentation.criteria import GuestAttributes, Predicate, ValidCriterion, predicate

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    """Output of one match run; only the count is persisted, on the segment."""
    segment_id: uuid.UUID
    guest_count: int
    computed_at: datetime
    corpus_version: int
    criteria_version: int
    matched_guest_ids: Optional[List[uuid.UUID]] = None


def matches_all(predicates: Sequence[Predicate], attributes: GuestAttributes) -> bool:
    for check in predicates:
        if not check(attributes):
            return False
    return True


class MatchingEngine:
    """
    Runs criteria against a corpus within a time budget.
    Transient corpus failures are retried with exponential backoff.
    """

    def __init__(
        self,
        time_budget_seconds: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.time_budget_seconds = time_budget_seconds or settings.MATCH_TIME_BUDGET_SECONDS
        self.retry_attempts = max(1, retry_attempts or settings.CORPUS_RETRY_ATTEMPTS)
        self.retry_base_delay = (
            settings.CORPUS_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        )
        self._sleep = sleep

    async def evaluate(
        self,
        criteria: Sequence[ValidCriterion],
        corpus: CorpusHandle,
        collect_ids: bool = False
    ) -> Tuple[int, Optional[List[uuid.UUID]]]:
        """Stream the corpus once and count (optionally collect) matching guests."""
        predicates = [predicate(criterion) for criterion in criteria]
        count = 0
        matched = [] if collect_ids else None

        async for guest_id, attributes in corpus.stream():
            if matches_all(predicates, attributes):
                count += 1
                if matched is not None:
                    matched.append(guest_id)

        return count, matched

    async def _run_once(
        self,
        segment_id: uuid.UUID,
        criteria: Sequence[ValidCriterion],
        corpus: CorpusHandle,
        criteria_version: int,
        collect_ids: bool
    ) -> MatchResult:
        # Version is read first so a concurrent guest change makes the result look older, not newer
        corpus_version = await corpus.version()
        count, matched = await self.evaluate(criteria, corpus, collect_ids)
        return MatchResult(
            segment_id=segment_id,
            guest_count=count,
            computed_at=datetime.utcnow(),
            corpus_version=corpus_version,
            criteria_version=criteria_version,
            matched_guest_ids=matched
        )

    async def run(
        self,
        segment_id: uuid.UUID,
        criteria: Sequence[ValidCriterion],
        corpus: CorpusHandle,
        criteria_version: int = 1,
        collect_ids: bool = False
    ) -> MatchResult:
        """
        Compute a segment's match set.

        Raises:
            CorpusUnavailable: corpus still unreadable after all retries
            MatchTimeout: the run exceeded its time budget; partial results are discarded
        """
        delay = self.retry_base_delay
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await asyncio.wait_for(
                    self._run_once(segment_id, criteria, corpus, criteria_version, collect_ids),
                    timeout=self.time_budget_seconds
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Match run for segment {segment_id} cancelled after {self.time_budget_seconds}s"
                )
                raise MatchTimeout(self.time_budget_seconds) from None
            except CorpusUnavailable as e:
                if attempt == self.retry_attempts:
                    logger.error(
                        f"Corpus for segment {segment_id} unavailable after {attempt} attempts: {e.message}"
                    )
                    raise
                logger.warning(
                    f"Corpus read failed for segment {segment_id}. Retrying in {delay}s... "
                    f"(Attempt {attempt}/{self.retry_attempts})"
                )
                await self._sleep(delay)
                delay *= 2
