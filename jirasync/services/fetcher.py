"""Incremental batch retrieval of source records"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from jirasync.services.github_client import DEFAULT_PAGE_SIZE, GitHubClient, SourceRecord
from jirasync.services.watermark import WatermarkStore, format_search_timestamp
from jirasync.sync_config import ProjectConfiguration

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    records: List[SourceRecord]
    watermark: str
    next_watermark: str


class BatchFetcher:
    """Pull every record updated after the project's watermark, oldest first.

    With ``max_batch_size > 0`` the accumulated records are cut to exactly that
    many as soon as a page reaches the cap; the remaining records stay behind
    the new watermark and are picked up by the next run. ``0`` means no cap.
    Fetch errors propagate: they abort the current project's pass.
    """

    def __init__(self, client: GitHubClient, page_size: int = DEFAULT_PAGE_SIZE):
        self.client = client
        self.page_size = page_size

    def fetch(self, project: ProjectConfiguration) -> FetchResult:
        watermark = project.github.start_date
        records = self.fetch_records(project, watermark)
        next_watermark = WatermarkStore.advance(watermark, (r.updated_at for r in records))
        return FetchResult(records=records, watermark=watermark, next_watermark=next_watermark)

    def fetch_records(self, project: ProjectConfiguration, watermark: str) -> List[SourceRecord]:
        github = project.github
        cap = project.max_batch_size
        updated_after = format_search_timestamp(watermark)

        accumulated: List[SourceRecord] = []
        cursor: Optional[str] = None
        while True:
            page = self.client.search_issues_page(
                github.owner,
                github.repo,
                github.board_fields,
                updated_after,
                cursor=cursor,
                page_size=self.page_size,
            )
            if page.rate_limit is not None:
                logger.info(
                    f"GitHub rate limit: cost={page.rate_limit.cost} remaining={page.rate_limit.remaining} "
                    f"resetAt={page.rate_limit.reset_at}"
                )
            accumulated.extend(page.records)

            if cap > 0 and len(accumulated) >= cap:
                logger.info(f"Reached max batch size of {cap} issues for {project.name}")
                return accumulated[:cap]

            logger.debug(f"Fetched additional {len(page.records)}, current total {len(accumulated)} items")

            if not page.has_next_page or not page.end_cursor:
                return accumulated
            cursor = page.end_cursor
