"""
Run controller: backs up every discovered site and drains the retry queue.
"""

import logging
from typing import Iterable, List, Optional

from .backup.executor import BackupExecutor
from .backup.scanner import SiteScanner
from .models import DrainResult, RunResult, SiteTarget
from .panel import PanelClient
from .retry_queue import RetryQueue


logger = logging.getLogger(__name__)


def filter_sites(sites: Iterable[SiteTarget], site: Optional[str] = None,
                 database: Optional[str] = None) -> List[SiteTarget]:
    """Keep only sites matching the given site and/or database name."""
    selected = list(sites)
    if site:
        selected = [s for s in selected if s.site == site]
    if database:
        selected = [s for s in selected if s.database == database]
    return selected


class BackupRunner:
    """Sequentially backs up sites and replays queued panel calls."""

    def __init__(self, scanner: SiteScanner, executor: BackupExecutor,
                 panel: PanelClient, retry_queue: RetryQueue):
        self.scanner = scanner
        self.executor = executor
        self.panel = panel
        self.retry_queue = retry_queue

    def discover(self, site: Optional[str] = None, database: Optional[str] = None) -> List[SiteTarget]:
        return filter_sites(self.scanner.scan(), site=site, database=database)

    def run(self, site: Optional[str] = None, database: Optional[str] = None) -> RunResult:
        """
        Back up all matching sites, then drain the retry queue.

        Returns:
            RunResult with per-site outcomes and the remaining queue depth
        """
        return self.run_targets(self.discover(site=site, database=database))

    def run_targets(self, targets: Iterable[SiteTarget]) -> RunResult:
        """
        Back up the given sites in order.

        A failing site never stops the run; only retry queue I/O errors propagate.
        """
        result = RunResult()
        targets = list(targets)

        if not self.panel.is_available():
            logger.warning("Panel is not available. Panel updates will be queued for retry.")

        logger.info(f"Starting backup run for {len(targets)} site(s)")
        for target in targets:
            outcome = self.executor.run_one(target)
            result.record(outcome)

        self.drain_retry_queue()

        result.queue_depth = self.retry_queue.count()
        logger.info(f"Backup run complete: {result.successful} successful, {result.failed} failed")
        if result.queue_depth > 0:
            logger.warning(f"Retry queue has {result.queue_depth} pending items.")

        return result

    def drain_retry_queue(self) -> DrainResult:
        """
        Replay every ready queue item against the panel.

        The pass holds the queue lock and addresses items by id, so removals
        during the pass cannot shift the items still to be processed.
        """
        result = DrainResult()

        with self.retry_queue.lock():
            ready = self.retry_queue.get_ready_items()
            result.ready = len(ready)

            if not ready:
                result.remaining = self.retry_queue.count()
                logger.debug("Retry queue has no ready items")
                return result

            if not self.panel.is_available():
                result.panel_available = False
                result.remaining = self.retry_queue.count()
                logger.warning("Panel is not available. Retry will be attempted later.")
                return result

            logger.info(f"Processing {len(ready)} item(s) from retry queue")
            for _, item in ready:
                response = self.panel.send(item.method, item.endpoint, item.payload)
                if response.ok:
                    self.retry_queue.mark_success(item.id)
                    result.processed += 1
                    logger.info(f"Delivered {item.method} {item.endpoint}")
                else:
                    self.retry_queue.mark_failed(item.id)
                    result.failed += 1
                    logger.warning(f"Retry of {item.method} {item.endpoint} failed: {response.message}")

            result.remaining = self.retry_queue.count()

        logger.info(f"Retry queue processed: {result.processed} successful, {result.failed} failed")
        if result.remaining > 0:
            logger.warning(f"Remaining in retry queue: {result.remaining}")
        return result
