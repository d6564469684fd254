"""
Pipeline Scraper - Main orchestrator that connects all pipeline stages.
This is the high-level interface for running the scraper.

One sequential worker runs per host, each with its own Frontier, rate
limiter and fetch stage. The parse stage, the storage stage and the
checkpoint store are shared.
"""

import logging
import random
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Event
from typing import Dict, List, Optional
from urllib.parse import urlparse

from ..exceptions import InvalidInput, FetchFailed
from ..pipeline.clock import Clock
from ..pipeline.frontier import Frontier
from ..pipeline.pipeline_data import FetchTask, FetchResult
from ..pipeline.stages.url_validation_stage import URLValidationStage, URLValidationConfig
from ..pipeline.stages.rate_limiting_stage import RateLimitingStage, RateLimitConfig
from ..pipeline.stages.fetch_stage import FetchStage, FetchConfig
from ..pipeline.stages.parse_stage import ParseStage, ParseConfig
from ..pipeline.stages.storage_stage import StorageStage, StorageConfig
from .checkpoint import Checkpoint, CheckpointStore


@dataclass
class ScraperConfig:
    """Master configuration for the entire scraper pipeline."""
    # Stage configurations
    url_validation: URLValidationConfig = field(default_factory=URLValidationConfig)
    rate_limiting: RateLimitConfig = field(default_factory=RateLimitConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    parse: ParseConfig = field(default_factory=ParseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    # Run settings
    start_urls: List[str] = field(default_factory=list)
    max_pages: Optional[int] = None  # Successful page fetches per run; None = no limit
    follow_links: bool = True  # Follow same-host pagination links
    poll_interval_seconds: float = 1.0  # Upper bound on an idle worker's sleep

    # Checkpointing
    checkpoint_path: str = "data/checkpoint.json"
    flush_every_tasks: int = 10


@dataclass
class HostWorker:
    """Per-host state; only the worker for this host touches it."""
    host: str
    frontier: Frontier
    rate_limiter: RateLimitingStage
    fetch_stage: FetchStage
    pages_fetched: int = 0


class PipelineScraper:
    """
    Main scraper orchestrator.

    Builds per-host workers, restores progress from the checkpoint, runs
    the workers to completion and keeps the checkpoint current.
    """

    def __init__(self, config: ScraperConfig, clock: Optional[Clock] = None,
                 rng: Optional[random.Random] = None):
        """
        Initialize pipeline scraper.

        Args:
            config: Complete scraper configuration
            clock: Time source (a simulated clock in tests)
            rng: Random source for delay and backoff jitter
        """
        self.config = config
        self.clock = clock or Clock()
        self.rng = rng or random.Random()
        self.logger = logging.getLogger(self.__class__.__name__)

        # Shared stages
        self.url_validator = URLValidationStage(config.url_validation)
        self.parse_stage = ParseStage(config.parse)
        self.storage_stage = StorageStage(config.storage)
        self.checkpoint_store = CheckpointStore(config.checkpoint_path)

        # Per-host workers
        self.workers: Dict[str, HostWorker] = {}
        self.workers_lock = threading.Lock()

        # Run state
        self.stop_event = Event()
        self.interrupted = False
        self.is_running = False
        self.start_time = None

        self.state_lock = threading.Lock()
        self.checkpoint_lock = threading.Lock()
        self.pages_fetched = 0  # Across resumed runs
        self.pages_this_run = 0
        self.pages_reserved = 0
        self.failed_urls: List[str] = []
        self.tasks_since_flush = 0

        self.stats = {
            'tasks_completed': 0,
            'fetch_failures': 0,
            'records_emitted': 0,
            'records_rejected': 0,
            'links_enqueued': 0,
            'invalid_urls': 0,
            'filtered_urls': 0,
        }

        self.logger.info("Pipeline scraper initialized")

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _get_worker(self, host: str) -> HostWorker:
        """Return the worker for `host`, creating it on first use."""
        with self.workers_lock:
            worker = self.workers.get(host)
            if worker is None:
                frontier = Frontier(self.url_validator, self.clock)
                rate_limiter = RateLimitingStage(self.config.rate_limiting, self.clock, self.rng)
                fetch_stage = FetchStage(self.config.fetch, frontier, rate_limiter,
                                         clock=self.clock, rng=self.rng,
                                         interrupt=self.stop_event)
                worker = HostWorker(host, frontier, rate_limiter, fetch_stage)
                self.workers[host] = worker
                self.logger.debug(f"Created worker for {host}")
            return worker

    def enqueue(self, url: str, depth: int = 0) -> bool:
        """
        Route a URL to its host's Frontier.

        Raises:
            InvalidInput: If the URL is malformed
        """
        normalized = self.url_validator.normalize(url)
        worker = self._get_worker(urlparse(normalized).netloc)
        return worker.frontier.enqueue(normalized, depth)

    def _restore(self, checkpoint: Checkpoint):
        """Load frontiers, sink and counters from a checkpoint."""
        self.storage_stage.restore(checkpoint.seen_ids, checkpoint.emitted_count)

        tasks_by_host = defaultdict(list)
        for task in checkpoint.pending:
            tasks_by_host[task.host].append(task)

        seen_by_host = defaultdict(set)
        for url in checkpoint.seen_urls:
            seen_by_host[urlparse(url).netloc.lower()].add(url)

        for host in set(tasks_by_host) | set(seen_by_host):
            self._get_worker(host).frontier.restore(tasks_by_host[host], seen_by_host[host])

        with self.state_lock:
            self.pages_fetched = checkpoint.pages_fetched
            self.failed_urls = list(checkpoint.failed_urls)

        if not checkpoint.is_empty:
            self.logger.info(f"Resuming: {len(checkpoint.pending)} pending tasks, "
                             f"{checkpoint.emitted_count} records already emitted")

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, start_urls: Optional[List[str]] = None) -> dict:
        """
        Scrape until every Frontier is empty, the page limit is hit or a
        stop is requested.

        Args:
            start_urls: Seed URLs; defaults to config.start_urls. URLs seen
                in a resumed checkpoint are not fetched again.

        Returns:
            dict with run statistics

        Raises:
            CheckpointCorrupt: If the checkpoint or output cannot be trusted
        """
        if self.is_running:
            raise RuntimeError("Scraper already running")

        start_urls = self.config.start_urls if start_urls is None else start_urls

        self._restore(self.checkpoint_store.load())

        for url in start_urls:
            try:
                normalized = self.url_validator.run(url)
            except InvalidInput as e:
                with self.state_lock:
                    self.stats['invalid_urls'] += 1
                self.logger.error(f"Skipping start URL: {e}")
                continue

            if normalized is None:
                with self.state_lock:
                    self.stats['filtered_urls'] += 1
                self.logger.warning(f"Skipping start URL excluded by url_validation "
                                    f"(domain, extension or depth): {url}")
                continue

            if self.enqueue(normalized, depth=0):
                self.logger.info(f"Injected start URL: {url}")

        self.is_running = True
        self.start_time = time.time()

        try:
            workers = list(self.workers.values())
            if len(workers) == 1:
                self._work(workers[0])
            elif workers:
                self._run_threads(workers)
        finally:
            self.is_running = False
            self._save_checkpoint()
            self.storage_stage.close()
            for worker in self.workers.values():
                worker.fetch_stage.close()

            elapsed = time.time() - self.start_time
            self.logger.info(f"Scraper stopped. Total runtime: {elapsed:.2f} seconds")

        return self.get_status()

    def _run_threads(self, workers: List[HostWorker]):
        """
        Run one thread per host and wait for all of them.

        The first worker error stops the other hosts and is re-raised here,
        as it would be from an inline single-host run.
        """
        errors: Dict[str, Exception] = {}

        def guarded_work(worker: HostWorker):
            try:
                self._work(worker)
            except Exception as e:
                errors[worker.host] = e
                self.stop_event.set()

        threads = [
            threading.Thread(target=guarded_work, args=(worker,),
                             name=f"Worker-{worker.host}", daemon=True)
            for worker in workers
        ]
        for thread in threads:
            thread.start()

        # Join with a timeout so the main thread keeps handling signals
        while any(thread.is_alive() for thread in threads):
            for thread in threads:
                thread.join(timeout=0.5)

        if errors:
            host, error = next(iter(errors.items()))
            if len(errors) > 1:
                self.logger.error(f"{len(errors)} workers failed: {', '.join(sorted(errors))}")
            self.logger.error(f"Worker for {host} failed: {error}")
            raise error

    def request_stop(self):
        """Stop issuing fetches; in-flight fetches finish and state is checkpointed."""
        if not self.stop_event.is_set():
            self.logger.info("Stop requested, finishing in-flight work...")
        self.interrupted = True
        self.stop_event.set()

    def _work(self, worker: HostWorker):
        """Sequential loop for one host."""
        self.logger.info(f"Worker for {worker.host} started")

        while not self.stop_event.is_set():
            task = worker.frontier.dequeue()

            if task is None:
                wait = worker.frontier.next_ready_in()
                if wait is None:
                    break
                self.clock.sleep(min(self.config.poll_interval_seconds, wait), self.stop_event)
                continue

            if not self._reserve_page():
                worker.frontier.reschedule(task)
                self.logger.info(f"Page limit of {self.config.max_pages} reached")
                break

            try:
                self._process_task(worker, task)
            except Exception:
                self._release_page()
                worker.frontier.reschedule(task)
                self.logger.exception(f"Unexpected error processing {task.url}")
                raise

        self.logger.info(f"Worker for {worker.host} finished "
                         f"({worker.pages_fetched} pages, {len(worker.frontier)} pending)")

    def _reserve_page(self) -> bool:
        if self.config.max_pages is None:
            return True
        with self.state_lock:
            if self.pages_reserved >= self.config.max_pages:
                return False
            self.pages_reserved += 1
            return True

    def _release_page(self):
        if self.config.max_pages is None:
            return
        with self.state_lock:
            self.pages_reserved -= 1

    def _process_task(self, worker: HostWorker, task: FetchTask):
        """Fetch, parse, emit and follow links for one task."""
        try:
            result = worker.fetch_stage.run(task)
        except FetchFailed as e:
            self._release_page()
            worker.frontier.complete(task)
            self.logger.error(str(e))
            with self.state_lock:
                self.stats['fetch_failures'] += 1
                self.failed_urls.append(task.url)
            self._task_done()
            return

        if result is None:
            # Rescheduled by the fetch stage
            self._release_page()
            return

        self._emit_records(result)

        if self.config.follow_links:
            self._follow_links(worker, result)

        worker.frontier.complete(task)
        worker.pages_fetched += 1
        with self.state_lock:
            self.pages_fetched += 1
            self.pages_this_run += 1
        self._task_done()

    def _emit_records(self, result: FetchResult):
        emitted = rejected = 0

        for record in self.parse_stage.run(result):
            try:
                if self.storage_stage.run(record) is not None:
                    emitted += 1
            except InvalidInput as e:
                rejected += 1
                self.logger.warning(f"Rejected record from {result.task.url}: {e}")

        with self.state_lock:
            self.stats['records_emitted'] += emitted
            self.stats['records_rejected'] += rejected

        self.logger.debug(f"{result.task.url}: {emitted} new records")

    def _follow_links(self, worker: HostWorker, result: FetchResult):
        base_url = result.final_url or result.task.url
        added = 0

        for link in self.parse_stage.extract_links(result.body, base_url):
            try:
                normalized = self.url_validator.normalize(link)
            except InvalidInput as e:
                self.logger.debug(f"Ignoring link: {e}")
                continue

            # Only the owning worker may fetch a host
            if urlparse(normalized).netloc != worker.host:
                self.logger.debug(f"Ignoring off-host link: {normalized}")
                continue

            if worker.frontier.enqueue(normalized, result.task.depth + 1):
                added += 1

        if added:
            with self.state_lock:
                self.stats['links_enqueued'] += added

    def _task_done(self):
        """Count a completed task and save the checkpoint every flush_every_tasks."""
        with self.state_lock:
            self.stats['tasks_completed'] += 1
            self.tasks_since_flush += 1
            due = self.tasks_since_flush >= self.config.flush_every_tasks
            if due:
                self.tasks_since_flush = 0

        if due:
            self._save_checkpoint()

    def _save_checkpoint(self):
        """
        Flush the sink, then save the checkpoint.

        Frontiers are snapshotted before the sink: a task completing in
        between then stays pending, and its records are deduped when it is
        fetched again.
        """
        with self.checkpoint_lock:
            with self.workers_lock:
                workers = list(self.workers.values())

            pending, seen_urls = [], set()
            for worker in workers:
                pending.extend(worker.frontier.snapshot())
                seen_urls |= worker.frontier.seen_snapshot()

            seen_ids, emitted_count = self.storage_stage.snapshot()

            with self.state_lock:
                checkpoint = Checkpoint(
                    pending=pending,
                    seen_ids=seen_ids,
                    emitted_count=emitted_count,
                    seen_urls=seen_urls,
                    pages_fetched=self.pages_fetched,
                    failed_urls=list(self.failed_urls),
                )

            self.checkpoint_store.save(checkpoint)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_complete(self) -> bool:
        """True when no host has pending work."""
        with self.workers_lock:
            workers = list(self.workers.values())
        return all(len(worker.frontier) == 0 for worker in workers)

    def get_status(self) -> dict:
        """
        Get current scraper status.

        Returns:
            dict with status information
        """
        with self.workers_lock:
            workers = list(self.workers.values())

        with self.state_lock:
            overall = dict(self.stats)
            overall['pages_fetched'] = self.pages_fetched
            overall['pages_this_run'] = self.pages_this_run
            overall['failed_urls'] = list(self.failed_urls)

        overall['emitted_count'] = self.storage_stage.emitted_count
        overall['pending_tasks'] = sum(len(worker.frontier) for worker in workers)
        overall['complete'] = overall['pending_tasks'] == 0

        status = {
            'is_running': self.is_running,
            'interrupted': self.interrupted,
            'runtime_seconds': time.time() - self.start_time if self.start_time else 0,
            'hosts': [],
            'stages': [],
            'overall': overall,
        }

        for worker in workers:
            status['hosts'].append({
                'host': worker.host,
                'pages_fetched': worker.pages_fetched,
                'pending': len(worker.frontier),
            })

        stages = [self.parse_stage, self.storage_stage]
        stages += [worker.fetch_stage for worker in workers]
        for stage in stages:
            stage_stats = stage.get_stats()
            status['stages'].append({
                'name': stage.name,
                'processed': stage_stats.get('processed', 0),
                'errors': stage_stats.get('errors', 0),
            })

        return status

    def get_detailed_stats(self) -> dict:
        """
        Get detailed statistics from all stages.

        Returns:
            dict with detailed stats per stage and per host
        """
        with self.workers_lock:
            workers = list(self.workers.values())

        return {
            'scraper': self.get_status()['overall'],
            'parse': self.parse_stage.get_stats(),
            'storage': self.storage_stage.get_stats(),
            'hosts': {
                worker.host: {
                    'fetch': worker.fetch_stage.get_stats(),
                    'rate_limiting': worker.rate_limiter.get_stats(),
                }
                for worker in workers
            },
        }

    def print_status(self):
        """Print a formatted status summary."""
        status = self.get_status()
        overall = status['overall']

        print("\n" + "="*60)
        print("SCRAPER STATUS")
        print("="*60)
        print(f"Running: {status['is_running']}")
        print(f"Interrupted: {status['interrupted']}")
        print(f"Runtime: {status['runtime_seconds']:.2f} seconds")
        print(f"Pages Fetched: {overall['pages_fetched']} ({overall['pages_this_run']} this run)")
        print(f"Records Emitted: {overall['emitted_count']}")
        print(f"Fetch Failures: {overall['fetch_failures']}")
        print(f"Pending Tasks: {overall['pending_tasks']}")
        print(f"Complete: {overall['complete']}")

        print("\nHost Status:")
        print("-"*60)
        for host_stat in status['hosts']:
            print(f"  {host_stat['host']:30} | "
                  f"Pages: {host_stat['pages_fetched']:6} | "
                  f"Pending: {host_stat['pending']:5}")

        print("\nStage Status:")
        print("-"*60)
        for stage_stat in status['stages']:
            print(f"  {stage_stat['name']:25} | "
                  f"Processed: {stage_stat['processed']:6} | "
                  f"Errors: {stage_stat['errors']:4}")

        print("="*60 + "\n")
