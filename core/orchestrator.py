import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from config import (
    CANCELLED_REASON,
    DEFAULT_VISIBILITY,
    EXTRACTION_BACKOFF_MAX_SECONDS,
    EXTRACTION_BACKOFF_SECONDS,
    EXTRACTION_MAX_ATTEMPTS,
    EXTRACTION_TIMEOUT_SECONDS,
    JOB_COMMITTING,
    JOB_EXTRACTING,
    JOB_LINKING,
    MAX_CONCURRENT_EXTRACTIONS,
    MAX_CONCURRENT_JOBS,
    MAX_EXTRACTIONS_PER_TOUR,
    TERMINAL_JOB_STATES,
    UNIT_PENDING,
)
from core.errors import CancellationRequested, InvalidTransition, PermissionDenied, PersistenceConflict
from core.extractors import ExtractionResult, GeoExtractor, default_extractor
from core.linker import LinkCandidate, SequenceLinker
from core.models import MediaDescriptor, MediaUnit, ProcessingJob
from core.store import PlacementStore
from core.validator import MediaValidator
from dataclasses import dataclass
from utils.object_store import LocalObjectStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitOutcome:
    unit: MediaUnit
    result: ExtractionResult | None
    attempts: int
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.result.ok


class JobOrchestrator:
    """Drive each tour submission from pending placeholders to committed stops

    Jobs run on their own executor so tours progress independently. Extraction
    attempts share one global pool, and each job additionally caps how many of
    its units are in flight at once. The only synchronization point inside a
    job is the barrier between extraction and linking.
    """

    def __init__(
        self,
        store: PlacementStore,
        object_store: LocalObjectStore,
        extractor: GeoExtractor | None = None,
        validator: MediaValidator | None = None,
        linker: SequenceLinker | None = None,
        max_extractions_per_tour: int = MAX_EXTRACTIONS_PER_TOUR,
        max_concurrent_extractions: int = MAX_CONCURRENT_EXTRACTIONS,
        max_concurrent_jobs: int = MAX_CONCURRENT_JOBS,
        max_attempts: int = EXTRACTION_MAX_ATTEMPTS,
        backoff_seconds: float = EXTRACTION_BACKOFF_SECONDS,
        backoff_max_seconds: float = EXTRACTION_BACKOFF_MAX_SECONDS,
        extraction_timeout: float = EXTRACTION_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.object_store = object_store
        self.extractor = extractor or default_extractor(object_store)
        self.validator = validator or MediaValidator(store, object_store)
        self.linker = linker or SequenceLinker()
        self.max_extractions_per_tour = max(1, max_extractions_per_tour)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.extraction_timeout = extraction_timeout

        self._extraction_pool = ThreadPoolExecutor(
            max_workers=max(1, max_concurrent_extractions), thread_name_prefix='extract'
        )
        self._job_pool = ThreadPoolExecutor(max_workers=max(1, max_concurrent_jobs), thread_name_prefix='job')
        self._lock = threading.RLock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._running: set[str] = set()
        self._futures: dict[str, Future] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    def shutdown(self, wait: bool = True):
        """Stop accepting jobs and wait for in-flight work"""
        self._job_pool.shutdown(wait=wait)
        self._extraction_pool.shutdown(wait=wait)

    # Submission API

    def submit_tour(
        self,
        owner_id: str,
        title: str,
        description: str,
        descriptors: list[MediaDescriptor],
        visibility: str = DEFAULT_VISIBILITY,
        tour_id: str | None = None,
        wait: bool = False,
    ) -> str:
        """Validate a batch of media into a tour and start its processing job

        With ``tour_id`` the batch is added to an existing tour of the same
        owner; its next commit replaces the tour's current stops. Returns the
        job id. A tour whose previous job is still running raises TourBusy.
        """
        if tour_id is not None:
            tour = self.store.get_tour(tour_id)
            if tour.owner_id != owner_id:
                raise PermissionDenied(f"Only the owner may add media to tour {tour_id}")
        else:
            tour = self.store.create_tour(owner_id, title, description, visibility)

        job = self.store.create_job(tour.id)
        with self._lock:
            # owned by this submission until run_job takes over
            self._cancel_events[job.id] = threading.Event()
            self._running.add(job.id)

        accepted = 0
        rejections = []
        try:
            for descriptor in descriptors:
                if self._is_cancelled(job.id):
                    logger.info(f"Job {job.id} cancelled during validation")
                    break
                outcome = self.validator.validate(tour, job.id, descriptor, accepted)
                if outcome.accepted:
                    accepted += 1
                else:
                    rejections.append({'filename': outcome.filename, 'reason': outcome.reason})
        except Exception as e:
            logger.error(f"Submission for tour {tour.id} aborted: {e}")
            self._fail(job.id, tour.id, f"Submission failed: {e}")
            with self._lock:
                self._running.discard(job.id)
                self._cancel_events.pop(job.id, None)
            raise
        self.store.update_job(job.id, units_total=accepted, rejections=rejections)

        logger.info(
            f"Job {job.id} for tour {tour.id}: accepted {accepted}/{len(descriptors)} files"
            + (f", rejected {len(rejections)}" if rejections else '')
        )

        if wait:
            self.run_job(job.id)
        else:
            with self._lock:
                self._futures[job.id] = self._job_pool.submit(self.run_job, job.id)
        return job.id

    def get_job_status(self, job_id: str) -> ProcessingJob:
        return self.store.get_job(job_id)

    def wait_for_job(self, job_id: str, timeout: float | None = None) -> ProcessingJob:
        """Block until a scheduled job finishes and return its final status"""
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.store.get_job(job_id)

    def cancel_job(self, job_id: str) -> bool:
        """Request cancellation; returns False when the job is already past the point of no return"""
        with self._lock:
            # run_job holds the lock from its last cancellation check until committing is recorded
            job = self.store.get_job(job_id)
            if job.state in TERMINAL_JOB_STATES or job.state == JOB_COMMITTING:
                logger.info(f"Job {job_id} is {job.state}; cancellation ignored")
                return False
            event = self._cancel_events.setdefault(job_id, threading.Event())
            event.set()
            running = job_id in self._running

        logger.info(f"Cancellation requested for job {job_id}")
        if not running:
            # nothing is driving the job, so roll it back here
            self._fail(job_id, job.tour_id, CANCELLED_REASON)
        return True

    # Job execution

    def _is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            event = self._cancel_events.get(job_id)
        return event is not None and event.is_set()

    def _check_cancelled(self, job_id: str):
        if self._is_cancelled(job_id):
            raise CancellationRequested(job_id)

    def _fail(self, job_id: str, tour_id: str, error: str):
        """Remove placeholders and mark the job failed, unless it already finished"""
        try:
            self.store.rollback(tour_id, job_id=job_id, error=error)
        except InvalidTransition:
            logger.debug(f"Job {job_id} already terminal; skipping rollback")
            return
        logger.error(f"Job {job_id} failed: {error}")

    def run_job(self, job_id: str) -> ProcessingJob:
        """Run a pending job to a terminal state on the calling thread"""
        job = self.store.get_job(job_id)
        if job.state in TERMINAL_JOB_STATES:
            return job

        with self._lock:
            self._running.add(job_id)
            event = self._cancel_events.setdefault(job_id, threading.Event())

        try:
            self._check_cancelled(job_id)
            units = [u for u in self.store.list_units(job.tour_id, job_id=job_id) if u.status == UNIT_PENDING]
            if not units:
                self._fail(job_id, job.tour_id, "No media units accepted")
                return self.store.get_job(job_id)

            self.store.transition_job(job_id, JOB_EXTRACTING)
            logger.info(f"Job {job_id}: extracting {len(units)} units")
            outcomes = self._extract_all(job, units, event)
            self._check_cancelled(job_id)

            succeeded = [o for o in outcomes if o.succeeded]
            if not succeeded:
                self._fail(job_id, job.tour_id, f"None of the {len(units)} media units could be geolocated")
                return self.store.get_job(job_id)

            self.store.transition_job(job_id, JOB_LINKING)
            candidates = [
                LinkCandidate(unit=o.unit, coordinate=o.result.coordinate, captured_at=o.result.captured_at)
                for o in succeeded
            ]
            link_result = self.linker.link(job.tour_id, candidates)

            with self._lock:
                self._check_cancelled(job_id)
                self.store.transition_job(job_id, JOB_COMMITTING, route_length_m=link_result.route_length_m)
            try:
                self.store.commit_final(job.tour_id, link_result.entries, job_id=job_id)
            except PersistenceConflict as e:
                self._fail(job_id, job.tour_id, f"Commit failed: {e}")
                return self.store.get_job(job_id)

            final = self.store.get_job(job_id)
            logger.info(
                f"Job {job_id} completed: {final.units_succeeded}/{final.units_total} units placed, "
                f"{final.units_failed} failed"
            )
            return final

        except CancellationRequested:
            self._fail(job_id, job.tour_id, CANCELLED_REASON)
            return self.store.get_job(job_id)
        except Exception as e:
            logger.exception(f"Unexpected error in job {job_id}")
            self._fail(job_id, job.tour_id, f"Unexpected error: {e}")
            return self.store.get_job(job_id)
        finally:
            with self._lock:
                self._running.discard(job_id)
                self._cancel_events.pop(job_id, None)
                self._futures.pop(job_id, None)

    def _extract_all(
        self, job: ProcessingJob, units: list[MediaUnit], cancel_event: threading.Event
    ) -> list[UnitOutcome]:
        """Extract every unit with bounded parallelism and wait for all of them"""
        succeeded = 0
        failed = 0
        outcomes = []
        workers = min(self.max_extractions_per_tour, len(units))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"tour-{job.tour_id[:8]}") as unit_pool:
            futures = [unit_pool.submit(self._process_unit, unit, cancel_event) for unit in units]
            for future in as_completed(futures):
                outcome = future.result()
                outcomes.append(outcome)
                if outcome.cancelled:
                    continue
                if outcome.succeeded:
                    succeeded += 1
                else:
                    failed += 1
                self.store.update_job(job.id, units_succeeded=succeeded, units_failed=failed)
        return outcomes

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff before retry number ``attempt + 1``"""
        return min(self.backoff_seconds * 2 ** (attempt - 1), self.backoff_max_seconds)

    def _attempt(self, unit: MediaUnit) -> ExtractionResult:
        """Run one extraction on the global pool; the timeout counts from when a worker picks it up"""
        started = threading.Event()

        def run():
            started.set()
            return self.extractor.extract(unit)

        future = self._extraction_pool.submit(run)
        while not started.wait(timeout=0.1):
            if future.done():
                break
        try:
            return future.result(timeout=self.extraction_timeout)
        except TimeoutError:
            return ExtractionResult.failure(f"Extraction timed out after {self.extraction_timeout}s", transient=True)
        except Exception as e:
            logger.exception(f"Extractor crashed on unit {unit.id}")
            return ExtractionResult.failure(f"Extractor error: {e}")

    def _process_unit(self, unit: MediaUnit, cancel_event: threading.Event) -> UnitOutcome:
        """Extract one unit, retrying transient failures; only checks cancellation between attempts"""
        attempt = 0
        result = None
        while attempt < self.max_attempts:
            if cancel_event.is_set():
                self.store.mark_unit_failed(unit.id, CANCELLED_REASON)
                return UnitOutcome(unit=unit, result=result, attempts=attempt, cancelled=True)

            attempt = self.store.mark_unit_extracting(unit.id)
            result = self._attempt(unit)
            if result.ok:
                self.store.mark_unit_extracted(unit.id, result.captured_at, result.coordinate)
                return UnitOutcome(unit=unit, result=result, attempts=attempt)

            if not result.transient or attempt >= self.max_attempts:
                break

            delay = self.backoff_delay(attempt)
            logger.warning(f"Unit {unit.filename} attempt {attempt} failed ({result.reason}); retrying in {delay:.2f}s")
            if delay > 0:
                cancel_event.wait(delay)

        reason = result.reason if not result.transient else f"{result.reason} (gave up after {attempt} attempts)"
        logger.warning(f"Unit {unit.filename} failed: {reason}")
        self.store.mark_unit_failed(unit.id, reason)
        return UnitOutcome(unit=unit, result=result, attempts=attempt)
