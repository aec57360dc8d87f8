import pytest
import threading
import time
from config import (
    CANCELLED_REASON,
    ENTITY_FINAL,
    ENTITY_PLACEHOLDER,
    JOB_COMMITTING,
    JOB_COMPLETED,
    JOB_EXTRACTING,
    JOB_FAILED,
    UNIT_EXTRACTED,
    UNIT_FAILED,
)
from core.errors import PermissionDenied, TourBusy
from core.extractors import StaticGeoExtractor
from core.orchestrator import JobOrchestrator
from core.store import PlacementStore
from tests.fixtures import TestDataFixtures
from unittest.mock import Mock, patch
from utils.object_store import LocalObjectStore


def wait_for_state(store, job_id, states, timeout=5.0):
    """Poll until the job reaches one of ``states``"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = store.get_job(job_id)
        if job.state in states:
            return job
        time.sleep(0.01)
    raise AssertionError(f"Job {job_id} never reached {states}")


class TestJobOrchestrator:
    """Test suite for JobOrchestrator"""

    @pytest.fixture
    def store(self, tmp_path):
        store = PlacementStore(tmp_path / "geotour.db")
        yield store
        store.close()

    @pytest.fixture
    def object_store(self, tmp_path):
        return LocalObjectStore(tmp_path / "objects")

    @pytest.fixture
    def media_dir(self, tmp_path):
        return tmp_path / "uploads"

    @pytest.fixture
    def make_orchestrator(self, store, object_store):
        """Build orchestrators with a scripted extractor and no backoff delay"""
        created = []

        def factory(script=None, extractor=None, **kwargs):
            kwargs.setdefault('backoff_seconds', 0)
            kwargs.setdefault('max_extractions_per_tour', 2)
            orchestrator = JobOrchestrator(
                store, object_store, extractor=extractor or StaticGeoExtractor(script or {}), **kwargs
            )
            created.append(orchestrator)
            return orchestrator

        yield factory
        for orchestrator in created:
            orchestrator.shutdown()

    def kinds(self, store, tour_id):
        return [e.kind for e in store.list_tour_entities(tour_id)]

    # Happy path and partial success

    def test_stops_ordered_by_capture_time(self, make_orchestrator, store, media_dir):
        """Test that units are sequenced by capture time rather than submission order"""
        orchestrator = make_orchestrator(TestDataFixtures.get_city_walk_script())
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['lido.jpg', 'market.jpg', 'lighthouse.jpg'])

        job_id = orchestrator.submit_tour('alice', 'City Walk', '', descriptors, wait=True)

        job = orchestrator.get_job_status(job_id)
        assert job.state == JOB_COMPLETED
        assert (job.units_total, job.units_succeeded, job.units_failed) == (3, 3, 0)
        assert job.route_length_m > 0

        entities = store.list_tour_entities(job.tour_id)
        units = {u.id: u.filename for u in store.list_units(job.tour_id)}
        assert [units[e.unit_id] for e in entities] == ['market.jpg', 'lighthouse.jpg', 'lido.jpg']
        assert [e.sequence_index for e in entities] == [0, 1, 2]
        assert [e.title for e in entities] == ['City Walk - Stop 1', 'City Walk - Stop 2', 'City Walk - Stop 3']
        assert all(e.kind == ENTITY_FINAL and e.visibility == 'private' for e in entities)

    def test_three_units_with_out_of_order_timestamps(self, make_orchestrator, store, media_dir):
        """Test t2 < t1 < t3 yields unit2, unit1, unit3"""
        script = {
            'unit1.jpg': TestDataFixtures.located(10, 1.0, 1.0),
            'unit2.jpg': TestDataFixtures.located(5, 2.0, 2.0),
            'unit3.jpg': TestDataFixtures.located(15, 3.0, 3.0),
        }
        orchestrator = make_orchestrator(script)
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['unit1.jpg', 'unit2.jpg', 'unit3.jpg'])

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        job = store.get_job(job_id)
        units = {u.id: u.filename for u in store.list_units(job.tour_id)}
        entities = store.list_tour_entities(job.tour_id)
        assert [(e.sequence_index, units[e.unit_id]) for e in entities] == [
            (0, 'unit2.jpg'),
            (1, 'unit1.jpg'),
            (2, 'unit3.jpg'),
        ]

    def test_partial_failure_commits_survivors(self, make_orchestrator, store, media_dir):
        """Test that one permanently failing unit does not block the other"""
        script = {'a.jpg': TestDataFixtures.no_gps(), 'b.jpg': TestDataFixtures.located(0, 2.0, 45.0)}
        orchestrator = make_orchestrator(script)
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg', 'b.jpg'])

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        job = store.get_job(job_id)
        assert job.state == JOB_COMPLETED
        assert (job.units_succeeded, job.units_failed) == (1, 1)
        entities = store.list_tour_entities(job.tour_id)
        assert len(entities) == 1
        assert entities[0].sequence_index == 0
        assert entities[0].kind == ENTITY_FINAL
        assert store.list_tour_entities(job.tour_id, kind=ENTITY_PLACEHOLDER) == []

        unit_status = {u.filename: u.status for u in store.list_units(job.tour_id)}
        assert unit_status == {'a.jpg': UNIT_FAILED, 'b.jpg': UNIT_EXTRACTED}

    def test_timestamp_ties_keep_submission_order(self, make_orchestrator, store, media_dir):
        """Test that units with equal capture times follow submission order"""
        script = {name: TestDataFixtures.located(0, 1.0, 1.0) for name in ['c.jpg', 'a.jpg', 'b.jpg']}
        orchestrator = make_orchestrator(script, max_extractions_per_tour=3)
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['c.jpg', 'a.jpg', 'b.jpg'])

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        tour_id = store.get_job(job_id).tour_id
        units = {u.id: u.filename for u in store.list_units(tour_id)}
        assert [units[e.unit_id] for e in store.list_tour_entities(tour_id)] == ['c.jpg', 'a.jpg', 'b.jpg']

    def test_all_units_fail(self, make_orchestrator, store, media_dir):
        """Test that zero successes fail the job and remove every placeholder"""
        script = {'a.jpg': TestDataFixtures.no_gps(), 'b.jpg': TestDataFixtures.no_gps()}
        orchestrator = make_orchestrator(script)
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg', 'b.jpg'])

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        job = store.get_job(job_id)
        assert job.state == JOB_FAILED
        assert job.units_failed == 2
        assert 'None of the 2' in job.error
        assert store.list_tour_entities(job.tour_id) == []

    def test_rejected_files_are_reported(self, make_orchestrator, store, media_dir):
        """Test that invalid files are skipped and listed on the job"""
        orchestrator = make_orchestrator({'ok.jpg': TestDataFixtures.located(0, 1.0, 1.0)})
        descriptors = [
            TestDataFixtures.create_descriptor(media_dir, 'ok.jpg'),
            TestDataFixtures.create_descriptor(media_dir, 'notes.txt', content_type='text/plain'),
        ]

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        job = store.get_job(job_id)
        assert job.state == JOB_COMPLETED
        assert job.units_total == 1
        assert [r['filename'] for r in job.rejections] == ['notes.txt']

    def test_nothing_accepted(self, make_orchestrator, store, media_dir):
        """Test that a batch with no valid files fails straight from pending"""
        orchestrator = make_orchestrator()
        descriptors = [TestDataFixtures.create_descriptor(media_dir, 'notes.txt', content_type='text/plain')]

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        job = store.get_job(job_id)
        assert job.state == JOB_FAILED
        assert job.error == "No media units accepted"

    # Retries and timeouts

    def test_transient_failure_retried_once_placed(self, make_orchestrator, store, media_dir):
        """Test that a retried unit produces exactly one placeholder and one final entity"""
        extractor = StaticGeoExtractor({'a.jpg': [TestDataFixtures.flaky(), TestDataFixtures.located(0, 1.0, 1.0)]})
        orchestrator = make_orchestrator(extractor=extractor)
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg'])

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        job = store.get_job(job_id)
        assert job.state == JOB_COMPLETED
        assert extractor.calls['a.jpg'] == 2
        assert store.list_units(job.tour_id)[0].attempts == 2
        assert self.kinds(store, job.tour_id) == [ENTITY_FINAL]

    def test_transient_failure_gives_up(self, make_orchestrator, store, media_dir):
        """Test that retries stop at the attempt limit"""
        extractor = StaticGeoExtractor({'a.jpg': TestDataFixtures.flaky()})
        orchestrator = make_orchestrator(extractor=extractor, max_attempts=3)
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg'])

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        job = store.get_job(job_id)
        assert job.state == JOB_FAILED
        assert extractor.calls['a.jpg'] == 3
        assert 'gave up after 3 attempts' in store.list_units(job.tour_id)[0].failure_reason

    def test_permanent_failure_not_retried(self, make_orchestrator, store, media_dir):
        """Test that permanent failures use a single attempt"""
        extractor = StaticGeoExtractor({'a.jpg': TestDataFixtures.no_gps(), 'b.jpg': TestDataFixtures.located(0, 1, 1)})
        orchestrator = make_orchestrator(extractor=extractor)
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg', 'b.jpg'])

        orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        assert extractor.calls['a.jpg'] == 1

    def test_attempt_timeout(self, make_orchestrator, store, media_dir):
        """Test that a hung extraction counts as a failed attempt"""
        extractor = StaticGeoExtractor({'a.jpg': TestDataFixtures.located(0, 1.0, 1.0)}, delay=0.5)
        orchestrator = make_orchestrator(extractor=extractor, extraction_timeout=0.05, max_attempts=1)
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg'])

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        job = store.get_job(job_id)
        assert job.state == JOB_FAILED
        assert 'timed out' in store.list_units(job.tour_id)[0].failure_reason

    def test_queue_wait_not_charged_to_timeout(self, make_orchestrator, store, media_dir):
        """Test that waiting for a global extraction slot does not count against the attempt timeout"""
        script = {name: TestDataFixtures.located(0, 1.0, 1.0) for name in ['a.jpg', 'b.jpg']}
        extractor = StaticGeoExtractor(script, delay=0.3)
        orchestrator = make_orchestrator(
            extractor=extractor,
            max_concurrent_extractions=1,
            max_extractions_per_tour=2,
            extraction_timeout=0.5,
            max_attempts=1,
        )
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg', 'b.jpg'])

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        job = store.get_job(job_id)
        assert job.state == JOB_COMPLETED
        assert (job.units_succeeded, job.units_failed) == (2, 0)
        assert [u.failure_reason for u in store.list_units(job.tour_id)] == [None, None]

    def test_extractor_crash_is_contained(self, make_orchestrator, store, media_dir):
        """Test that an extractor raising unexpectedly fails only its unit"""
        extractor = Mock()
        extractor.extract.side_effect = RuntimeError("segfault in decoder")
        orchestrator = make_orchestrator(extractor=extractor)
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg'])

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        job = store.get_job(job_id)
        assert job.state == JOB_FAILED
        assert extractor.extract.call_count == 1
        assert 'segfault in decoder' in store.list_units(job.tour_id)[0].failure_reason

    def test_backoff_delay(self, make_orchestrator):
        """Test exponential backoff with an upper bound"""
        orchestrator = make_orchestrator(backoff_seconds=0.5, backoff_max_seconds=3.0)

        assert [orchestrator.backoff_delay(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    # Cancellation

    def test_cancel_during_extraction(self, make_orchestrator, store, media_dir):
        """Test that cancellation rolls back placeholders and fails the job"""
        script = {name: TestDataFixtures.located(0, 1.0, 1.0) for name in ['a.jpg', 'b.jpg', 'c.jpg']}
        extractor = StaticGeoExtractor(script, delay=0.2)
        orchestrator = make_orchestrator(extractor=extractor, max_extractions_per_tour=1)
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg', 'b.jpg', 'c.jpg'])

        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors)
        wait_for_state(store, job_id, {JOB_EXTRACTING})
        assert orchestrator.cancel_job(job_id)

        job = orchestrator.wait_for_job(job_id, timeout=5)
        assert job.state == JOB_FAILED
        assert job.error == CANCELLED_REASON
        assert store.list_tour_entities(job.tour_id) == []
        assert sum(extractor.calls.values()) < 3

    def test_cancel_job_not_running(self, make_orchestrator, store):
        """Test cancelling a pending job that no worker has picked up"""
        orchestrator = make_orchestrator()
        tour = store.create_tour('alice', 'Tour')
        job = store.create_job(tour.id)

        assert orchestrator.cancel_job(job.id)

        assert store.get_job(job.id).state == JOB_FAILED
        assert store.get_job(job.id).error == CANCELLED_REASON

    def test_cancel_finished_job(self, make_orchestrator, store, media_dir):
        """Test that completed jobs cannot be cancelled"""
        orchestrator = make_orchestrator({'a.jpg': TestDataFixtures.located(0, 1.0, 1.0)})
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg'])
        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)

        assert not orchestrator.cancel_job(job_id)
        assert store.get_job(job_id).state == JOB_COMPLETED

    def test_cancel_racing_commit_is_refused(self, make_orchestrator, store, media_dir):
        """Test that a cancel arriving while the job enters committing is refused and the job completes"""
        orchestrator = make_orchestrator({'a.jpg': TestDataFixtures.located(0, 1.0, 1.0)})
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg'])
        real_transition = store.transition_job
        cancel_results = []
        cancellers = []

        def transition(job_id, new_state, **fields):
            if new_state == JOB_COMMITTING:
                canceller = threading.Thread(target=lambda: cancel_results.append(orchestrator.cancel_job(job_id)))
                canceller.start()
                cancellers.append(canceller)
                time.sleep(0.05)
            return real_transition(job_id, new_state, **fields)

        with patch.object(store, 'transition_job', side_effect=transition):
            job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors, wait=True)
        for canceller in cancellers:
            canceller.join(timeout=5)

        assert cancel_results == [False]
        assert store.get_job(job_id).state == JOB_COMPLETED
        assert self.kinds(store, store.get_job(job_id).tour_id) == [ENTITY_FINAL]

    def test_finished_jobs_release_futures(self, make_orchestrator, store, media_dir):
        """Test that scheduled jobs are forgotten once they finish"""
        orchestrator = make_orchestrator({'a.jpg': TestDataFixtures.located(0, 1.0, 1.0)})
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg'])
        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors)

        assert orchestrator.wait_for_job(job_id, timeout=5).state == JOB_COMPLETED
        assert orchestrator.wait_for_job(job_id).state == JOB_COMPLETED
        assert job_id not in orchestrator._futures

    # Isolation and re-submission

    def test_tours_are_isolated(self, make_orchestrator, store, media_dir):
        """Test that a failing tour does not affect a concurrent one"""
        script = {
            'good-1.jpg': TestDataFixtures.located(0, 1.0, 1.0),
            'good-2.jpg': TestDataFixtures.located(1, 1.1, 1.1),
            'bad-1.jpg': TestDataFixtures.no_gps(),
        }
        orchestrator = make_orchestrator(extractor=StaticGeoExtractor(script, delay=0.05))
        good = orchestrator.submit_tour(
            'alice', 'Good', '', TestDataFixtures.create_descriptors(media_dir / 'good', ['good-1.jpg', 'good-2.jpg'])
        )
        bad = orchestrator.submit_tour(
            'bob', 'Bad', '', TestDataFixtures.create_descriptors(media_dir / 'bad', ['bad-1.jpg'])
        )

        good_job = orchestrator.wait_for_job(good, timeout=5)
        bad_job = orchestrator.wait_for_job(bad, timeout=5)

        assert good_job.state == JOB_COMPLETED
        assert bad_job.state == JOB_FAILED
        assert self.kinds(store, good_job.tour_id) == [ENTITY_FINAL, ENTITY_FINAL]
        assert self.kinds(store, bad_job.tour_id) == []

    def test_same_owner_tours_are_isolated(self, make_orchestrator, store, media_dir):
        """Test that two concurrent tours of one owner never share units or entities"""
        files = {
            'north': ['north-1.jpg', 'north-2.jpg'],
            'south': ['south-1.jpg', 'south-2.jpg'],
        }
        script = {
            'north-1.jpg': TestDataFixtures.located(0, 2.10, 45.30),
            'north-2.jpg': TestDataFixtures.located(1, 2.11, 45.31),
            'south-1.jpg': TestDataFixtures.located(0, 1.90, 45.20),
            'south-2.jpg': TestDataFixtures.located(1, 1.91, 45.21),
        }
        orchestrator = make_orchestrator(extractor=StaticGeoExtractor(script, delay=0.2), max_extractions_per_tour=1)
        job_ids = {
            name: orchestrator.submit_tour(
                'alice', name.title(), '', TestDataFixtures.create_descriptors(media_dir / name, filenames)
            )
            for name, filenames in files.items()
        }

        def assert_isolated(name, job):
            units = store.list_units(job.tour_id)
            assert {u.filename for u in units} == set(files[name])
            entities = store.list_tour_entities(job.tour_id)
            assert {e.unit_id for e in entities} <= {u.id for u in units}
            assert all(e.tour_id == job.tour_id for e in entities)

        in_flight = {name: wait_for_state(store, job_id, {JOB_EXTRACTING}) for name, job_id in job_ids.items()}
        for name, job in in_flight.items():
            assert_isolated(name, job)

        finished = {name: orchestrator.wait_for_job(job_id, timeout=5) for name, job_id in job_ids.items()}
        for name, job in finished.items():
            assert job.state == JOB_COMPLETED
            assert_isolated(name, job)
            assert self.kinds(store, job.tour_id) == [ENTITY_FINAL, ENTITY_FINAL]

        visible = store.list_entities('alice')
        assert {e.tour_id for e in visible} == {job.tour_id for job in finished.values()}
        assert all(e.kind == ENTITY_FINAL for e in visible)
        assert len(visible) == 4

    def test_busy_tour_rejects_second_submission(self, make_orchestrator, store, media_dir):
        """Test that a tour accepts one job at a time"""
        extractor = StaticGeoExtractor({'a.jpg': TestDataFixtures.located(0, 1.0, 1.0)}, delay=0.2)
        orchestrator = make_orchestrator(extractor=extractor)
        descriptors = TestDataFixtures.create_descriptors(media_dir, ['a.jpg'])
        job_id = orchestrator.submit_tour('alice', 'Tour', '', descriptors)
        tour_id = store.get_job(job_id).tour_id

        with pytest.raises(TourBusy):
            orchestrator.submit_tour('alice', 'Tour', '', [], tour_id=tour_id)

        assert orchestrator.wait_for_job(job_id, timeout=5).state == JOB_COMPLETED

    def test_resubmission_replaces_stops(self, make_orchestrator, store, media_dir):
        """Test that a later batch for the same tour replaces its stops"""
        script = {
            'first.jpg': TestDataFixtures.located(0, 1.0, 1.0),
            'second-a.jpg': TestDataFixtures.located(5, 2.0, 2.0),
            'second-b.jpg': TestDataFixtures.located(6, 2.1, 2.1),
        }
        orchestrator = make_orchestrator(script)
        first = orchestrator.submit_tour(
            'alice', 'Tour', '', TestDataFixtures.create_descriptors(media_dir, ['first.jpg']), wait=True
        )
        tour_id = store.get_job(first).tour_id

        with pytest.raises(PermissionDenied):
            orchestrator.submit_tour('mallory', 'Tour', '', [], tour_id=tour_id)

        second = orchestrator.submit_tour(
            'alice',
            'Tour',
            '',
            TestDataFixtures.create_descriptors(media_dir, ['second-a.jpg', 'second-b.jpg']),
            tour_id=tour_id,
            wait=True,
        )

        assert store.get_job(second).state == JOB_COMPLETED
        entities = store.list_tour_entities(tour_id)
        assert [e.sequence_index for e in entities] == [0, 1]
        assert {(e.latitude, e.longitude) for e in entities} == {(2.0, 2.0), (2.1, 2.1)}

    def test_failed_resubmission_clears_tour(self, make_orchestrator, store, media_dir):
        """Test that a re-submission with no locatable media leaves the tour without stops"""
        script = {
            'first.jpg': TestDataFixtures.located(0, 1.0, 1.0),
            'blurry.jpg': TestDataFixtures.no_gps(),
        }
        orchestrator = make_orchestrator(script)
        first = orchestrator.submit_tour(
            'alice', 'Tour', '', TestDataFixtures.create_descriptors(media_dir, ['first.jpg']), wait=True
        )
        tour_id = store.get_job(first).tour_id
        assert self.kinds(store, tour_id) == [ENTITY_FINAL]

        descriptors = TestDataFixtures.create_descriptors(media_dir, ['blurry.jpg'])
        second = orchestrator.submit_tour('alice', 'Tour', '', descriptors, tour_id=tour_id, wait=True)

        job = store.get_job(second)
        assert job.state == JOB_FAILED
        assert job.units_succeeded == 0
        assert store.list_tour_entities(tour_id) == []
