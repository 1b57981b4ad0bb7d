"""Unit tests for QueueManager queue operations.

Tests cover:
- Enqueue expansion, ordering and the queue limit
- Reference image isolation between jobs
- Remove / skip / retry / clear semantics
- Delay and config overrides
- Stats and event notifications
"""

import pytest

from imagebatch.models import QueueConfig
from imagebatch.queue import (
    EventKind,
    GenerationFailure,
    JobStatus,
    RefAssetStore,
    RefImage,
)


@pytest.fixture
def events(manager):
    received = []
    manager.subscribe(received.append)
    return received


@pytest.fixture
def ref_image():
    return RefImage.from_bytes(b"reference-bytes", mime_type="image/png")


class TestEnqueue:
    """Test job creation."""

    def test_expands_prompts_and_variations(self, manager, gen_config):
        """Two prompts with two variations yield four pending jobs in order."""
        jobs = manager.enqueue(["cat", "dog"], 2, gen_config)

        assert [(j.prompt, j.variation_index) for j in jobs] == [
            ("cat", 0),
            ("cat", 1),
            ("dog", 0),
            ("dog", 1),
        ]
        assert all(j.status == JobStatus.PENDING for j in jobs)
        assert all(j.total_variations == 2 for j in jobs)

        stats = manager.get_stats()
        assert stats.total == 4
        assert stats.pending == 4

    def test_variations_share_group(self, manager, gen_config):
        jobs = manager.enqueue(["cat", "dog"], 2, gen_config)

        assert jobs[0].group_id == jobs[1].group_id
        assert jobs[0].group_id != jobs[2].group_id

    def test_job_ids_unique(self, manager, gen_config):
        jobs = manager.enqueue(["a", "b", "c"], 3, gen_config)
        jobs += manager.enqueue(["a", "b", "c"], 3, gen_config)

        assert len({j.id for j in jobs}) == len(jobs)

    def test_blank_prompts_skipped(self, manager, gen_config):
        jobs = manager.enqueue(["  cat  ", "", "   "], 1, gen_config)

        assert len(jobs) == 1
        assert jobs[0].prompt == "cat"

    @pytest.mark.parametrize("variations", [0, 11, -1])
    def test_variations_out_of_range(self, manager, gen_config, variations):
        with pytest.raises(ValueError):
            manager.enqueue(["cat"], variations, gen_config)
        assert manager.get_stats().total == 0

    def test_config_snapshotted(self, manager, gen_config):
        jobs = manager.enqueue(["cat"], 1, gen_config)

        assert jobs[0].config == gen_config

    def test_batch_name_blank_is_none(self, manager, gen_config):
        jobs = manager.enqueue(["cat"], 1, gen_config, batch_name="   ")

        assert jobs[0].batch_name is None

    def test_queue_limit_stops_creation(self, manager, gen_config, events):
        """98 queued jobs plus a 5-job request keeps exactly the first 2."""
        manager.enqueue([f"prompt {i}" for i in range(98)], 1, gen_config)
        events.clear()

        created = manager.enqueue(["overflow"], 5, gen_config)

        assert len(created) == 2
        assert manager.get_stats().total == 100
        limit_events = [e for e in events if e.kind == EventKind.LIMIT_REACHED]
        assert len(limit_events) == 1
        assert limit_events[0].message == "Queue limit reached (100)"

    def test_queue_full_creates_nothing(self, make_manager, gen_config):
        manager = make_manager(queue_config=QueueConfig(max_jobs=2))
        manager.enqueue(["a", "b"], 1, gen_config)

        assert manager.enqueue(["c"], 1, gen_config) == []
        assert manager.get_stats().total == 2


class TestReferenceImages:
    """Test reference image isolation and storage."""

    def test_each_job_gets_own_copy(self, manager, gen_config, ref_image):
        manager.enqueue(["cat"], 2, gen_config, ref_images=[ref_image])
        state = manager.get_state()
        first, second = state.jobs

        assert first.ref_images[0] == second.ref_images[0]
        assert first.ref_images[0] is not second.ref_images[0]

    def test_caller_mutation_does_not_leak(self, manager, gen_config, ref_image):
        manager.enqueue(["cat"], 1, gen_config, ref_images=[ref_image])
        ref_image.data = "bXV0YXRlZA=="

        job = manager.get_state().jobs[0]
        assert job.ref_images[0].data != ref_image.data

    def test_returned_jobs_are_copies(self, manager, gen_config, ref_image):
        jobs = manager.enqueue(["cat"], 1, gen_config, ref_images=[ref_image])
        jobs[0].ref_images.clear()

        assert len(manager.get_job(jobs[0].id).ref_images) == 1

    def test_assets_saved_per_job(self, manager, store, gen_config, ref_image):
        jobs = manager.enqueue(["cat"], 2, gen_config, ref_images=[ref_image])
        assets = RefAssetStore(store)

        assert sorted(assets.job_ids()) == sorted(j.id for j in jobs)
        assert assets.load(jobs[0].id)[0].data == ref_image.data

    def test_no_assets_without_refs(self, manager, store, gen_config):
        manager.enqueue(["cat"], 2, gen_config)

        assert RefAssetStore(store).job_ids() == []


class TestRemoveSkip:
    """Test per-job removal and skipping."""

    def test_remove_pending(self, manager, store, gen_config, ref_image):
        jobs = manager.enqueue(["cat", "dog"], 1, gen_config, ref_images=[ref_image])

        assert manager.remove(jobs[0].id) is True
        assert [j.id for j in manager.get_state().jobs] == [jobs[1].id]
        assert RefAssetStore(store).load(jobs[0].id) == []

    def test_remove_unknown_is_noop(self, manager, gen_config):
        manager.enqueue(["cat"], 1, gen_config)

        assert manager.remove("job_missing") is False
        assert manager.get_stats().total == 1

    def test_remove_non_pending_is_noop(self, manager, gen_config):
        jobs = manager.enqueue(["cat"], 1, gen_config)
        manager.skip(jobs[0].id)

        assert manager.remove(jobs[0].id) is False
        assert manager.get_stats().total == 1

    def test_skip_pending(self, manager, store, gen_config, ref_image, events):
        jobs = manager.enqueue(["cat"], 1, gen_config, ref_images=[ref_image])

        assert manager.skip(jobs[0].id) is True

        job = manager.get_job(jobs[0].id)
        assert job.status == JobStatus.CANCELLED
        assert job.error == "Skipped by user"
        # Kept so a retry can reload them
        assert len(RefAssetStore(store).load(job.id)) == 1
        assert events[-1].kind == EventKind.JOB_CANCELLED

    def test_skip_twice_is_noop(self, manager, gen_config):
        jobs = manager.enqueue(["cat"], 1, gen_config)
        manager.skip(jobs[0].id)

        assert manager.skip(jobs[0].id) is False


class TestRetry:
    """Test sending failed/cancelled jobs back to pending."""

    def test_retry_skipped_without_autostart(self, manager, gen_config):
        jobs = manager.enqueue(["cat"], 1, gen_config)
        manager.skip(jobs[0].id)

        assert manager.retry(jobs[0].id, autostart=False) is True

        job = manager.get_job(jobs[0].id)
        assert job.status == JobStatus.PENDING
        assert job.error is None
        assert job.completed_at is None
        assert manager.is_running is False

    def test_retry_pending_is_noop(self, manager, gen_config):
        jobs = manager.enqueue(["cat"], 1, gen_config)

        assert manager.retry(jobs[0].id, autostart=False) is False

    def test_retry_unknown_is_noop(self, manager):
        assert manager.retry("job_missing") is False

    def test_retry_reloads_refs(self, make_manager, store, gen_config, ref_image):
        """Refs dropped from memory (e.g. after restore) come back from the asset store."""
        manager = make_manager()
        jobs = manager.enqueue(["cat"], 1, gen_config, ref_images=[ref_image])
        manager.skip(jobs[0].id)
        manager.persist()

        # Hide the asset entry during restore so hydration finds nothing
        assets = RefAssetStore(store)
        saved = assets.load(jobs[0].id)
        assets.delete(jobs[0].id)
        restored = make_manager()
        restored.restore()
        assert restored.get_job(jobs[0].id).ref_images == []
        assets.save(jobs[0].id, saved)

        assert restored.retry(jobs[0].id, autostart=False) is True
        assert restored.get_job(jobs[0].id).ref_images[0].data == ref_image.data

    def test_retry_autostarts_when_idle(self, manager, backend, gen_config):
        jobs = manager.enqueue(["cat"], 1, gen_config)
        manager.skip(jobs[0].id)

        manager.retry(jobs[0].id)

        assert manager.get_job(jobs[0].id).status == JobStatus.COMPLETED
        assert len(backend.calls) == 1

    def test_retry_failed_requeues_all_failed(self, manager, backend, gen_config):
        manager.enqueue(["a", "b", "c"], 1, gen_config)
        backend.script = [GenerationFailure("boom"), None, GenerationFailure("boom")]
        manager.start()
        assert manager.get_stats().failed == 2

        assert manager.retry_failed(autostart=False) == 2
        assert manager.get_stats().pending == 2
        # Counters are monotonic
        assert manager.get_stats().failed == 2


class TestClear:
    """Test clearing the queue."""

    def test_clear_resets_everything(self, manager, store, gen_config, ref_image, events):
        manager.enqueue(["cat", "dog"], 2, gen_config, ref_images=[ref_image])
        manager.start()
        assert manager.get_stats().completed == 4

        manager.clear()

        state = manager.get_state()
        assert state.jobs == []
        assert state.completed_count == 0
        assert state.failed_count == 0
        assert state.generation_times == []
        assert RefAssetStore(store).job_ids() == []
        assert events[-1].kind == EventKind.CLEARED

    def test_clear_purges_orphan_assets(self, manager, store, gen_config, ref_image):
        RefAssetStore(store).save("job_orphan", [ref_image])
        manager.enqueue(["cat"], 1, gen_config, ref_images=[ref_image])

        manager.clear()

        assert RefAssetStore(store).job_ids() == []


class TestDelay:
    """Test delay overrides."""

    def test_set_delay(self, manager):
        manager.set_delay(5000)

        assert manager.get_stats().delay_between_ms == 5000

    def test_set_delay_clamped_to_cap(self, manager):
        manager.set_delay(120000)

        assert manager.get_stats().delay_between_ms == 60000

    def test_set_delay_negative(self, manager):
        with pytest.raises(ValueError):
            manager.set_delay(-1)

    def test_reset_delay(self, manager):
        manager.set_delay(24000)
        manager.reset_delay()

        assert manager.get_stats().delay_between_ms == 3000


class TestConfigOverride:
    """Test bulk config override of pending jobs."""

    def test_only_pending_updated(self, manager, gen_config):
        jobs = manager.enqueue(["a", "b", "c"], 1, gen_config)
        manager.skip(jobs[1].id)

        count = manager.apply_config_override({"resolution": "2K", "aspect_ratio": "16:9"})

        assert count == 2
        assert manager.get_job(jobs[0].id).config.resolution == "2K"
        assert manager.get_job(jobs[0].id).config.aspect_ratio == "16:9"
        assert manager.get_job(jobs[0].id).config.model == "test-model"
        assert manager.get_job(jobs[1].id).config.resolution == "1K"

    def test_unknown_field_rejected(self, manager, gen_config):
        jobs = manager.enqueue(["a"], 1, gen_config)

        with pytest.raises(ValueError):
            manager.apply_config_override({"colour": "blue"})
        assert manager.get_job(jobs[0].id).config == gen_config

    def test_invalid_value_rejected(self, manager, gen_config):
        manager.enqueue(["a"], 1, gen_config)

        with pytest.raises(ValueError):
            manager.apply_config_override({"thinking_budget": -5})

    def test_empty_queue(self, manager):
        assert manager.apply_config_override({"resolution": "2K"}) == 0


class TestStatsAndEvents:
    """Test stats derivation and listener handling."""

    def test_percent_complete(self, manager, backend, gen_config):
        manager.enqueue(["a", "b", "c", "d"], 1, gen_config)
        backend.script = [None, GenerationFailure("boom"), None, None]
        manager.start()

        stats = manager.get_stats()
        assert stats.completed == 3
        assert stats.failed == 1
        assert stats.percent_complete == 75

    def test_unsubscribe(self, manager, gen_config):
        received = []
        unsubscribe = manager.subscribe(received.append)
        unsubscribe()

        manager.enqueue(["a"], 1, gen_config)

        assert received == []

    def test_failing_listener_isolated(self, manager, gen_config, events):
        def broken(event):
            raise RuntimeError("listener bug")

        manager.subscribe(broken)
        manager.enqueue(["a"], 1, gen_config)

        assert events[-1].kind == EventKind.STATE_CHANGED
        assert manager.get_stats().total == 1

    def test_get_state_is_copy(self, manager, gen_config):
        manager.enqueue(["a"], 1, gen_config)
        state = manager.get_state()
        state.jobs.clear()

        assert manager.get_stats().total == 1
