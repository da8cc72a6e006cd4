"""Tests for UploadWorkerPool."""

import logging
import threading
import time

import pytest

from dirpush_client import UploadJob, UploadWorkerPool


def _job(root, name):
    return UploadJob.for_path(root, root / name, "/t")


class TestProcessing:
    def test_all_jobs_uploaded(self, watch_root):
        done = []
        lock = threading.Lock()

        def upload(job):
            with lock:
                done.append(str(job.relative_path))

        pool = UploadWorkerPool(upload, concurrency=2)
        pool.start()
        for i in range(5):
            assert pool.submit(_job(watch_root, f"f{i}.txt"))
        assert pool.close(drain=True, timeout=5) == 0
        assert sorted(done) == [f"f{i}.txt" for i in range(5)]

    def test_failure_logged_and_next_job_runs(self, watch_root, caplog):
        done = []

        def upload(job):
            if job.relative_path.name == "bad.txt":
                raise OSError("connection refused")
            done.append(job.relative_path.name)

        pool = UploadWorkerPool(upload, concurrency=1)
        pool.start()
        with caplog.at_level(logging.ERROR, logger="dirpush.client"):
            pool.submit(_job(watch_root, "bad.txt"))
            pool.submit(_job(watch_root, "good.txt"))
            pool.close(drain=True, timeout=5)

        assert done == ["good.txt"]
        assert "failed to upload file" in caplog.text
        assert "connection refused" in caplog.text

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValueError):
            UploadWorkerPool(lambda job: None, concurrency=0)


class TestBackpressure:
    def test_full_queue_blocks_producer(self, watch_root):
        """With capacity 1 and no workers running, the second submit waits."""
        pool = UploadWorkerPool(lambda job: None, concurrency=1, put_interval=0.05)
        assert pool.submit(_job(watch_root, "first.txt"))

        results = []
        producer = threading.Thread(target=lambda: results.append(pool.submit(_job(watch_root, "second.txt"))))
        producer.start()
        time.sleep(0.3)
        assert producer.is_alive()
        assert results == []

        pool.start()
        producer.join(timeout=5)
        assert not producer.is_alive()
        assert results == [True]
        pool.close(drain=True, timeout=5)

    def test_blocked_producer_released_on_close(self, watch_root):
        pool = UploadWorkerPool(lambda job: None, concurrency=1, put_interval=0.05)
        pool.submit(_job(watch_root, "first.txt"))

        results = []
        producer = threading.Thread(target=lambda: results.append(pool.submit(_job(watch_root, "second.txt"))))
        producer.start()
        time.sleep(0.1)
        pool.close(drain=True, timeout=1)
        producer.join(timeout=5)
        assert results == [False]


class TestClose:
    def test_discard_returns_count(self, watch_root):
        pool = UploadWorkerPool(lambda job: None, concurrency=3)
        for name in ("a", "b", "c"):
            pool.submit(_job(watch_root, name))
        assert pool.close(drain=False) == 3
        assert pool.jobs.empty()

    def test_submit_after_close_refused(self, watch_root):
        pool = UploadWorkerPool(lambda job: None, concurrency=1)
        pool.start()
        pool.close(timeout=5)
        assert pool.submit(_job(watch_root, "late.txt")) is False

    def test_workers_exit_on_close(self, watch_root):
        pool = UploadWorkerPool(lambda job: None, concurrency=4)
        pool.start()
        pool.close(timeout=5)
        assert not any(t.is_alive() for t in pool._threads)
