"""Removes finished jobs once their time-to-live after finishing has passed."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone

from vkbatch.cluster import InMemoryCluster, NotFoundError
from vkbatch.models import Job, JobPhase
from vkbatch.workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

_FINISHED_PHASES = frozenset(
    {JobPhase.COMPLETED, JobPhase.FAILED, JobPhase.TERMINATED}
)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _object_key(job: Job) -> str:
    if job.namespace:
        return f"{job.namespace}/{job.name}"
    return job.name


def _split_key(key: str) -> tuple[str, str]:
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def is_job_finished(job: Job) -> bool:
    """Whether the job is in a phase it does not leave on its own."""
    return job.status.state.phase in _FINISHED_PHASES


def needs_cleanup(job: Job) -> bool:
    """Whether the job has finished and has a TTL set."""
    return job.spec.ttl_seconds_after_finished is not None and is_job_finished(job)


def job_finish_time(job: Job) -> datetime:
    """Return the time a finished job finished."""
    finished = job.status.state.last_transition_time
    if finished is None:
        raise ValueError(
            f"unable to find the time when the Job {job.namespace}/{job.name} finished"
        )
    return finished


def get_finish_and_expire_time(job: Job) -> tuple[datetime, datetime]:
    """Return when the job finished and when its TTL expires, both in UTC."""
    if not needs_cleanup(job):
        raise ValueError(f"job {job.namespace}/{job.name} should not be cleaned up")
    finish_at = _as_utc(job_finish_time(job))
    expire_at = finish_at + timedelta(seconds=job.spec.ttl_seconds_after_finished)
    return finish_at, expire_at


def time_left(job: Job, since: datetime) -> timedelta:
    """Return how long after ``since`` the job's TTL expires."""
    finish_at, expire_at = get_finish_and_expire_time(job)
    since_utc = _as_utc(since)
    if finish_at > since_utc:
        logger.warning(
            "Found Job %s/%s finished in the future. This is likely due to time "
            "skew in the cluster. Job cleanup will be deferred.",
            job.namespace,
            job.name,
        )
    remaining = expire_at - since_utc
    logger.debug(
        "Found Job %s/%s finished at %s, remaining TTL %s since %s, "
        "TTL will expire at %s",
        job.namespace,
        job.name,
        finish_at,
        remaining,
        since_utc,
        expire_at,
    )
    return remaining


class GarbageCollector:
    """Deletes finished jobs whose ``ttl_seconds_after_finished`` has passed.

    Jobs are fed in through ``add_job`` and ``update_job``; jobs whose TTL
    has not yet expired are queued again for when it is expected to.
    """

    def __init__(
        self, cluster: InMemoryCluster, queue: RateLimitingQueue | None = None
    ) -> None:
        self.cluster = cluster
        self.queue = queue if queue is not None else RateLimitingQueue()

    def add_job(self, job: Job) -> None:
        logger.debug("Adding job %s/%s", job.namespace, job.name)
        if job.deletion_timestamp is None and needs_cleanup(job):
            self._enqueue(job)

    def update_job(self, old: Job, cur: Job) -> None:
        logger.debug("Updating job %s/%s", cur.namespace, cur.name)
        if cur.deletion_timestamp is None and needs_cleanup(cur):
            self._enqueue(cur)

    def _enqueue(self, job: Job) -> None:
        logger.debug("Add job %s/%s to cleanup", job.namespace, job.name)
        self.queue.add(_object_key(job))

    def _enqueue_after(self, job: Job, after: timedelta) -> None:
        self.queue.add_after(_object_key(job), after.total_seconds())

    def process_next_work_item(self) -> bool:
        """Handle one queued job, blocking until one is ready.

        Returns False once the queue has been shut down.
        """
        return self._process_next(None)

    def _process_next(self, timeout: float | None) -> bool:
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            self.process_job(key)
        except Exception as err:  # any failure is retried with backoff
            logger.error("error cleaning up Job %s, will retry: %s", key, err)
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def process_job(self, key: str) -> None:
        """Delete the job named by ``key`` if it finished and its TTL expired.

        A job whose TTL has not expired yet is queued for when it will.
        """
        namespace, name = _split_key(key)
        logger.debug("Checking if Job %s/%s is ready for cleanup", namespace, name)
        try:
            job = self.cluster.get_job(namespace, name)
        except NotFoundError:
            return
        if not self.process_ttl(job):
            return

        # The TTL may have changed meanwhile; check the latest copy again.
        try:
            fresh = self.cluster.get_job(namespace, name)
        except NotFoundError:
            return
        if not self.process_ttl(fresh):
            return

        logger.debug("Cleaning up Job %s/%s", namespace, name)
        self.cluster.delete_job(fresh.namespace, fresh.name, uid=fresh.uid)

    def process_ttl(self, job: Job) -> bool:
        """Whether the job's TTL has expired; if not, queue it for when it will."""
        if job.deletion_timestamp is not None or not needs_cleanup(job):
            return False
        remaining = time_left(job, datetime.now(timezone.utc))
        if remaining <= timedelta(0):
            return True
        self._enqueue_after(job, remaining)
        return False

    def run(self, stop_event: threading.Event) -> None:
        """Clean up jobs until ``stop_event`` is set, then shut the queue down."""
        logger.info("Starting garbage collector")
        try:
            while not stop_event.is_set():
                try:
                    if not self._process_next(0.1):
                        return
                except TimeoutError:
                    continue
        finally:
            self.queue.shut_down()
            logger.info("Shutting down garbage collector")