"""In-memory cache of jobs and their pods used by the job controller."""

from __future__ import annotations

import copy
import logging
import threading

from vkbatch.jobinfo import JobInfo, Request
from vkbatch.models import JOB_NAME_KEY, Job, JobStatus, Pod, PodPhase
from vkbatch.workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """A lookup or change in the job cache failed."""


def _key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def job_key_by_name(namespace: str, name: str) -> str:
    return _key(namespace, name)


def job_key_by_req(req: Request) -> str:
    return _key(req.namespace, req.job_name)


def job_key(job: Job) -> str:
    return _key(job.namespace, job.name)


def _job_key_of_pod(pod: Pod) -> str:
    job_name = pod.annotations.get(JOB_NAME_KEY)
    if job_name is None:
        raise CacheError(
            f"failed to find job name of pod <{pod.namespace}/{pod.name}>"
        )
    return _key(pod.namespace, job_name)


def _job_terminated(info: JobInfo) -> bool:
    return info.job is None and not info.pods


class JobCache:
    """Thread-safe cache of jobs keyed by "namespace/name".

    Deleted jobs stay until all their pods are gone; a background worker
    started by ``run`` removes them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, JobInfo] = {}
        self._deleted_jobs = RateLimitingQueue()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def get(self, key: str) -> JobInfo:
        """Return a copy of the cached job info."""
        with self._lock:
            info = self._jobs.get(key)
            if info is None:
                raise CacheError(f"failed to find job <{key}>")
            if info.job is None:
                raise CacheError(f"job <{key}> is not ready")
            return info.clone()

    def get_status(self, key: str) -> JobStatus:
        with self._lock:
            info = self._jobs.get(key)
            if info is None:
                raise CacheError(f"failed to find job <{key}>")
            if info.job is None:
                raise CacheError(f"job <{key}> is not ready")
            return copy.deepcopy(info.job.status)

    def add(self, job: Job) -> None:
        with self._lock:
            key = job_key(job)
            info = self._jobs.get(key)
            if info is not None:
                if info.job is None:
                    info.set_job(job)
                    return
                raise CacheError(f"duplicated jobInfo <{key}>")
            self._jobs[key] = JobInfo(namespace=job.namespace, name=job.name, job=job)

    def update(self, job: Job) -> None:
        with self._lock:
            key = job_key(job)
            info = self._jobs.get(key)
            if info is None:
                raise CacheError(f"failed to find job <{key}>")
            info.job = job

    def delete(self, job: Job) -> None:
        """Mark a job deleted; it is dropped once its pods are gone."""
        with self._lock:
            key = job_key(job)
            info = self._jobs.get(key)
            if info is None:
                raise CacheError(f"failed to find job <{key}>")
            info.job = None
            self._delete_job(info)

    def _info_for_pod(self, pod: Pod) -> JobInfo:
        return self._jobs.setdefault(_job_key_of_pod(pod), JobInfo())

    def add_pod(self, pod: Pod) -> None:
        with self._lock:
            self._info_for_pod(pod).add_pod(pod)

    def update_pod(self, pod: Pod) -> None:
        with self._lock:
            self._info_for_pod(pod).update_pod(pod)

    def delete_pod(self, pod: Pod) -> None:
        with self._lock:
            info = self._info_for_pod(pod)
            info.delete_pod(pod)
            if info.job is None:
                self._delete_job(info)

    def task_completed(self, job_key: str, task_name: str) -> bool:
        """Whether at least as many pods of the task succeeded as it has replicas."""
        with self._lock:
            info = self._jobs.get(job_key)
            if info is None:
                return False
            task_pods = info.pods.get(task_name)
            if task_pods is None or info.job is None:
                return False
            replicas = 0
            for task in info.job.spec.tasks:
                if task.name == task_name:
                    replicas = task.replicas
            if replicas <= 0:
                return False
            completed = sum(
                1 for pod in task_pods.values() if pod.phase is PodPhase.SUCCEEDED
            )
            return completed >= replicas

    def process_cleanup_job(self) -> bool:
        """Handle one deleted job, blocking until one is ready.

        Returns False once the cleanup queue has been shut down.
        """
        return self._process_cleanup_job(None)

    def _process_cleanup_job(self, timeout: float | None) -> bool:
        info = self._deleted_jobs.get(timeout=timeout)
        if info is None:
            return False
        try:
            with self._lock:
                if _job_terminated(info):
                    self._deleted_jobs.forget(info)
                    key = _key(info.namespace, info.name)
                    self._jobs.pop(key, None)
                    logger.debug("Job <%s> was deleted.", key)
                else:
                    self._delete_job(info)
        finally:
            self._deleted_jobs.done(info)
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Remove deleted jobs until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                if not self._process_cleanup_job(0.1):
                    return
            except TimeoutError:
                continue

    def _delete_job(self, info: JobInfo) -> None:
        logger.debug("Try to delete Job <%s/%s>", info.namespace, info.name)
        self._deleted_jobs.add_rate_limited(info)