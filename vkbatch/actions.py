"""Actions the job controller takes on a job: create, kill and supporting steps."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Collection, Mapping
from datetime import datetime, timezone

from vkbatch.cache import JobCache
from vkbatch.cluster import (
    InMemoryCluster,
    NotFoundError,
    PersistentVolumeClaim,
    PodGroup,
)
from vkbatch.helpers import make_volume_claim_name
from vkbatch.jobinfo import JobInfo
from vkbatch.models import Job, JobPhase, JobStatus, Pod, PodPhase

logger = logging.getLogger(__name__)

EVENT_TYPE_WARNING = "Warning"

JOB_STATUS_ERROR = "JobStatusError"
PLUGIN_ERROR = "PluginError"
POD_GROUP_ERROR = "PodGroupError"
PVC_ERROR = "PVCError"

UpdateStatusFn = Callable[[JobStatus], bool]
Recorder = Callable[[Job, str, str, str], None]
JobHook = Callable[[Job], None]
PodHook = Callable[[Pod], None]


class ActionError(Exception):
    """An action on a job could not be carried out completely."""


def _log_event(job: Job, event_type: str, reason: str, message: str) -> None:
    logger.warning(
        "%s event on Job %s/%s: %s: %s",
        event_type,
        job.namespace,
        job.name,
        reason,
        message,
    )


def _add_resources(total: dict[str, float], requests: Mapping[str, float]) -> None:
    for name, quantity in requests.items():
        total[name] = total.get(name, 0) + quantity


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobActions:
    """Carries out the controller's actions against a cluster and a job cache.

    ``priority_classes`` maps a priority class name to its value. The hooks
    ``on_job_add`` and ``on_job_delete`` run job plugins; ``resync_task`` is
    told about pods whose handling failed and should be tried again;
    ``recorder`` receives (job, event type, reason, message) for warnings.
    """

    def __init__(
        self,
        cluster: InMemoryCluster,
        cache: JobCache,
        priority_classes: Mapping[str, int] | None = None,
        on_job_add: JobHook | None = None,
        on_job_delete: JobHook | None = None,
        resync_task: PodHook | None = None,
        recorder: Recorder | None = None,
    ) -> None:
        self.cluster = cluster
        self.cache = cache
        self.priority_classes: dict[str, int] = dict(priority_classes or {})
        self._on_job_add = on_job_add
        self._on_job_delete = on_job_delete
        self._resync_task = resync_task
        self._recorder: Recorder = recorder if recorder is not None else _log_event
        self._lock = threading.Lock()

    def _resync(self, pod: Pod) -> None:
        if self._resync_task is not None:
            self._resync_task(pod)

    @staticmethod
    def _apply_update(job: Job, update_status: UpdateStatusFn | None) -> None:
        if update_status is not None and update_status(job.status):
            job.status.state.last_transition_time = _now()

    def kill_job(
        self,
        job_info: JobInfo,
        pod_retain_phase: Collection[PodPhase],
        update_status: UpdateStatusFn | None,
    ) -> None:
        """Delete every pod not in a retained phase, then record the new status.

        The job version is bumped and its pod group removed.
        """
        job = job_info.job
        logger.debug("Killing Job <%s/%s>", job.namespace, job.name)
        logger.info(
            "Current Version is: %d of job: %s/%s",
            job.status.version,
            job.namespace,
            job.name,
        )
        if job.deletion_timestamp is not None:
            logger.info(
                "Job <%s/%s> is terminating, skip management process.",
                job.namespace,
                job.name,
            )
            return

        counts = {phase: 0 for phase in PodPhase}
        terminating = 0
        errors: list[Exception] = []
        total = 0

        for pods in job_info.pods.values():
            for pod in pods.values():
                total += 1
                if pod.deletion_timestamp is not None:
                    logger.info("Pod <%s/%s> is terminating", pod.namespace, pod.name)
                    terminating += 1
                    continue
                if pod.phase not in pod_retain_phase:
                    try:
                        self.delete_job_pod(job.name, pod)
                    except Exception as err:
                        errors.append(err)
                        self._resync(pod)
                    else:
                        terminating += 1
                        continue
                counts[pod.phase] += 1

        if errors:
            logger.error(
                "failed to kill pods for job %s/%s, with err %s",
                job.namespace,
                job.name,
                errors,
            )
            raise ActionError(f"failed to kill {len(errors)} pods of {total}")

        job = job.deep_copy()
        job.status = JobStatus(
            state=job.status.state,
            pending=counts[PodPhase.PENDING],
            running=counts[PodPhase.RUNNING],
            succeeded=counts[PodPhase.SUCCEEDED],
            failed=counts[PodPhase.FAILED],
            terminating=terminating,
            version=job.status.version + 1,
            min_available=job.spec.min_available,
            retry_count=job.status.retry_count,
        )
        self._apply_update(job, update_status)

        job = self.cluster.update_job_status(job)
        self.cache.update(job)

        try:
            self.cluster.delete_pod_group(job.namespace, job.name)
        except NotFoundError:
            pass

        if self._on_job_delete is not None:
            self._on_job_delete(job)

    def create_job(
        self, job_info: JobInfo, update_status: UpdateStatusFn | None
    ) -> None:
        """Prepare a job's status, plugins, pod group and volumes."""
        job = job_info.job.deep_copy()
        logger.info(
            "Current Version is: %d of job: %s/%s",
            job.status.version,
            job.namespace,
            job.name,
        )

        steps: list[tuple[str, str, Callable[[], None]]] = [
            (
                JOB_STATUS_ERROR,
                "Failed to initialize job status",
                lambda: self.init_job_status(job),
            ),
        ]
        if self._on_job_add is not None:
            hook = self._on_job_add
            steps.append(
                (PLUGIN_ERROR, "Execute plugin when job add failed", lambda: hook(job))
            )
        steps.append(
            (
                POD_GROUP_ERROR,
                "Failed to create PodGroup",
                lambda: self.create_pod_group_if_not_exist(job),
            )
        )
        for reason, message, step in steps:
            try:
                step()
            except Exception as err:
                self._recorder(
                    job, EVENT_TYPE_WARNING, reason, f"{message}, err: {err}"
                )
                raise

        try:
            job = self.create_job_io_if_not_exist(job)
        except Exception as err:
            self._recorder(
                job, EVENT_TYPE_WARNING, PVC_ERROR, f"Failed to create PVC, err: {err}"
            )
            raise

        self._apply_update(job, update_status)
        job = self.cluster.update_job_status(job)
        self.cache.update(job)

    def create_job_io_if_not_exist(self, job: Job) -> Job:
        """Make sure every volume of the job has a claim name and a claim.

        Returns the job, updated in the cluster if claim names were generated.
        """
        need_update = False
        for volume in job.spec.volumes:
            name_exists = False
            vc_name = volume.volume_claim_name
            if not vc_name:
                while True:
                    vc_name = make_volume_claim_name(job.name)
                    if not self.check_pvc_exist(job, vc_name):
                        break
                volume.volume_claim_name = vc_name
                need_update = True
            else:
                name_exists = self.check_pvc_exist(job, vc_name)

            if not name_exists:
                if volume.volume_claim is not None:
                    self.create_pvc(job, vc_name, volume.volume_claim)
                    job.status.controlled_resources["volume-pvc-" + vc_name] = vc_name
                else:
                    job.status.controlled_resources["volume-emptyDir-" + vc_name] = (
                        vc_name
                    )

        if need_update:
            updated = self.cluster.update_job(job)
            updated.status = job.status
            return updated
        return job

    def check_pvc_exist(self, job: Job, vc_name: str) -> bool:
        try:
            self.cluster.get_pvc(job.namespace, vc_name)
        except NotFoundError:
            return False
        return True

    def create_pvc(self, job: Job, vc_name: str, volume_claim: Mapping) -> None:
        """Create a claim owned by the job."""
        pvc = PersistentVolumeClaim(
            name=vc_name,
            namespace=job.namespace,
            owner_uid=job.uid,
            spec=dict(volume_claim),
        )
        logger.debug("Try to create PVC: %s", pvc)
        self.cluster.create_pvc(pvc)

    def create_pod_group_if_not_exist(self, job: Job) -> None:
        try:
            self.cluster.get_pod_group(job.namespace, job.name)
            return
        except NotFoundError:
            pass
        pod_group = PodGroup(
            name=job.name,
            namespace=job.namespace,
            annotations=dict(job.annotations),
            owner_uid=job.uid,
            min_member=job.spec.min_available,
            queue=job.spec.queue,
            min_resources=self.calc_pg_min_resources(job),
            priority_class_name=job.spec.priority_class_name,
        )
        self.cluster.create_pod_group(pod_group)

    def delete_job_pod(self, job_name: str, pod: Pod) -> None:
        """Delete a pod of the job; a pod that is already gone is fine."""
        try:
            self.cluster.delete_pod(pod.namespace, pod.name)
        except NotFoundError:
            pass
        except Exception as err:
            logger.error(
                "Failed to delete pod %s/%s for Job %s, err %s",
                pod.namespace,
                pod.name,
                job_name,
                err,
            )
            raise

    def calc_pg_min_resources(self, job: Job) -> dict[str, float]:
        """Sum the requests of the first ``min_available`` pods, by task priority."""
        with self._lock:
            priorities = self.priority_classes
            ranked = sorted(
                job.spec.tasks,
                key=lambda task: priorities.get(
                    task.template.priority_class_name, 0
                ),
                reverse=True,
            )

        total: dict[str, float] = {}
        pod_count = 0
        for task in ranked:
            for _ in range(task.replicas):
                if pod_count >= job.spec.min_available:
                    break
                pod_count += 1
                for container in task.template.containers:
                    _add_resources(total, container.requests)
        return total

    def init_job_status(self, job: Job) -> None:
        """Give a new job the Pending phase, in the cluster and in the cache."""
        if job.status.state.phase is not None:
            return
        job.status.state.phase = JobPhase.PENDING
        job.status.min_available = job.spec.min_available
        updated = self.cluster.update_job_status(job)
        self.cache.update(updated)