"""A job together with the pods that belong to it, grouped by task."""

from __future__ import annotations

from dataclasses import dataclass, field

from vkbatch.models import JOB_VERSION_KEY, TASK_SPEC_KEY, Job, Pod


class JobInfoError(Exception):
    """A pod could not be recorded against a job."""


def _check_annotations(pod: Pod, task_missing: str) -> str:
    task_name = pod.annotations.get(TASK_SPEC_KEY)
    if task_name is None:
        raise JobInfoError(f"{task_missing} of Pod <{pod.namespace}/{pod.name}>")
    if JOB_VERSION_KEY not in pod.annotations:
        raise JobInfoError(
            f"failed to find jobVersion of Pod <{pod.namespace}/{pod.name}>"
        )
    return task_name


@dataclass(eq=False)
class JobInfo:
    """A job and its pods, keyed by task name and then pod name."""

    namespace: str = ""
    name: str = ""
    job: Job | None = None
    pods: dict[str, dict[str, Pod]] = field(default_factory=dict)

    def clone(self) -> JobInfo:
        """Copy the pod maps; the job and pod objects themselves are shared."""
        return JobInfo(
            namespace=self.namespace,
            name=self.name,
            job=self.job,
            pods={task: dict(pods) for task, pods in self.pods.items()},
        )

    def set_job(self, job: Job) -> None:
        self.name = job.name
        self.namespace = job.namespace
        self.job = job

    def add_pod(self, pod: Pod) -> None:
        """Record a new pod; raise JobInfoError if it is already known."""
        task_name = _check_annotations(pod, "failed to taskName")
        task_pods = self.pods.setdefault(task_name, {})
        if pod.name in task_pods:
            raise JobInfoError("duplicated pod")
        task_pods[pod.name] = pod

    def update_pod(self, pod: Pod) -> None:
        """Replace a known pod; raise JobInfoError if it is not known."""
        task_name = _check_annotations(pod, "failed to find taskName")
        task_pods = self.pods.get(task_name)
        if task_pods is None:
            raise JobInfoError(f"can not find task {task_name} in cache")
        if pod.name not in task_pods:
            raise JobInfoError(
                f"can not find pod <{pod.namespace}/{pod.name}> in cache"
            )
        task_pods[pod.name] = pod

    def delete_pod(self, pod: Pod) -> None:
        """Forget a pod, dropping its task once it has no pods left."""
        task_name = _check_annotations(pod, "failed to find taskName")
        task_pods = self.pods.get(task_name)
        if task_pods is not None:
            task_pods.pop(pod.name, None)
            if not task_pods:
                del self.pods[task_name]


@dataclass(frozen=True)
class Request:
    """A request for the job controller to act on a job."""

    namespace: str = ""
    job_name: str = ""
    task_name: str = ""
    event: str = ""
    exit_code: int = 0
    action: str = ""
    job_version: int = 0

    def __str__(self) -> str:
        return (
            f"Job: {self.namespace}/{self.job_name}, Task:{self.task_name}, "
            f"Event:{self.event}, ExitCode:{self.exit_code}, "
            f"Action:{self.action}, JobVersion: {self.job_version}"
        )