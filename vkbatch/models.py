"""Data types for batch jobs, their tasks and their pods."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import datetime

JOB_NAME_KEY = "volcano.sh/job-name"
TASK_SPEC_KEY = "volcano.sh/task-spec"
JOB_VERSION_KEY = "volcano.sh/job-version"


class JobPhase(str, enum.Enum):
    """Lifecycle phase of a batch job."""

    PENDING = "Pending"
    ABORTING = "Aborting"
    ABORTED = "Aborted"
    RUNNING = "Running"
    RESTARTING = "Restarting"
    COMPLETING = "Completing"
    COMPLETED = "Completed"
    TERMINATING = "Terminating"
    TERMINATED = "Terminated"
    FAILED = "Failed"
    INQUEUE = "Inqueue"

    def __str__(self) -> str:
        return self.value


class PodPhase(str, enum.Enum):
    """Lifecycle phase of a pod."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    def __str__(self) -> str:
        return self.value


@dataclass
class Container:
    """A container with its resource requests and limits."""

    name: str = ""
    image: str = ""
    requests: dict[str, float] = field(default_factory=dict)
    limits: dict[str, float] = field(default_factory=dict)


@dataclass
class PodTemplate:
    """Template from which the pods of a task are made."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    containers: list[Container] = field(default_factory=list)
    priority_class_name: str = ""


@dataclass
class Pod:
    """A pod as seen by the controllers."""

    name: str
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    phase: PodPhase = PodPhase.PENDING
    containers: list[Container] = field(default_factory=list)
    priority_class_name: str = ""
    node_name: str = ""
    owner_uid: str = ""
    deletion_timestamp: datetime | None = None

    def deep_copy(self) -> Pod:
        """Return an independent copy of this pod."""
        return copy.deepcopy(self)


@dataclass
class TaskSpec:
    """A named group of identical pods within a job."""

    name: str = ""
    replicas: int = 0
    template: PodTemplate = field(default_factory=PodTemplate)


@dataclass
class VolumeSpec:
    """A volume mounted into every pod of a job."""

    mount_path: str = ""
    volume_claim_name: str = ""
    volume_claim: dict | None = None


@dataclass
class JobSpec:
    """Desired shape of a job."""

    tasks: list[TaskSpec] = field(default_factory=list)
    volumes: list[VolumeSpec] = field(default_factory=list)
    min_available: int = 0
    queue: str = ""
    priority_class_name: str = ""
    ttl_seconds_after_finished: int | None = None
    plugins: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class JobState:
    """Current phase of a job and when it was entered."""

    phase: JobPhase | None = None
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = None


@dataclass
class JobStatus:
    """Observed state of a job and counts of its pods."""

    state: JobState = field(default_factory=JobState)
    pending: int = 0
    running: int = 0
    succeeded: int = 0
    failed: int = 0
    terminating: int = 0
    version: int = 0
    min_available: int = 0
    retry_count: int = 0
    controlled_resources: dict[str, str] = field(default_factory=dict)


@dataclass
class Job:
    """A batch job."""

    name: str
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    spec: JobSpec = field(default_factory=JobSpec)
    status: JobStatus = field(default_factory=JobStatus)
    deletion_timestamp: datetime | None = None

    def deep_copy(self) -> Job:
        """Return an independent copy of this job."""
        return copy.deepcopy(self)