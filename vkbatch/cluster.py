"""An in-memory store of cluster objects that the controllers act on."""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

from vkbatch.models import Job, Pod


class NotFoundError(LookupError):
    """The requested object does not exist."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f'{kind} "{name}" not found')
        self.kind = kind
        self.name = name


class AlreadyExistsError(Exception):
    """An object with the same namespace and name already exists."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f'{kind} "{name}" already exists')
        self.kind = kind
        self.name = name


@dataclass
class PersistentVolumeClaim:
    """A claim for storage made on behalf of a job."""

    name: str
    namespace: str = ""
    owner_uid: str = ""
    spec: dict = field(default_factory=dict)


@dataclass
class PodGroup:
    """The scheduling unit that gangs the pods of a job together."""

    name: str
    namespace: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    owner_uid: str = ""
    min_member: int = 0
    queue: str = ""
    min_resources: dict[str, float] = field(default_factory=dict)
    priority_class_name: str = ""


class InMemoryCluster:
    """Thread-safe store of jobs, pods, claims and pod groups.

    Objects are copied on the way in and on the way out, so callers never
    share state with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stores: dict[str, dict[tuple[str, str], Any]] = {
            "jobs": {},
            "pods": {},
            "persistentvolumeclaims": {},
            "podgroups": {},
        }

    def _create(self, kind: str, obj: Any) -> Any:
        key = (obj.namespace, obj.name)
        with self._lock:
            store = self._stores[kind]
            if key in store:
                raise AlreadyExistsError(kind, obj.name)
            stored = copy.deepcopy(obj)
            if hasattr(stored, "uid") and not stored.uid:
                stored.uid = str(uuid.uuid4())
            store[key] = stored
            return copy.deepcopy(stored)

    def _get(self, kind: str, namespace: str, name: str) -> Any:
        with self._lock:
            stored = self._stores[kind].get((namespace, name))
            if stored is None:
                raise NotFoundError(kind, name)
            return copy.deepcopy(stored)

    def _delete(self, kind: str, namespace: str, name: str) -> None:
        with self._lock:
            if self._stores[kind].pop((namespace, name), None) is None:
                raise NotFoundError(kind, name)

    def create_job(self, job: Job) -> Job:
        return self._create("jobs", job)

    def get_job(self, namespace: str, name: str) -> Job:
        return self._get("jobs", namespace, name)

    def update_job(self, job: Job) -> Job:
        """Replace a job's metadata and spec; its uid and status are kept."""
        with self._lock:
            store = self._stores["jobs"]
            stored = store.get((job.namespace, job.name))
            if stored is None:
                raise NotFoundError("jobs", job.name)
            updated = copy.deepcopy(job)
            updated.uid = stored.uid
            updated.status = stored.status
            store[(job.namespace, job.name)] = updated
            return copy.deepcopy(updated)

    def update_job_status(self, job: Job) -> Job:
        """Replace only the status of a stored job."""
        with self._lock:
            stored = self._stores["jobs"].get((job.namespace, job.name))
            if stored is None:
                raise NotFoundError("jobs", job.name)
            stored.status = copy.deepcopy(job.status)
            return copy.deepcopy(stored)

    def delete_job(self, namespace: str, name: str, uid: str | None = None) -> None:
        """Delete a job; with ``uid``, only if the stored job has that uid."""
        with self._lock:
            store = self._stores["jobs"]
            stored = store.get((namespace, name))
            if stored is None or (uid is not None and stored.uid != uid):
                raise NotFoundError("jobs", name)
            del store[(namespace, name)]

    def create_pod(self, pod: Pod) -> Pod:
        return self._create("pods", pod)

    def get_pod(self, namespace: str, name: str) -> Pod:
        return self._get("pods", namespace, name)

    def delete_pod(self, namespace: str, name: str) -> None:
        self._delete("pods", namespace, name)

    def list_pods(self, namespace: str | None = None) -> list[Pod]:
        """Pods in a namespace, or in all namespaces, ordered by key."""
        with self._lock:
            return [
                copy.deepcopy(pod)
                for key, pod in sorted(self._stores["pods"].items())
                if namespace is None or key[0] == namespace
            ]

    def create_pvc(self, pvc: PersistentVolumeClaim) -> PersistentVolumeClaim:
        return self._create("persistentvolumeclaims", pvc)

    def get_pvc(self, namespace: str, name: str) -> PersistentVolumeClaim:
        return self._get("persistentvolumeclaims", namespace, name)

    def create_pod_group(self, pod_group: PodGroup) -> PodGroup:
        return self._create("podgroups", pod_group)

    def get_pod_group(self, namespace: str, name: str) -> PodGroup:
        return self._get("podgroups", namespace, name)

    def delete_pod_group(self, namespace: str, name: str) -> None:
        self._delete("podgroups", namespace, name)