# vkbatch

Building blocks for a batch job controller: job and pod models, a
thread-safe job cache, a rate-limited work queue, a TTL-based garbage
collector for finished jobs, and the actions that create and kill a job's
pods, volume claims and pod group. Cluster state lives in an in-memory
store, `InMemoryCluster`, so everything runs without a real cluster.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `vkbatch.models` – dataclasses `Job`, `JobSpec`, `JobStatus`, `JobState`,
  `TaskSpec`, `VolumeSpec`, `Pod`, `PodTemplate`, `Container`, and the
  `JobPhase` / `PodPhase` enums. `Job.deep_copy()` and `Pod.deep_copy()`
  return independent copies.
- `vkbatch.jobinfo` – `JobInfo`, a job together with its pods grouped by
  task name (`clone`, `set_job`, `add_pod`, `update_pod`, `delete_pod`),
  and `Request`, a unit of work for a controller. Pods must carry the
  task-spec and job-version annotations; otherwise `JobInfoError` is raised.
- `vkbatch.helpers` – `make_pod_name` (`<job>-<task>-<index>`),
  `get_task_index` and `make_volume_claim_name`
  (`<job>-volume-<12 random characters>`).
- `vkbatch.workqueue` – `RateLimitingQueue`, a deduplicating FIFO with
  `add`, `add_after`, `add_rate_limited` (exponential per-item backoff plus
  a token bucket), `forget`, `num_requeues`, `get`, `done` and `shut_down`.
- `vkbatch.cache` – `JobCache`, keyed by `"namespace/name"`, with
  `get`, `get_status`, `add`, `update`, `delete`, `add_pod`, `update_pod`,
  `delete_pod`, `task_completed`, `process_cleanup_job` and `run`; plus
  `job_key`, `job_key_by_name` and `job_key_by_req`. Deleted jobs stay in
  the cache until their pods are gone and the cleanup worker removes them.
- `vkbatch.cluster` – `InMemoryCluster`, which stores jobs, pods,
  `PersistentVolumeClaim`s and `PodGroup`s, copying objects in and out.
  It raises `NotFoundError` and `AlreadyExistsError`.
- `vkbatch.garbagecollector` – `GarbageCollector`, which deletes finished
  (Completed, Failed or Terminated) jobs once their
  `ttl_seconds_after_finished` has run out, and the functions
  `is_job_finished`, `needs_cleanup`, `job_finish_time`,
  `get_finish_and_expire_time` and `time_left`.
- `vkbatch.actions` – `JobActions`, with `create_job`, `kill_job` and the
  steps they use: `init_job_status`, `create_pod_group_if_not_exist`,
  `calc_pg_min_resources`, `create_job_io_if_not_exist`, `check_pvc_exist`,
  `create_pvc` and `delete_job_pod`. A kill that cannot delete every pod
  raises `ActionError`.

## Example

```python
from vkbatch.cache import JobCache, job_key
from vkbatch.models import Job

cache = JobCache()
job = Job(name="job1", namespace="test")
cache.add(job)

info = cache.get(job_key(job))
print(info.name, info.namespace)
```

When a lookup or update fails, the cache raises `CacheError`, for example
`failed to find job <test/job1>`.

## What the package does not do

- It does not talk to a real cluster; all state is held by
  `InMemoryCluster`.
- There is no controller loop that reads requests, picks a job state and
  applies policies, and there is no action that syncs a job's pods to its
  task replicas. Job plugins are only called through the `on_job_add` and
  `on_job_delete` hooks given to `JobActions`.
- There is no command-line program.