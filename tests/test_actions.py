from datetime import datetime, timezone

import pytest

from vkbatch.actions import ActionError, JobActions
from vkbatch.cache import CacheError, JobCache
from vkbatch.cluster import InMemoryCluster, NotFoundError, PodGroup
from vkbatch.jobinfo import JobInfo
from vkbatch.models import (
    JOB_NAME_KEY,
    JOB_VERSION_KEY,
    TASK_SPEC_KEY,
    Container,
    Job,
    JobPhase,
    JobSpec,
    PodPhase,
    PodTemplate,
    Pod,
    TaskSpec,
    VolumeSpec,
)

NAMESPACE = "test"


def build_pod(name, phase, namespace=NAMESPACE):
    return Pod(
        name=name,
        namespace=namespace,
        annotations={
            JOB_NAME_KEY: "job1",
            TASK_SPEC_KEY: "task1",
            JOB_VERSION_KEY: "1",
        },
        phase=phase,
    )


def setup(job, pods=()):
    cluster = InMemoryCluster()
    cache = JobCache()
    for pod in pods:
        cluster.create_pod(pod)
    stored = cluster.create_job(job)
    cache.add(stored)
    return cluster, cache, stored


class _FailingPodDeletes:
    """Cluster stand-in whose pod deletions always fail."""

    def __init__(self, inner):
        self._inner = inner

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def delete_pod(self, namespace, name):
        raise RuntimeError("deletion refused")


def test_kill_job_deletes_pods_and_bumps_version():
    pods = [build_pod("pod1", PodPhase.RUNNING), build_pod("pod2", PodPhase.RUNNING)]
    cluster, cache, job = setup(Job(name="job1", namespace=NAMESPACE), pods)
    cluster.create_pod_group(PodGroup(name="job1", namespace=NAMESPACE))
    deleted = []
    actions = JobActions(cluster, cache, on_job_delete=deleted.append)
    info = JobInfo(
        namespace=NAMESPACE,
        name="jobinfo1",
        job=job,
        pods={"task1": {p.name: p for p in pods}},
    )

    actions.kill_job(info, frozenset(), None)

    assert cluster.list_pods(NAMESPACE) == []
    stored = cluster.get_job(NAMESPACE, "job1")
    assert stored.status.version == 1
    assert stored.status.terminating == 2
    assert stored.status.running == 0
    with pytest.raises(NotFoundError):
        cluster.get_pod_group(NAMESPACE, "job1")
    assert [j.name for j in deleted] == ["job1"]
    assert cache.get("test/job1").job.status.version == 1


def test_kill_job_retains_pods_in_retained_phases():
    pods = [build_pod("pod1", PodPhase.SUCCEEDED), build_pod("pod2", PodPhase.RUNNING)]
    cluster, cache, job = setup(Job(name="job1", namespace=NAMESPACE), pods)
    actions = JobActions(cluster, cache)
    info = JobInfo(job=job, pods={"task1": {p.name: p for p in pods}})

    actions.kill_job(info, {PodPhase.SUCCEEDED}, None)

    assert [p.name for p in cluster.list_pods(NAMESPACE)] == ["pod1"]
    status = cluster.get_job(NAMESPACE, "job1").status
    assert status.succeeded == 1
    assert status.terminating == 1


def test_kill_job_update_status_sets_transition_time():
    cluster, cache, job = setup(Job(name="job1", namespace=NAMESPACE))
    actions = JobActions(cluster, cache)

    def to_aborted(status):
        status.state.phase = JobPhase.ABORTED
        return True

    actions.kill_job(JobInfo(job=job), frozenset(), to_aborted)

    state = cluster.get_job(NAMESPACE, "job1").status.state
    assert state.phase is JobPhase.ABORTED
    assert state.last_transition_time is not None


def test_kill_job_skips_terminating_job():
    pods = [build_pod("pod1", PodPhase.RUNNING)]
    job = Job(
        name="job1",
        namespace=NAMESPACE,
        deletion_timestamp=datetime(2020, 1, 1, tzinfo=timezone.utc),
    )
    cluster, cache, stored = setup(job, pods)
    actions = JobActions(cluster, cache)

    actions.kill_job(JobInfo(job=stored, pods={"task1": {"pod1": pods[0]}}), set(), None)

    assert [p.name for p in cluster.list_pods(NAMESPACE)] == ["pod1"]
    assert cluster.get_job(NAMESPACE, "job1").status.version == 0


def test_kill_job_missing_from_cache_raises():
    cluster = InMemoryCluster()
    job = cluster.create_job(Job(name="job1", namespace=NAMESPACE))
    actions = JobActions(cluster, JobCache())
    with pytest.raises(CacheError):
        actions.kill_job(JobInfo(job=job), set(), None)


def test_create_job_initialises_status_and_pod_group():
    cluster, cache, job = setup(
        Job(name="job1", namespace=NAMESPACE, spec=JobSpec(min_available=3, queue="q1"))
    )
    added = []
    actions = JobActions(cluster, cache, on_job_add=added.append)

    actions.create_job(JobInfo(namespace=NAMESPACE, name="jobinfo1", job=job), None)

    stored = cluster.get_job(NAMESPACE, "job1")
    assert stored.status.state.phase is JobPhase.PENDING
    assert stored.status.min_available == 3
    group = cluster.get_pod_group(NAMESPACE, "job1")
    assert group.min_member == 3
    assert group.queue == "q1"
    assert group.owner_uid == job.uid
    assert [j.name for j in added] == ["job1"]


def test_create_job_records_volume_resources():
    job = Job(
        name="job1",
        namespace=NAMESPACE,
        spec=JobSpec(volumes=[VolumeSpec(volume_claim_name="pvc1")]),
    )
    cluster, cache, stored = setup(job)
    actions = JobActions(cluster, cache)

    actions.create_job(JobInfo(job=stored), None)

    resources = cluster.get_job(NAMESPACE, "job1").status.controlled_resources
    assert resources == {"volume-emptyDir-pvc1": "pvc1"}


def test_create_job_not_in_cache_raises_and_records():
    cluster = InMemoryCluster()
    job = cluster.create_job(Job(name="job1", namespace=NAMESPACE))
    events = []
    actions = JobActions(
        cluster, JobCache(), recorder=lambda *args: events.append(args)
    )
    with pytest.raises(CacheError):
        actions.create_job(JobInfo(job=job), None)
    assert events[0][2] == "JobStatusError"


def test_create_job_io_with_named_volume():
    job = Job(
        name="job1",
        namespace=NAMESPACE,
        spec=JobSpec(volumes=[VolumeSpec(volume_claim_name="pvc1")]),
    )
    actions = JobActions(InMemoryCluster(), JobCache())

    result = actions.create_job_io_if_not_exist(job)

    assert len(result.spec.volumes) == 1
    assert result.status.controlled_resources == {"volume-emptyDir-pvc1": "pvc1"}


def test_create_job_io_generates_claim_name_and_claim():
    cluster = InMemoryCluster()
    job = cluster.create_job(
        Job(
            name="job1",
            namespace=NAMESPACE,
            spec=JobSpec(
                volumes=[VolumeSpec(mount_path="/data", volume_claim={"size": "1Gi"})]
            ),
        )
    )
    actions = JobActions(cluster, JobCache())

    result = actions.create_job_io_if_not_exist(job)

    name = result.spec.volumes[0].volume_claim_name
    assert name.startswith("job1-volume-")
    assert len(name) == len("job1-volume-") + 12
    assert cluster.get_pvc(NAMESPACE, name).spec == {"size": "1Gi"}
    assert result.status.controlled_resources == {"volume-pvc-" + name: name}
    assert cluster.get_job(NAMESPACE, "job1").spec.volumes[0].volume_claim_name == name


def test_create_job_io_existing_claim_is_not_recorded():
    cluster = InMemoryCluster()
    actions = JobActions(cluster, JobCache())
    owner = Job(name="other", namespace=NAMESPACE)
    actions.create_pvc(owner, "pvc1", {})
    job = Job(
        name="job1",
        namespace=NAMESPACE,
        spec=JobSpec(volumes=[VolumeSpec(volume_claim_name="pvc1")]),
    )

    result = actions.create_job_io_if_not_exist(job)

    assert result.status.controlled_resources == {}


def test_create_pvc():
    cluster = InMemoryCluster()
    actions = JobActions(cluster, JobCache())
    job = Job(name="job1", namespace=NAMESPACE, uid="uid-1")

    actions.create_pvc(job, "pvc1", {"volumeName": "vol1"})

    pvc = cluster.get_pvc(NAMESPACE, "pvc1")
    assert pvc.spec == {"volumeName": "vol1"}
    assert pvc.owner_uid == "uid-1"
    assert actions.check_pvc_exist(job, "pvc1") is True
    assert actions.check_pvc_exist(job, "pvc2") is False


def test_create_pod_group_if_not_exist():
    cluster = InMemoryCluster()
    actions = JobActions(cluster, JobCache())
    job = Job(name="job1", namespace=NAMESPACE)

    actions.create_pod_group_if_not_exist(job)
    actions.create_pod_group_if_not_exist(job)

    assert cluster.get_pod_group(NAMESPACE, "job1").name == "job1"


def test_delete_job_pod():
    cluster = InMemoryCluster()
    cluster.create_pod(build_pod("job1-task1-0", PodPhase.RUNNING))
    cluster.create_pod(build_pod("job1-task1-1", PodPhase.RUNNING))
    actions = JobActions(cluster, JobCache())

    actions.delete_job_pod("job1", build_pod("job1-task1-0", PodPhase.RUNNING))

    with pytest.raises(NotFoundError):
        cluster.get_pod(NAMESPACE, "job1-task1-0")
    assert [p.name for p in cluster.list_pods(NAMESPACE)] == ["job1-task1-1"]


def test_delete_job_pod_already_gone():
    cluster = InMemoryCluster()
    cluster.create_pod(build_pod("keep", PodPhase.RUNNING))
    actions = JobActions(cluster, JobCache())

    actions.delete_job_pod("job1", build_pod("missing", PodPhase.RUNNING))

    assert [p.name for p in cluster.list_pods(NAMESPACE)] == ["keep"]


def _task(name, replicas, cpu, priority_class=""):
    return TaskSpec(
        name=name,
        replicas=replicas,
        template=PodTemplate(
            containers=[Container(name="c", requests={"cpu": cpu, "memory": 100})],
            priority_class_name=priority_class,
        ),
    )


def test_calc_pg_min_resources_sums_first_min_available_pods():
    job = Job(
        name="job1",
        spec=JobSpec(
            min_available=2, tasks=[_task("task-1", 1, 1), _task("task-2", 1, 1)]
        ),
    )
    actions = JobActions(InMemoryCluster(), JobCache())

    assert actions.calc_pg_min_resources(job) == {"cpu": 2, "memory": 200}


def test_calc_pg_min_resources_prefers_higher_priority():
    job = Job(
        name="job1",
        spec=JobSpec(
            min_available=1,
            tasks=[_task("worker", 2, 1, "worker-pri"), _task("master", 1, 4, "master-pri")],
        ),
    )
    actions = JobActions(
        InMemoryCluster(),
        JobCache(),
        priority_classes={"master-pri": 100, "worker-pri": 1},
    )

    assert actions.calc_pg_min_resources(job) == {"cpu": 4, "memory": 100}


def test_init_job_status_leaves_existing_phase():
    cluster, cache, job = setup(Job(name="job1", namespace=NAMESPACE))
    job.status.state.phase = JobPhase.RUNNING
    actions = JobActions(cluster, cache)

    actions.init_job_status(job)

    assert cluster.get_job(NAMESPACE, "job1").status.state.phase is None
    assert job.status.state.phase is JobPhase.RUNNING


def test_kill_job_reports_failed_pod_deletions():
    pods = [build_pod("pod1", PodPhase.SUCCEEDED), build_pod("pod2", PodPhase.RUNNING)]
    cluster, cache, job = setup(Job(name="job1", namespace=NAMESPACE), pods)
    actions = JobActions(_FailingPodDeletes(cluster), cache)
    info = JobInfo(job=job, pods={"task1": {p.name: p for p in pods}})

    with pytest.raises(ActionError, match="failed to kill 1 pods of 2"):
        actions.kill_job(info, {PodPhase.SUCCEEDED}, None)

    assert sorted(p.name for p in cluster.list_pods(NAMESPACE)) == ["pod1", "pod2"]
    assert cluster.get_job(NAMESPACE, "job1").status.version == 0