"""Naming helpers for job pods and volume claims."""

from __future__ import annotations

import random
import string

from vkbatch.models import Pod

_RANDOM_ALPHABET = string.digits + string.ascii_lowercase
_random = random.SystemRandom()


def get_task_index(pod: Pod) -> str:
    """Return the index suffix of a pod named <job>-<task>-<index>, or ""."""
    parts = pod.name.split("-")
    if len(parts) >= 3:
        return parts[-1]
    return ""


def make_pod_name(job_name: str, task_name: str, index: int) -> str:
    return f"{job_name}-{task_name}-{index}"


def _random_str(length: int) -> str:
    return "".join(_random.choice(_RANDOM_ALPHABET) for _ in range(length))


def make_volume_claim_name(job_name: str) -> str:
    """Return a fresh volume claim name for a job."""
    return f"{job_name}-volume-{_random_str(12)}"