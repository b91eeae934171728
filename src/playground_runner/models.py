"""Typed models for the playground runner."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TypedDict


class JobState(str, Enum):
    PENDING = "pending"
    IMAGE_VERIFYING = "image_verifying"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    KILLED = "killed"
    IMAGE_UNAVAILABLE = "image_unavailable"
    LAUNCH_FAILED = "launch_failed"


@dataclass(frozen=True)
class ExecutionRequest:
    language: str
    code: str
    input: str | None = None
    timeout_s: int | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class ResourceLimits:
    memory: str
    memory_swap: str
    cpus: float
    pids_limit: int
    tmpfs_size: str


@dataclass(frozen=True)
class SandboxPhase:
    """One argv executed inside the job's container."""

    name: str
    argv: tuple[str, ...]
    stdin: bytes | None = None


@dataclass(frozen=True)
class SandboxJob:
    job_id: str
    language: str
    image: str
    phases: tuple[SandboxPhase, ...]
    limits: ResourceLimits
    timeout_s: int
    max_output_bytes: int = 1024 * 1024


@dataclass(frozen=True)
class PhaseOutcome:
    """Raw result of one ``exec`` call against the container engine."""

    exit_code: int | None
    stdout: bytes
    stderr: bytes
    timed_out: bool = False
    cancelled: bool = False
    truncated: bool = False


@dataclass(frozen=True)
class ExecutionError:
    kind: str
    message: str


@dataclass(frozen=True)
class ExecutionResult:
    job_id: str
    status: JobState
    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: int | None = None
    duration_ms: int = 0
    request_id: str | None = None
    language: str | None = None
    truncated: bool = False
    error: ExecutionError | None = None

    @property
    def timed_out(self) -> bool:
        return self.status is JobState.TIMED_OUT

    @property
    def ok(self) -> bool:
        return self.status is JobState.COMPLETED and self.exit_code == 0


class ErrorPayload(TypedDict):
    kind: str
    message: str


class ExecuteResponse(TypedDict):
    job_id: str
    request_id: str | None
    language: str | None
    status: str
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool
    truncated: bool
    duration_ms: int
    error: ErrorPayload | None
