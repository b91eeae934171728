"""Sandbox runtime: image readiness, admission and one container per job."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

from .commands import PHASE_RUN, PHASE_WRITE_SOURCE
from .engine import DockerEngine
from .errors import ImageUnavailableError, LaunchFailedError, PlaygroundError
from .images import ImageCache
from .logging_utils import LOGGER_NAME, log_event
from .models import ExecutionResult, JobState, SandboxJob

logger = logging.getLogger(LOGGER_NAME)

TIMEOUT_EXIT_CODE = 124
_ADMISSION_POLL_S = 0.2


class SandboxRuntime:
    def __init__(
        self,
        engine: DockerEngine,
        images: ImageCache,
        *,
        max_concurrency: int = 4,
        admission_timeout_s: float | None = None,
        keepalive_grace_s: int = 30,
        container_prefix: str = "playground",
    ) -> None:
        self.engine = engine
        self.images = images
        self.max_concurrency = max(1, max_concurrency)
        self.admission_timeout_s = admission_timeout_s
        self.keepalive_grace_s = keepalive_grace_s
        self.container_prefix = container_prefix
        self._gate = threading.BoundedSemaphore(value=self.max_concurrency)
        self._inflight = 0
        self._inflight_lock = threading.Lock()

    @property
    def inflight(self) -> int:
        with self._inflight_lock:
            return self._inflight

    def run(self, job: SandboxJob, cancel_event: threading.Event | None = None) -> ExecutionResult:
        """Run every phase of ``job`` in a fresh container and collect the result.

        Raises ImageUnavailableError or LaunchFailedError for engine faults.
        Timeouts, cancellation and non-zero exits come back as results.
        """

        self._transition(job, JobState.PENDING)
        self._transition(job, JobState.IMAGE_VERIFYING)
        try:
            self.images.ensure(job.image)
        except ImageUnavailableError:
            self._transition(job, JobState.IMAGE_UNAVAILABLE)
            raise
        except PlaygroundError:
            self._transition(job, JobState.LAUNCH_FAILED)
            raise

        if not self._admit(cancel_event):
            if cancel_event is not None and cancel_event.is_set():
                self._transition(job, JobState.KILLED)
                return ExecutionResult(job_id=job.job_id, status=JobState.KILLED, language=job.language)
            self._transition(job, JobState.LAUNCH_FAILED)
            raise LaunchFailedError("runner busy, please retry")
        try:
            return self._run_admitted(job, cancel_event)
        finally:
            self._release()

    def health_snapshot(self) -> dict[str, Any]:
        docker: dict[str, Any] = {"available": False, "version": None, "error": None}
        try:
            docker["version"] = self.engine.version()
            docker["available"] = True
        except PlaygroundError as exc:
            docker["error"] = str(exc)
        inflight = self.inflight
        return {
            "docker": docker,
            "images": {"verified": self.images.verified_images()},
            "concurrency": {
                "max": self.max_concurrency,
                "inflight": inflight,
                "utilization": round(inflight / self.max_concurrency, 4),
            },
        }

    def container_name(self, job: SandboxJob) -> str:
        return f"{self.container_prefix}-{job.job_id[:12]}"

    def _run_admitted(self, job: SandboxJob, cancel_event: threading.Event | None) -> ExecutionResult:
        name = self.container_name(job)
        stdout: list[bytes] = []
        stderr: list[bytes] = []
        exit_code: int | None = None
        truncated = False
        state = JobState.LAUNCH_FAILED
        start = time.monotonic()
        try:
            if cancel_event is not None and cancel_event.is_set():
                state = JobState.KILLED
                return ExecutionResult(job_id=job.job_id, status=state, language=job.language)

            self.engine.start(name, job.image, job.limits, keepalive_s=job.timeout_s + self.keepalive_grace_s)
            self._transition(job, JobState.RUNNING, container=name)
            deadline = time.monotonic() + job.timeout_s
            output_left = job.max_output_bytes

            outcome_state = JobState.COMPLETED
            for phase in job.phases:
                outcome = self.engine.exec(
                    name,
                    phase.argv,
                    phase.stdin,
                    deadline,
                    cancel_event,
                    max_output_bytes=output_left,
                )
                if phase.name == PHASE_WRITE_SOURCE:
                    if outcome.exit_code != 0 and not (outcome.timed_out or outcome.cancelled):
                        detail = outcome.stderr.decode("utf-8", errors="replace").strip()
                        raise LaunchFailedError(f"source 寫入失敗：{detail or outcome.exit_code}")
                else:
                    stdout.append(outcome.stdout)
                    stderr.append(outcome.stderr)
                    output_left = max(0, output_left - len(outcome.stdout) - len(outcome.stderr))

                if outcome.timed_out:
                    outcome_state = JobState.TIMED_OUT
                    exit_code = TIMEOUT_EXIT_CODE
                    break
                if outcome.cancelled or outcome.truncated:
                    outcome_state = JobState.KILLED
                    exit_code = None
                    truncated = outcome.truncated
                    break
                exit_code = outcome.exit_code
                if exit_code != 0 and phase.name != PHASE_RUN:
                    break

            state = outcome_state
            return ExecutionResult(
                job_id=job.job_id,
                status=state,
                stdout=b"".join(stdout),
                stderr=b"".join(stderr),
                exit_code=exit_code,
                duration_ms=int((time.monotonic() - start) * 1000),
                language=job.language,
                truncated=truncated,
            )
        finally:
            self._teardown(name)
            self._transition(
                job,
                state,
                container=name,
                exit_code=exit_code,
                truncated=truncated,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

    def _admit(self, cancel_event: threading.Event | None) -> bool:
        started = time.monotonic()
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return False
            if self._gate.acquire(timeout=_ADMISSION_POLL_S):
                with self._inflight_lock:
                    self._inflight += 1
                return True
            if self.admission_timeout_s is not None and time.monotonic() - started >= self.admission_timeout_s:
                return False

    def _release(self) -> None:
        with self._inflight_lock:
            self._inflight -= 1
        self._gate.release()

    def _teardown(self, name: str) -> None:
        try:
            self.engine.remove(name)
        except PlaygroundError:
            logger.exception("sandbox 清除失敗 name=%s", name)

    def _transition(self, job: SandboxJob, state: JobState, **fields: Any) -> None:
        log_event(
            logger,
            "sandbox.job.state",
            job_id=job.job_id,
            language=job.language,
            image=job.image,
            state=state.value,
            **fields,
        )
