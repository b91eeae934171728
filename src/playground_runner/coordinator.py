"""Execution coordinator: validate, build, run and assemble results."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from typing import Any, Mapping

from .commands import build_job, resource_limits
from .config import RunnerSettings
from .errors import PlaygroundError, ValidationError
from .logging_utils import LOGGER_NAME, log_event
from .models import ExecuteResponse, ExecutionError, ExecutionRequest, ExecutionResult, JobState
from .profiles import ProfileRegistry
from .runtime import SandboxRuntime

logger = logging.getLogger(LOGGER_NAME)

_FAULT_STATES = {
    "image_unavailable": JobState.IMAGE_UNAVAILABLE,
    "launch_failed": JobState.LAUNCH_FAILED,
}


def parse_request(payload: Mapping[str, Any]) -> ExecutionRequest:
    if not isinstance(payload, Mapping):
        raise ValidationError("request body 必須是 JSON object")

    language = payload.get("language")
    code = payload.get("code")
    input_text = payload.get("input")
    timeout_s = payload.get("timeout_s")
    request_id = payload.get("request_id")

    if not isinstance(language, str):
        raise ValidationError("language 必須是字串")
    if not isinstance(code, str):
        raise ValidationError("code 必須是字串")
    if input_text is not None and not isinstance(input_text, str):
        raise ValidationError("input 必須是字串")
    if timeout_s is not None and (isinstance(timeout_s, bool) or not isinstance(timeout_s, int)):
        raise ValidationError("timeout_s 必須是整數")
    if request_id is not None and not isinstance(request_id, str):
        raise ValidationError("request_id 必須是字串")

    return ExecutionRequest(
        language=language,
        code=code,
        input=input_text,
        timeout_s=timeout_s,
        request_id=request_id,
    )


class ExecutionCoordinator:
    def __init__(self, settings: RunnerSettings, registry: ProfileRegistry, runtime: SandboxRuntime) -> None:
        self.settings = settings
        self.registry = registry
        self.runtime = runtime

    def execute(self, request: ExecutionRequest, cancel_event: threading.Event | None = None) -> ExecutionResult:
        """Run one request to completion.

        Raises ValidationError before any sandbox work when the request is
        invalid. Engine faults are returned inside ``ExecutionResult.error``.
        """

        profile = self.registry.resolve(request.language)
        timeout_s = self._validate(request)
        request_id = (request.request_id or "").strip() or uuid.uuid4().hex

        job = build_job(
            profile,
            request.code,
            request.input,
            limits=resource_limits(self.settings.docker),
            timeout_s=timeout_s,
            workdir=self.settings.docker.workdir,
            max_output_bytes=self.settings.limits.max_output_bytes,
        )
        log_event(
            logger,
            "sandbox.run.start",
            request_id=request_id,
            job_id=job.job_id,
            language=profile.id,
            timeout_s=timeout_s,
            code_bytes=len(request.code.encode("utf-8")),
            input_bytes=len((request.input or "").encode("utf-8")),
        )

        try:
            result = self.runtime.run(job, cancel_event)
        except PlaygroundError as exc:
            log_event(
                logger,
                "sandbox.run.fault",
                level=logging.ERROR,
                request_id=request_id,
                job_id=job.job_id,
                kind=exc.kind,
                detail=str(exc),
            )
            result = ExecutionResult(
                job_id=job.job_id,
                status=_FAULT_STATES.get(exc.kind, JobState.LAUNCH_FAILED),
                language=profile.id,
                error=ExecutionError(kind=exc.kind, message=str(exc)),
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("sandbox run 發生未預期錯誤 request_id=%s job_id=%s", request_id, job.job_id)
            result = ExecutionResult(
                job_id=job.job_id,
                status=JobState.LAUNCH_FAILED,
                language=profile.id,
                error=ExecutionError(kind="internal", message=f"runner internal error: {type(exc).__name__}"),
            )

        result = replace(result, request_id=request_id)
        log_event(
            logger,
            "sandbox.run.finish",
            request_id=request_id,
            job_id=result.job_id,
            status=result.status.value,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            truncated=result.truncated,
            duration_ms=result.duration_ms,
            stdout_bytes=len(result.stdout),
            stderr_bytes=len(result.stderr),
        )
        return result

    def _validate(self, request: ExecutionRequest) -> int:
        limits = self.settings.limits
        if not request.code.strip():
            raise ValidationError("code 不可為空")
        if "\x00" in request.code:
            raise ValidationError("code 不可包含 NUL")
        if len(request.code.encode("utf-8")) > limits.max_code_bytes:
            raise ValidationError("code 大小超過上限")
        if request.input and len(request.input.encode("utf-8")) > limits.max_input_bytes:
            raise ValidationError("input 大小超過上限")

        timeout_s = request.timeout_s if request.timeout_s is not None else limits.default_timeout_s
        if timeout_s <= 0 or timeout_s > limits.max_timeout_s:
            raise ValidationError(f"timeout_s 必須介於 1~{limits.max_timeout_s}")
        return timeout_s


def to_response(result: ExecutionResult) -> ExecuteResponse:
    return {
        "job_id": result.job_id,
        "request_id": result.request_id,
        "language": result.language,
        "status": result.status.value,
        "exit_code": result.exit_code,
        "stdout": result.stdout.decode("utf-8", errors="replace"),
        "stderr": result.stderr.decode("utf-8", errors="replace"),
        "timed_out": result.timed_out,
        "truncated": result.truncated,
        "duration_ms": result.duration_ms,
        "error": {"kind": result.error.kind, "message": result.error.message} if result.error else None,
    }
