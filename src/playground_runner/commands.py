"""Translate a language profile and user code into a sandbox job.

User content never reaches a shell. Program text travels either as one whole
argv element or as raw bytes on a phase's stdin, and the run input is bound
to the final phase's stdin exactly as given.
"""

from __future__ import annotations

import uuid
from posixpath import join as posix_join

from .config import DockerPolicy
from .models import ResourceLimits, SandboxJob, SandboxPhase
from .profiles import CODE_TOKEN, SOURCE_TOKEN, LanguageProfile

PHASE_WRITE_SOURCE = "write_source"
PHASE_BUILD = "build"
PHASE_RUN = "run"


def resource_limits(policy: DockerPolicy) -> ResourceLimits:
    return ResourceLimits(
        memory=policy.memory,
        memory_swap=policy.memory_swap,
        cpus=policy.cpus,
        pids_limit=policy.pids_limit,
        tmpfs_size=policy.tmpfs_size,
    )


def build_job(
    profile: LanguageProfile,
    code: str,
    input_text: str | None = None,
    *,
    limits: ResourceLimits,
    timeout_s: int,
    workdir: str = "/workspace",
    max_output_bytes: int = 1024 * 1024,
    job_id: str | None = None,
) -> SandboxJob:
    phases: list[SandboxPhase] = []
    source_path: str | None = None

    if profile.source_file:
        source_path = posix_join(workdir, profile.source_file)
        phases.append(
            SandboxPhase(
                name=PHASE_WRITE_SOURCE,
                argv=("dd", f"of={source_path}", "status=none"),
                stdin=code.encode("utf-8"),
            )
        )
    if profile.build:
        phases.append(SandboxPhase(name=PHASE_BUILD, argv=_render(profile.build, code, source_path)))

    stdin = input_text.encode("utf-8") if input_text else None
    phases.append(SandboxPhase(name=PHASE_RUN, argv=_render(profile.run, code, source_path), stdin=stdin))

    return SandboxJob(
        job_id=job_id or uuid.uuid4().hex,
        language=profile.id,
        image=profile.image,
        phases=tuple(phases),
        limits=limits,
        timeout_s=timeout_s,
        max_output_bytes=max_output_bytes,
    )


def _render(template: tuple[str, ...], code: str, source_path: str | None) -> tuple[str, ...]:
    argv: list[str] = []
    for token in template:
        if token == CODE_TOKEN:
            argv.append(code)
        elif token == SOURCE_TOKEN:
            if source_path is None:
                raise ValueError("template 使用 source 但 profile 沒有 source_file")
            argv.append(source_path)
        else:
            argv.append(token)
    return tuple(argv)
