"""Docker CLI wrapper implementing the container contract used by the runtime."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO

from .config import DockerPolicy
from .errors import LaunchFailedError
from .logging_utils import LOGGER_NAME
from .models import PhaseOutcome, ResourceLimits

logger = logging.getLogger(LOGGER_NAME)

_POLL_INTERVAL_S = 0.2
_READ_CHUNK = 64 * 1024
_JOIN_TIMEOUT_S = 5.0


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def detail(self) -> str:
        text = (self.stderr or self.stdout).decode("utf-8", errors="replace").strip()
        return text or f"exit code {self.returncode}"


class DockerEngine:
    def __init__(self, policy: DockerPolicy) -> None:
        self.policy = policy

    def version(self) -> str:
        result = self._docker(["version", "--format", "{{.Server.Version}}"], timeout=self.policy.command_timeout_s)
        if result.returncode != 0:
            raise LaunchFailedError(f"docker 無法使用：{result.detail}")
        return result.stdout.decode("utf-8", errors="replace").strip()

    def image_present(self, image: str) -> bool:
        result = self._docker(["image", "inspect", image], timeout=self.policy.command_timeout_s)
        return result.returncode == 0

    def pull(self, image: str, timeout: float) -> CommandResult:
        return self._docker(["pull", image], timeout=timeout)

    def _start_args(self, name: str, image: str, limits: ResourceLimits, keepalive_s: int) -> list[str]:
        dcfg = self.policy
        tmpfs_opt = f"rw,nosuid,nodev,noexec,size={limits.tmpfs_size}"
        return [
            "run",
            "--detach",
            "--rm",
            "--name",
            name,
            "--label",
            f"{dcfg.container_prefix}.job={name}",
            "--network",
            "none",
            "--read-only",
            "--cap-drop",
            "ALL",
            "--security-opt",
            "no-new-privileges",
            "--pids-limit",
            str(limits.pids_limit),
            "--cpus",
            str(limits.cpus),
            "--memory",
            limits.memory,
            "--memory-swap",
            limits.memory_swap,
            "--user",
            dcfg.user,
            "--tmpfs",
            f"/tmp:{tmpfs_opt}",
            "--tmpfs",
            f"{dcfg.workdir}:{tmpfs_opt}",
            "--workdir",
            dcfg.workdir,
            "--entrypoint",
            "sleep",
            image,
            str(keepalive_s),
        ]

    def start(self, name: str, image: str, limits: ResourceLimits, keepalive_s: int) -> None:
        result = self._docker(
            self._start_args(name, image, limits, keepalive_s),
            timeout=self.policy.command_timeout_s,
        )
        if result.returncode != 0:
            raise LaunchFailedError(f"sandbox 啟動失敗：{result.detail}")

    def exec(
        self,
        name: str,
        argv: tuple[str, ...],
        stdin: bytes | None,
        deadline: float,
        cancel_event: threading.Event | None = None,
        max_output_bytes: int | None = None,
    ) -> PhaseOutcome:
        """Run ``argv`` in container ``name`` until it exits or is stopped.

        The exec client is killed when the deadline passes, when ``cancel_event``
        is set, or when stdout and stderr together exceed ``max_output_bytes``.
        Output past the cap is read and discarded, never buffered.
        """

        cmd = [self.policy.binary, "exec"]
        if stdin is not None:
            cmd.append("--interactive")
        cmd.extend([name, *argv])

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise LaunchFailedError(f"無法執行 docker：{exc}") from exc

        budget = _OutputBudget(max_output_bytes)
        stdout = bytearray()
        stderr = bytearray()
        workers = [
            threading.Thread(target=_drain, args=(process.stdout, stdout, budget), daemon=True),
            threading.Thread(target=_drain, args=(process.stderr, stderr, budget), daemon=True),
        ]
        if stdin is not None:
            workers.append(threading.Thread(target=_feed, args=(process.stdin, stdin), daemon=True))
        for worker in workers:
            worker.start()

        exit_code: int | None = None
        timed_out = False
        cancelled = False
        while not budget.exceeded.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            try:
                exit_code = process.wait(timeout=min(remaining, _POLL_INTERVAL_S))
                break
            except subprocess.TimeoutExpired:
                continue

        if exit_code is None:
            process.kill()
            process.wait()
        for worker in workers:
            worker.join(timeout=_JOIN_TIMEOUT_S)

        truncated = budget.exceeded.is_set()
        if truncated:
            logger.warning("exec 輸出超過上限，已中止 name=%s limit=%s", name, max_output_bytes)
        return PhaseOutcome(
            exit_code=exit_code,
            stdout=bytes(stdout),
            stderr=bytes(stderr),
            timed_out=timed_out,
            cancelled=cancelled,
            truncated=truncated,
        )

    def remove(self, name: str) -> None:
        result = self._docker(["rm", "--force", name], timeout=self.policy.command_timeout_s)
        if result.returncode != 0 and b"No such container" not in result.stderr:
            logger.warning("sandbox 清除失敗 name=%s detail=%s", name, result.detail)

    def _docker(self, args: list[str], *, timeout: float) -> CommandResult:
        cmd = [self.policy.binary, *args]
        try:
            completed = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise LaunchFailedError(f"找不到 docker 執行檔：{self.policy.binary}") from exc
        except subprocess.TimeoutExpired as exc:
            return CommandResult(124, exc.stdout or b"", (exc.stderr or b"") + b"docker command timeout")
        return CommandResult(int(completed.returncode), completed.stdout or b"", completed.stderr or b"")


class _OutputBudget:
    """Byte budget shared by the stdout and stderr readers of one exec."""

    def __init__(self, limit: int | None) -> None:
        self.limit = limit
        self.used = 0
        self.exceeded = threading.Event()
        self._lock = threading.Lock()

    def take(self, size: int) -> int:
        if self.limit is None:
            return size
        with self._lock:
            allowed = max(0, min(size, self.limit - self.used))
            self.used += allowed
            if allowed < size:
                self.exceeded.set()
            return allowed


def _drain(pipe: IO[bytes], sink: bytearray, budget: _OutputBudget) -> None:
    try:
        while True:
            chunk = pipe.read1(_READ_CHUNK)
            if not chunk:
                break
            keep = budget.take(len(chunk))
            if keep:
                sink.extend(chunk[:keep])
    finally:
        pipe.close()


def _feed(pipe: IO[bytes], data: bytes) -> None:
    try:
        pipe.write(data)
        pipe.close()
    except BrokenPipeError:
        logger.debug("exec client 已結束，stdin 未完整寫入")
