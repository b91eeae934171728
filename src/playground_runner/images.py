"""Process-lifetime cache of sandbox images known to be available."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .config import PullPolicy
from .engine import DockerEngine
from .errors import ImageUnavailableError
from .logging_utils import LOGGER_NAME, log_event

logger = logging.getLogger(LOGGER_NAME)

# Pull errors that will not go away by retrying.
_PERMANENT_MARKERS = (
    "not found",
    "manifest unknown",
    "pull access denied",
    "repository does not exist",
    "invalid reference format",
    "no matching manifest",
)


def is_permanent_pull_failure(detail: str) -> bool:
    lowered = detail.lower()
    return any(marker in lowered for marker in _PERMANENT_MARKERS)


class ImageCache:
    def __init__(
        self,
        engine: DockerEngine,
        policy: PullPolicy,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.policy = policy
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._verified: set[str] = set()
        self._failed: dict[str, tuple[float, str]] = {}
        self._image_locks: dict[str, threading.Lock] = {}

    def is_verified(self, image: str) -> bool:
        with self._lock:
            return image in self._verified

    def verified_images(self) -> list[str]:
        with self._lock:
            return sorted(self._verified)

    def ensure(self, image: str) -> None:
        """Make sure ``image`` exists locally, pulling it at most once per process.

        Raises ImageUnavailableError when the image cannot be obtained. Permanent
        failures are remembered for ``failure_ttl_s`` and re-raised without
        contacting the registry again.
        """

        if self.is_verified(image):
            return
        with self._lock_for(image):
            if self.is_verified(image):
                return
            recent = self._recent_failure(image)
            if recent is not None:
                raise ImageUnavailableError(image, recent)
            if not self.policy.always and self.engine.image_present(image):
                self._mark_verified(image, source="local")
                return
            self._pull(image)

    def _pull(self, image: str) -> None:
        detail = ""
        for attempt in range(1, self.policy.attempts + 1):
            result = self.engine.pull(image, timeout=self.policy.timeout_s)
            if result.returncode == 0:
                self._mark_verified(image, source="pull", attempts=attempt)
                return
            detail = result.detail
            if is_permanent_pull_failure(detail):
                with self._lock:
                    self._failed[image] = (self._clock(), detail)
                log_event(logger, "sandbox.image.unavailable", level=logging.ERROR, image=image, detail=detail)
                raise ImageUnavailableError(image, detail)
            log_event(
                logger,
                "sandbox.image.pull_retry",
                level=logging.WARNING,
                image=image,
                attempt=attempt,
                detail=detail,
            )
            if attempt < self.policy.attempts:
                self._sleep(self.policy.backoff_s * (2 ** (attempt - 1)))
        log_event(logger, "sandbox.image.unavailable", level=logging.ERROR, image=image, detail=detail)
        raise ImageUnavailableError(image, detail)

    def _mark_verified(self, image: str, **fields: object) -> None:
        with self._lock:
            self._verified.add(image)
            self._failed.pop(image, None)
        log_event(logger, "sandbox.image.verified", image=image, **fields)

    def _recent_failure(self, image: str) -> str | None:
        with self._lock:
            entry = self._failed.get(image)
            if entry is None:
                return None
            failed_at, detail = entry
            if self._clock() - failed_at >= self.policy.failure_ttl_s:
                del self._failed[image]
                return None
            return detail

    def _lock_for(self, image: str) -> threading.Lock:
        with self._lock:
            lock = self._image_locks.get(image)
            if lock is None:
                lock = threading.Lock()
                self._image_locks[image] = lock
            return lock
