"""Error taxonomy for the playground runner."""

from __future__ import annotations


class PlaygroundError(RuntimeError):
    """Base error for runner failures."""

    kind = "internal"


class ValidationError(PlaygroundError, ValueError):
    """Raised when a request is rejected before any sandbox work."""

    kind = "validation"


class UnsupportedLanguageError(ValidationError):
    """Raised when a language has no registered profile."""

    def __init__(self, language: str) -> None:
        super().__init__(f"不支援的語言：{language}")
        self.language = language


class ImageUnavailableError(PlaygroundError):
    """Raised when a sandbox image cannot be made available locally."""

    kind = "image_unavailable"

    def __init__(self, image: str, detail: str) -> None:
        super().__init__(f"無法取得映像檔 {image}：{detail}")
        self.image = image
        self.detail = detail


class LaunchFailedError(PlaygroundError):
    """Raised when a sandbox could not be started or prepared."""

    kind = "launch_failed"
