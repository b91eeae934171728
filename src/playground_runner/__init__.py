"""Sandboxed multi-language code execution service."""

__version__ = "0.1.0"

from .config import RunnerSettings, load_settings
from .coordinator import ExecutionCoordinator, parse_request, to_response
from .errors import (
    ImageUnavailableError,
    LaunchFailedError,
    PlaygroundError,
    UnsupportedLanguageError,
    ValidationError,
)
from .models import ExecutionRequest, ExecutionResult, JobState, SandboxJob
from .profiles import Language, LanguageProfile, ProfileRegistry
from .runtime import SandboxRuntime

__all__ = [
    "__version__",
    "RunnerSettings",
    "load_settings",
    "ExecutionCoordinator",
    "parse_request",
    "to_response",
    "PlaygroundError",
    "ValidationError",
    "UnsupportedLanguageError",
    "ImageUnavailableError",
    "LaunchFailedError",
    "ExecutionRequest",
    "ExecutionResult",
    "JobState",
    "SandboxJob",
    "Language",
    "LanguageProfile",
    "ProfileRegistry",
    "SandboxRuntime",
]
