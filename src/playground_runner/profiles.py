"""Language profile registry.

Each registered language maps to a fixed recipe: the image to run in, an
optional build step and the run step. Steps are argv templates; an element
equal to ``CODE_TOKEN`` is replaced by the whole program text and an element
equal to ``SOURCE_TOKEN`` by the materialized source path. Nothing else is
substituted.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from .errors import UnsupportedLanguageError

CODE_TOKEN = "{code}"
SOURCE_TOKEN = "{source}"


class Language(str, Enum):
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    JAVA = "java"


_ALIASES = {
    "py": Language.PYTHON,
    "python3": Language.PYTHON,
    "js": Language.JAVASCRIPT,
    "node": Language.JAVASCRIPT,
}


@dataclass(frozen=True)
class LanguageProfile:
    language: Language
    image: str
    run: tuple[str, ...]
    build: tuple[str, ...] | None = None
    source_file: str | None = None

    def __post_init__(self) -> None:
        if not self.run:
            raise ValueError(f"{self.language.value}: run step 不可為空")
        steps = [self.run] + ([self.build] if self.build else [])
        if self.source_file:
            if "/" in self.source_file or self.source_file in {"", ".", ".."}:
                raise ValueError(f"{self.language.value}: source_file 必須是單一檔名")
            if any(CODE_TOKEN in step for step in steps):
                raise ValueError(f"{self.language.value}: 有 source_file 時不可使用 {CODE_TOKEN}")
        else:
            if self.build:
                raise ValueError(f"{self.language.value}: build step 需要 source_file")
            if any(SOURCE_TOKEN in step for step in steps):
                raise ValueError(f"{self.language.value}: 沒有 source_file 時不可使用 {SOURCE_TOKEN}")
            if CODE_TOKEN not in self.run:
                raise ValueError(f"{self.language.value}: run step 必須包含 {CODE_TOKEN}")

    @property
    def id(self) -> str:
        return self.language.value


DEFAULT_PROFILES: tuple[LanguageProfile, ...] = (
    LanguageProfile(
        language=Language.PYTHON,
        image="python:3.12-slim",
        run=("python3", "-c", CODE_TOKEN),
    ),
    LanguageProfile(
        language=Language.JAVASCRIPT,
        image="node:20-slim",
        run=("node", "-e", CODE_TOKEN),
    ),
    LanguageProfile(
        language=Language.JAVA,
        image="eclipse-temurin:17-jdk",
        source_file="Main.java",
        build=("javac", SOURCE_TOKEN),
        run=("java", "-cp", ".", "Main"),
    ),
)


class ProfileRegistry:
    """Read-only language lookup table, built once at startup."""

    def __init__(self, profiles: tuple[LanguageProfile, ...] = DEFAULT_PROFILES) -> None:
        table: dict[Language, LanguageProfile] = {}
        for profile in profiles:
            if profile.language in table:
                raise ValueError(f"重複註冊語言：{profile.language.value}")
            table[profile.language] = profile
        self._profiles: Mapping[Language, LanguageProfile] = MappingProxyType(table)

    @classmethod
    def with_image_overrides(cls, overrides: Mapping[str, str]) -> "ProfileRegistry":
        profiles = []
        for profile in DEFAULT_PROFILES:
            image = overrides.get(profile.language.value)
            profiles.append(replace(profile, image=image) if image else profile)
        return cls(tuple(profiles))

    def resolve(self, language: str) -> LanguageProfile:
        key = parse_language(language)
        if key is None or key not in self._profiles:
            raise UnsupportedLanguageError(str(language))
        return self._profiles[key]

    def languages(self) -> list[str]:
        return [language.value for language in self._profiles]

    def __contains__(self, language: object) -> bool:
        return isinstance(language, str) and parse_language(language) in self._profiles


def parse_language(value: str) -> Language | None:
    normalized = str(value or "").strip().lower()
    if normalized in _ALIASES:
        return _ALIASES[normalized]
    try:
        return Language(normalized)
    except ValueError:
        return None
