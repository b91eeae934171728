"""Default starter code shown for each registered language."""

from __future__ import annotations

from .profiles import Language, ProfileRegistry

DEFAULT_SNIPPETS: dict[Language, str] = {
    Language.PYTHON: "print('Hello, World!')",
    Language.JAVA: (
        "public class Main {\n"
        "    public static void main(String[] args) {\n"
        "        System.out.println(\"Hello, World!\");\n"
        "    }\n"
        "}"
    ),
    Language.JAVASCRIPT: "console.log('Hello, World!');",
}


def default_snippets(registry: ProfileRegistry) -> dict[str, str]:
    return {
        language: DEFAULT_SNIPPETS.get(Language(language), "")
        for language in registry.languages()
    }
