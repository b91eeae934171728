import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from playground_runner.errors import UnsupportedLanguageError, ValidationError  # noqa: E402
from playground_runner.profiles import (  # noqa: E402
    CODE_TOKEN,
    SOURCE_TOKEN,
    Language,
    LanguageProfile,
    ProfileRegistry,
    parse_language,
)
from playground_runner.snippets import default_snippets  # noqa: E402


class ProfileRegistryTests(unittest.TestCase):
    def test_resolves_registered_languages_case_insensitively(self) -> None:
        registry = ProfileRegistry()
        self.assertEqual(registry.resolve("python").image, "python:3.12-slim")
        self.assertEqual(registry.resolve(" Java ").source_file, "Main.java")
        self.assertEqual(registry.resolve("js").language, Language.JAVASCRIPT)

    def test_unknown_language_is_a_validation_error(self) -> None:
        registry = ProfileRegistry()
        with self.assertRaises(UnsupportedLanguageError) as ctx:
            registry.resolve("cobol")
        self.assertIsInstance(ctx.exception, ValidationError)
        self.assertIsInstance(ctx.exception, ValueError)
        self.assertEqual(ctx.exception.kind, "validation")

    def test_contains_and_languages(self) -> None:
        registry = ProfileRegistry()
        self.assertIn("node", registry)
        self.assertNotIn("ruby", registry)
        self.assertEqual(registry.languages(), ["python", "javascript", "java"])

    def test_image_overrides_build_new_registry(self) -> None:
        registry = ProfileRegistry.with_image_overrides({"python": "python:3.13-slim"})
        self.assertEqual(registry.resolve("python").image, "python:3.13-slim")
        self.assertEqual(registry.resolve("java").image, "eclipse-temurin:17-jdk")

    def test_duplicate_profiles_rejected(self) -> None:
        profile = LanguageProfile(language=Language.PYTHON, image="img", run=("python3", "-c", CODE_TOKEN))
        with self.assertRaisesRegex(ValueError, "重複註冊語言"):
            ProfileRegistry((profile, profile))

    def test_profile_template_rules(self) -> None:
        with self.assertRaises(ValueError):
            LanguageProfile(language=Language.PYTHON, image="img", run=("python3", "main.py"))
        with self.assertRaises(ValueError):
            LanguageProfile(
                language=Language.JAVA,
                image="img",
                source_file="Main.java",
                build=("javac", CODE_TOKEN),
                run=("java", "Main"),
            )
        with self.assertRaises(ValueError):
            LanguageProfile(language=Language.JAVA, image="img", run=("java", SOURCE_TOKEN, CODE_TOKEN))
        with self.assertRaises(ValueError):
            LanguageProfile(
                language=Language.JAVA,
                image="img",
                source_file="../Main.java",
                run=("java", "Main"),
            )

    def test_parse_language(self) -> None:
        self.assertEqual(parse_language("PY"), Language.PYTHON)
        self.assertIsNone(parse_language(""))
        self.assertIsNone(parse_language("rust"))


class SnippetTests(unittest.TestCase):
    def test_default_snippets_cover_every_language(self) -> None:
        snippets = default_snippets(ProfileRegistry())
        self.assertEqual(set(snippets), {"python", "java", "javascript"})
        self.assertEqual(snippets["python"], "print('Hello, World!')")
        self.assertIn("public class Main", snippets["java"])


if __name__ == "__main__":
    unittest.main()
