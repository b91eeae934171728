import sys
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from playground_fakes import FakeEngine  # noqa: E402
from playground_runner.config import PullPolicy, RunnerLimits, RunnerSettings  # noqa: E402
from playground_runner.coordinator import ExecutionCoordinator, parse_request, to_response  # noqa: E402
from playground_runner.engine import CommandResult  # noqa: E402
from playground_runner.errors import UnsupportedLanguageError, ValidationError  # noqa: E402
from playground_runner.images import ImageCache  # noqa: E402
from playground_runner.models import ExecutionRequest, JobState, PhaseOutcome  # noqa: E402
from playground_runner.profiles import ProfileRegistry  # noqa: E402
from playground_runner.runtime import SandboxRuntime  # noqa: E402


def _coordinator(engine: FakeEngine, settings: RunnerSettings | None = None) -> ExecutionCoordinator:
    settings = settings or RunnerSettings()
    runtime = SandboxRuntime(engine, ImageCache(engine, PullPolicy(attempts=1)), max_concurrency=2)
    return ExecutionCoordinator(settings, ProfileRegistry(), runtime)


class ExecutionCoordinatorTests(unittest.TestCase):
    def test_hello_world_for_every_language(self) -> None:
        for language in ("python", "javascript", "java"):
            with self.subTest(language=language):
                phases = 3 if language == "java" else 1
                outcomes = [PhaseOutcome(exit_code=0, stdout=b"", stderr=b"")] * (phases - 1)
                outcomes.append(PhaseOutcome(exit_code=0, stdout=b"Hello, World!\n", stderr=b""))
                engine = FakeEngine(outcomes=outcomes)

                result = _coordinator(engine).execute(ExecutionRequest(language=language, code="hello()"))

                self.assertEqual(result.stdout, b"Hello, World!\n")
                self.assertEqual(result.stderr, b"")
                self.assertEqual(result.exit_code, 0)
                self.assertEqual(result.language, language)

    def test_unsupported_language_touches_no_engine(self) -> None:
        engine = FakeEngine()
        with self.assertRaises(UnsupportedLanguageError):
            _coordinator(engine).execute(ExecutionRequest(language="brainfuck", code="+++"))
        self.assertEqual(engine.calls, [])

    def test_invalid_code_rejected_before_sandbox(self) -> None:
        engine = FakeEngine()
        coordinator = _coordinator(engine, RunnerSettings(limits=RunnerLimits(max_code_bytes=8, max_input_bytes=4)))
        cases = [
            ExecutionRequest(language="python", code="   \n"),
            ExecutionRequest(language="python", code="print(\x00)"),
            ExecutionRequest(language="python", code="print('too long')"),
            ExecutionRequest(language="python", code="print(1)", input="12345"),
            ExecutionRequest(language="python", code="print(1)", timeout_s=0),
            ExecutionRequest(language="python", code="print(1)", timeout_s=999),
        ]
        for request in cases:
            with self.subTest(request=request):
                with self.assertRaises(ValidationError):
                    coordinator.execute(request)
        self.assertEqual(engine.calls, [])

    def test_shell_metacharacters_stay_literal(self) -> None:
        code = "import sys; print(sys.stdin.read()); print(\"'; rm -rf / #\")"
        user_input = "a; echo pwned `id` $(whoami) '\"\n"
        engine = FakeEngine(outcomes=[PhaseOutcome(exit_code=0, stdout=b"ok", stderr=b"")])

        _coordinator(engine).execute(ExecutionRequest(language="python", code=code, input=user_input))

        executed = engine.execs[-1]
        self.assertEqual(executed["argv"], ("python3", "-c", code))
        self.assertEqual(executed["stdin"], user_input.encode("utf-8"))

    def test_default_timeout_applied(self) -> None:
        engine = FakeEngine()
        settings = RunnerSettings(limits=RunnerLimits(default_timeout_s=7))
        _coordinator(engine, settings).execute(ExecutionRequest(language="python", code="print(1)"))
        self.assertEqual(engine.started[0]["keepalive_s"], 7 + 30)

    def test_image_fault_is_wrapped_not_raised(self) -> None:
        engine = FakeEngine(image_present=False, pull_results=[CommandResult(1, b"", b"pull access denied")])

        result = _coordinator(engine).execute(ExecutionRequest(language="python", code="print(1)", request_id="req-1"))

        self.assertEqual(result.status, JobState.IMAGE_UNAVAILABLE)
        self.assertIsNotNone(result.error)
        self.assertEqual(result.error.kind, "image_unavailable")
        self.assertEqual(result.request_id, "req-1")
        self.assertEqual(engine.started, [])

    def test_launch_fault_is_wrapped(self) -> None:
        engine = FakeEngine(start_error="no space left on device")

        result = _coordinator(engine).execute(ExecutionRequest(language="python", code="print(1)"))

        self.assertEqual(result.status, JobState.LAUNCH_FAILED)
        self.assertEqual(result.error.kind, "launch_failed")
        self.assertIn("no space left", result.error.message)

    def test_unexpected_error_does_not_poison_later_runs(self) -> None:
        engine = FakeEngine(outcomes=[PhaseOutcome(exit_code=0, stdout=b"second", stderr=b"")])
        coordinator = _coordinator(engine)

        with patch.object(coordinator.runtime, "run", side_effect=[KeyError("boom")]):
            with self.assertLogs("playground_runner", level="ERROR"):
                first = coordinator.execute(ExecutionRequest(language="python", code="print(1)"))
        second = coordinator.execute(ExecutionRequest(language="python", code="print(2)"))

        self.assertEqual(first.error.kind, "internal")
        self.assertEqual(second.stdout, b"second")
        self.assertIsNone(second.error)

    def test_to_response_decodes_streams(self) -> None:
        engine = FakeEngine(outcomes=[PhaseOutcome(exit_code=2, stdout=b"caf\xc3\xa9", stderr=b"\xff")])
        result = _coordinator(engine).execute(ExecutionRequest(language="python", code="x", request_id="r"))

        payload = to_response(result)

        self.assertEqual(payload["stdout"], "café")
        self.assertEqual(payload["stderr"], "�")
        self.assertEqual(payload["exit_code"], 2)
        self.assertEqual(payload["status"], "completed")
        self.assertFalse(payload["timed_out"])
        self.assertFalse(payload["truncated"])
        self.assertIsNone(payload["error"])
        self.assertEqual(payload["request_id"], "r")

    def test_output_cap_reaches_engine_and_truncation_is_reported(self) -> None:
        engine = FakeEngine(outcomes=[PhaseOutcome(exit_code=None, stdout=b"x" * 16, stderr=b"", truncated=True)])
        settings = RunnerSettings(limits=RunnerLimits(max_output_bytes=16))

        result = _coordinator(engine, settings).execute(ExecutionRequest(language="python", code="while True: print(1)"))
        payload = to_response(result)

        self.assertEqual(engine.execs[0]["max_output_bytes"], 16)
        self.assertEqual(payload["status"], "killed")
        self.assertTrue(payload["truncated"])
        self.assertEqual(payload["stdout"], "x" * 16)
        self.assertIsNone(payload["error"])


class ParseRequestTests(unittest.TestCase):
    def test_parses_valid_payload(self) -> None:
        request = parse_request({"language": "python", "code": "print(1)", "input": "x", "timeout_s": 3})
        self.assertEqual(request, ExecutionRequest(language="python", code="print(1)", input="x", timeout_s=3))

    def test_rejects_wrong_types(self) -> None:
        for payload in (
            [],
            {"code": "print(1)"},
            {"language": "python", "code": 1},
            {"language": "python", "code": "x", "input": 5},
            {"language": "python", "code": "x", "timeout_s": "5"},
            {"language": "python", "code": "x", "timeout_s": True},
        ):
            with self.subTest(payload=payload):
                with self.assertRaises(ValidationError):
                    parse_request(payload)  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
