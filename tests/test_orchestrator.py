import json
import threading
import time
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from batch_policy import BatchPolicy
from gemini_client import GeminiConnectionError, GeminiQuotaError
from ops_logger import OpsLogger
from orchestrator import (
    AlreadyRunning, ConcurrencyError, ConfigurationError, ReviewOrchestrator,
    RunSettings, RunState, StopReason, create_settings_from_config,
)
from review_invoker import OutcomeKind
from reviewer import FileEditor
from tree_scanner import ScanError

BUGGY_PY = "".join(
    f"value_{i} = {i}\n" for i in range(18)
) + "def total():\n    return value_1 + valeu_2\n"

FIXED_PY = BUGGY_PY.replace(
    "return value_1 + valeu_2",
    "return value_1 + value_2  # KRITIQ FIX: typo in variable name",
).strip()


class _FakeModel:
    """Replies by file name found in the prompt. Values may be exceptions."""

    def __init__(self, replies=None, default=None):
        self.replies = replies or {}
        self.default = default
        self.prompts = []
        self.closed = False

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        for name, reply in self.replies.items():
            if f"source file: {name}\n" in prompt:
                break
        else:
            reply = self.default
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(prompt)
        if reply is None:
            # Echo the source back unchanged
            return prompt.split("SOURCE CODE TO REVIEW\n", 1)[1].split("\n", 1)[1]
        return reply

    def close(self) -> None:
        self.closed = True


class _RecordingEditor(FileEditor):
    def __init__(self):
        super().__init__(backup_dir=None)
        self.writes = []

    def replace_file_content(self, file_path, new_text):
        self.writes.append((Path(file_path), new_text))
        return super().replace_file_content(file_path, new_text)


def _write(root: Path, rel: str, text: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class OrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name) / "project"
        self.root.mkdir()
        self.log_dir = Path(self._tmp.name) / "logs"
        self.model = _FakeModel()
        self.editor = _RecordingEditor()
        self.factory_keys = []

    def _orchestrator(self, settings=None, **kwargs) -> ReviewOrchestrator:
        def factory(api_key):
            self.factory_keys.append(api_key)
            return self.model

        kwargs.setdefault("ops_logger", OpsLogger(log_dir=self.log_dir, session_id="test"))
        return ReviewOrchestrator(
            settings=settings or RunSettings(api_key="test-key"),
            model_factory=factory,
            editor=self.editor,
            **kwargs,
        )

    def test_end_to_end_single_fix(self) -> None:
        target = _write(self.root, "a.py", BUGGY_PY)
        _write(self.root, "b.min.js", "var a=1;")
        _write(self.root, "README.md", "# readme\n")
        _write(self.root, "node_modules/x.js", "module.exports = 1;\n")
        self.model.replies = {"a.py": FIXED_PY}

        orchestrator = self._orchestrator()
        report = orchestrator.run(self.root)

        self.assertEqual([c.name for c in report.files], ["a.py"])
        self.assertEqual(report.stop_reason, StopReason.COMPLETED)
        self.assertEqual(
            (report.stats.fixed, report.stats.clean, report.stats.errors), (1, 0, 0)
        )
        self.assertEqual(self.editor.writes, [(target.absolute(), FIXED_PY)])
        self.assertEqual(target.read_text(encoding="utf-8"), FIXED_PY)
        self.assertEqual(report.outcomes[0][1].kind, OutcomeKind.FIXED)
        self.assertEqual(report.summary, "Review Complete! Fixed: 1 | Clean: 0 | Errors: 0")
        self.assertEqual(self.factory_keys, ["test-key"])
        self.assertTrue(self.model.closed)
        self.assertFalse(orchestrator.is_running)

    def test_unchanged_reply_never_writes(self) -> None:
        _write(self.root, "a.py", BUGGY_PY)
        _write(self.root, "b.js", "function b() {\n  return 1;\n}\n")

        report = self._orchestrator().run(self.root)

        self.assertEqual(report.stats.clean, 2)
        self.assertEqual(report.stats.fixed, 0)
        self.assertEqual(self.editor.writes, [])

    def test_quota_stops_batch_and_keeps_earlier_fixes(self) -> None:
        for name in ("a.py", "b.py", "c.py", "d.py"):
            _write(self.root, name, BUGGY_PY)
        self.model.replies = {
            "a.py": FIXED_PY,
            "b.py": GeminiConnectionError("HTTP 500 from Gemini API", status_code=500),
            "c.py": GeminiQuotaError("HTTP 429 from Gemini API", status_code=429),
            "d.py": FIXED_PY,
        }
        notices = []

        report = self._orchestrator(notify=notices.append).run(self.root)

        self.assertEqual(report.stop_reason, StopReason.QUOTA_EXCEEDED)
        self.assertEqual(len(self.model.prompts), 3)
        self.assertNotIn("source file: d.py\n", "".join(self.model.prompts))
        self.assertEqual(
            (report.stats.fixed, report.stats.clean, report.stats.errors), (1, 0, 2)
        )
        self.assertEqual([p.name for p, _ in report.outcomes], ["a.py", "b.py", "c.py"])
        self.assertEqual((self.root / "a.py").read_text(encoding="utf-8"), FIXED_PY)
        self.assertEqual((self.root / "d.py").read_text(encoding="utf-8"), BUGGY_PY)
        self.assertEqual(len(notices), 1)
        self.assertIn("Quota", notices[0])

    def test_errors_are_isolated_per_file(self) -> None:
        _write(self.root, "a.py", BUGGY_PY)
        _write(self.root, "b.py", BUGGY_PY)
        self.model.replies = {
            "a.py": RuntimeError("socket closed"),
            "b.py": FIXED_PY,
        }

        report = self._orchestrator().run(self.root)

        self.assertEqual(report.stop_reason, StopReason.COMPLETED)
        self.assertEqual((report.stats.fixed, report.stats.errors), (1, 1))

    def test_oversized_empty_and_undecodable_files_are_not_sent(self) -> None:
        _write(self.root, "big.py", "x = 1\n" * 10000)
        _write(self.root, "empty.py", "   \n\n")
        (self.root / "latin.py").write_bytes(b"name = '\xe9t\xe9'\n")

        report = self._orchestrator().run(self.root)

        self.assertEqual(self.model.prompts, [])
        outcomes = {p.name: o for p, o in report.outcomes}
        self.assertEqual(outcomes["big.py"].kind, OutcomeKind.SKIPPED)
        self.assertEqual(outcomes["empty.py"].kind, OutcomeKind.SKIPPED)
        self.assertEqual(outcomes["latin.py"].kind, OutcomeKind.ERROR)
        self.assertEqual((report.stats.clean, report.stats.errors), (2, 1))

    def test_cancellation_checked_before_each_file(self) -> None:
        for name in ("a.py", "b.py", "c.py"):
            _write(self.root, name, BUGGY_PY)
        cancel = threading.Event()

        def _cancel_after_first(prompt):
            cancel.set()
            return FIXED_PY

        self.model.default = _cancel_after_first

        report = self._orchestrator().run(self.root, cancel_event=cancel)

        self.assertEqual(report.stop_reason, StopReason.CANCELLED)
        self.assertEqual(len(self.model.prompts), 1)
        self.assertEqual(report.stats.processed, 1)
        self.assertEqual(report.stats.fixed, 1)

    def test_timeout_moves_on_to_next_file(self) -> None:
        _write(self.root, "a.py", BUGGY_PY)
        _write(self.root, "b.py", BUGGY_PY)
        release = threading.Event()
        self.addCleanup(release.set)

        def _hang(prompt):
            release.wait(10)
            return FIXED_PY

        self.model.replies = {"a.py": _hang, "b.py": FIXED_PY}
        settings = RunSettings(api_key="k", timeout=0.2)

        start = time.monotonic()
        report = self._orchestrator(settings).run(self.root)
        elapsed = time.monotonic() - start

        outcomes = {p.name: o for p, o in report.outcomes}
        self.assertTrue(outcomes["a.py"].is_timeout)
        self.assertEqual(outcomes["b.py"].kind, OutcomeKind.FIXED)
        self.assertLess(elapsed, 2.0)

    def test_second_run_is_rejected_while_running(self) -> None:
        _write(self.root, "a.py", BUGGY_PY)
        orchestrator = self._orchestrator()
        orchestrator.stats.fixed = 7

        with orchestrator.state.hold():
            with self.assertRaises(ConcurrencyError):
                orchestrator.run(self.root)
            self.assertTrue(orchestrator.is_running)
            self.assertEqual(orchestrator.stats.fixed, 7)

        self.assertFalse(orchestrator.is_running)
        self.assertEqual(self.model.prompts, [])
        self.assertIs(AlreadyRunning, ConcurrencyError)

    def test_reentrant_run_from_inside_a_run_is_rejected(self) -> None:
        _write(self.root, "a.py", BUGGY_PY)
        orchestrator = self._orchestrator()
        rejected = []

        def _nested(prompt):
            try:
                orchestrator.run(self.root)
            except ConcurrencyError as e:
                rejected.append(e)
            return FIXED_PY

        self.model.default = _nested
        orchestrator.run(self.root)

        self.assertEqual(len(rejected), 1)
        self.assertFalse(orchestrator.is_running)

    def test_missing_api_key(self) -> None:
        _write(self.root, "a.py", BUGGY_PY)
        for key in ("", "   "):
            with self.subTest(key=key):
                orchestrator = self._orchestrator(RunSettings(api_key=key))
                with self.assertRaises(ConfigurationError):
                    orchestrator.run(self.root)
                self.assertFalse(orchestrator.is_running)
        self.assertEqual(self.factory_keys, [])

    def test_missing_folder(self) -> None:
        orchestrator = self._orchestrator()
        for folder in (None, self.root / "nope"):
            with self.subTest(folder=folder):
                with self.assertRaises(ConfigurationError):
                    orchestrator.run(folder)
        self.assertFalse(orchestrator.is_running)

    def test_unreadable_root_releases_lock(self) -> None:
        orchestrator = self._orchestrator()

        def _denied(root):
            raise ScanError(f"Cannot read folder {root}: Permission denied")

        orchestrator.scanner.scan = _denied
        with self.assertRaises(ScanError):
            orchestrator.run(self.root)
        self.assertFalse(orchestrator.is_running)

    def test_unexpected_failure_releases_lock(self) -> None:
        _write(self.root, "a.py", BUGGY_PY)
        orchestrator = self._orchestrator()

        def _boom(*args):
            raise KeyError("unexpected")

        orchestrator.prompt_builder.build = _boom
        with self.assertRaises(KeyError):
            orchestrator.run(self.root)
        self.assertFalse(orchestrator.is_running)
        self.assertTrue(self.model.closed)

    def test_no_files(self) -> None:
        _write(self.root, "README.md", "# hi\n")
        report = self._orchestrator().run(self.root)
        self.assertEqual(report.stop_reason, StopReason.NO_FILES)
        self.assertEqual(self.factory_keys, [])

    def test_truncation_reviews_prefix_in_scan_order(self) -> None:
        names = [f"f{i:02d}.py" for i in range(6)]
        for name in names:
            _write(self.root, name, BUGGY_PY)

        report = self._orchestrator(batch_policy=BatchPolicy(threshold=4, limit=4)).run(self.root)

        self.assertEqual([c.name for c in report.files], names[:4])
        self.assertEqual(report.stats.clean, 4)
        self.assertIn("- f03.py", self.model.prompts[0])
        self.assertNotIn("- f04.py", self.model.prompts[0])

    def test_declined_batch(self) -> None:
        for i in range(3):
            _write(self.root, f"f{i}.py", BUGGY_PY)
        policy = BatchPolicy("interactive", threshold=2, chooser=lambda total, limit: None)

        report = self._orchestrator(batch_policy=policy).run(self.root)

        self.assertEqual(report.stop_reason, StopReason.DECLINED)
        self.assertEqual(self.model.prompts, [])

    def test_dry_run_does_not_write(self) -> None:
        target = _write(self.root, "a.py", BUGGY_PY)
        self.model.default = FIXED_PY

        report = self._orchestrator(RunSettings(api_key="k", dry_run=True)).run(self.root)

        self.assertEqual(report.stats.fixed, 1)
        self.assertEqual(self.editor.writes, [])
        self.assertEqual(target.read_text(encoding="utf-8"), BUGGY_PY)

    def test_stats_reset_between_runs_and_mode_in_prompt(self) -> None:
        _write(self.root, "a.py", BUGGY_PY)
        orchestrator = self._orchestrator(RunSettings(api_key="k", mode="Security Audit"))

        orchestrator.run(self.root)
        report = orchestrator.run(self.root)

        self.assertEqual(report.stats.processed, 1)
        self.assertIn("REVIEW MODE: Security Audit", self.model.prompts[-1])

    def test_broken_ops_log_does_not_stop_the_batch(self) -> None:
        _write(self.root, "a.py", BUGGY_PY)
        _write(self.root, "b.py", BUGGY_PY)
        self.model.replies = {"a.py": FIXED_PY}
        ops = OpsLogger(log_dir=self.log_dir, session_id="test")
        ops.log_file.mkdir()

        with self.assertLogs("ops_logger", level="WARNING"):
            report = self._orchestrator(ops_logger=ops).run(self.root)

        self.assertEqual(report.stop_reason, StopReason.COMPLETED)
        self.assertEqual((report.stats.fixed, report.stats.clean), (1, 1))

    def test_earlier_report_keeps_its_counters(self) -> None:
        target = _write(self.root, "a.py", BUGGY_PY)
        self.model.replies = {"a.py": FIXED_PY}
        orchestrator = self._orchestrator()

        first = orchestrator.run(self.root)
        target.unlink()
        second = orchestrator.run(self.root)

        self.assertEqual(second.stop_reason, StopReason.NO_FILES)
        self.assertEqual(first.stats.fixed, 1)
        self.assertEqual(first.summary, "Review Complete! Fixed: 1 | Clean: 0 | Errors: 0")
        self.assertIsNot(first.stats, second.stats)
        self.assertIs(orchestrator.stats, second.stats)

    def test_ops_log_records_run(self) -> None:
        _write(self.root, "a.py", BUGGY_PY)
        _write(self.root, "b.py", BUGGY_PY)
        self.model.replies = {"a.py": FIXED_PY}

        self._orchestrator().run(self.root)

        events = [e["event_type"] for e in OpsLogger.read_log(self.log_dir / "ops.jsonl")]
        self.assertEqual(events, ["run_start", "file_fixed", "file_clean", "run_end"])
        summary = OpsLogger.get_summary(self.log_dir / "ops.jsonl")
        self.assertEqual(summary["files_fixed"], 1)
        self.assertEqual(summary["files_clean"], 1)
        last = json.loads((self.log_dir / "ops.jsonl").read_text().splitlines()[-1])
        self.assertEqual(last["details"], {"fixed": 1, "clean": 1, "errors": 0})


class RunStateTests(unittest.TestCase):
    def test_hold_releases_on_exception(self) -> None:
        state = RunState()
        with self.assertRaises(ValueError):
            with state.hold():
                self.assertTrue(state.is_running)
                raise ValueError("boom")
        self.assertFalse(state.is_running)

    def test_hold_rejects_immediately(self) -> None:
        state = RunState()
        with state.hold():
            start = time.monotonic()
            with self.assertRaises(ConcurrencyError):
                with state.hold():
                    pass
            self.assertLess(time.monotonic() - start, 0.5)
            self.assertTrue(state.is_running)


class SettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = create_settings_from_config({"gemini": {"api_key": " key "}})
        self.assertEqual(settings.mode, "Standard")
        self.assertEqual(settings.max_file_chars, 40000)
        self.assertEqual(settings.timeout, 120.0)

    def test_review_section(self) -> None:
        settings = create_settings_from_config({
            "gemini": {"api_key": "k"},
            "review": {"mode": "Strict", "timeout": 30, "max_file_chars": 100, "dry_run": True},
        })
        self.assertEqual(settings.mode, "Strict")
        self.assertEqual(settings.timeout, 30.0)
        self.assertEqual(settings.max_file_chars, 100)
        self.assertTrue(settings.dry_run)


if __name__ == "__main__":
    unittest.main()
