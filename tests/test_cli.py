import contextlib
import io
import json
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from hrgate.bootstrap import (
    DISABLE_FILENAME,
    INSTRUCTIONS_PATH,
    SECTION_MARKER,
    SETTINGS_PATH,
    generate_bootstrap_files,
    write_bootstrap_files,
)
from hrgate.cli import (
    EXIT_ALLOW,
    EXIT_DENY,
    main,
    read_hook_input,
    run_check,
    stats_log_path,
    sync_stats,
)
from hrgate.config import CONFIG_FILENAME, ConfigError, load_gate_config
from hrgate.payload import encode
from hrgate.signing import generate_keypair, issue, load_signing_key
from hrgate.transport import MemoryRefTransport, TransportError
from hrgate.verifier import Reason

NOW = 1_700_000_000
REF = "refs/hrgate/hr/octocat"


class FailingTransport(MemoryRefTransport):
    def publish(self, ref_name, payload, filename="hr-signal.json"):
        raise TransportError("push rejected")


class RepoTestCase(unittest.TestCase):
    """Temp checkout with a .git directory and a bootstrap config."""

    def setUp(self):
        self.repo = Path(tempfile.mkdtemp(prefix="hrgate-cli-"))
        (self.repo / ".git").mkdir()
        private_hex, self.public_hex = generate_keypair()
        self.key = load_signing_key(private_hex)
        write_bootstrap_files(generate_bootstrap_files("octocat", self.public_hex), self.repo)
        self.transport = MemoryRefTransport()

    def tearDown(self):
        shutil.rmtree(self.repo, ignore_errors=True)

    def publish(self, reading):
        payload = issue("octocat", "s1", reading, 100, 15, self.key, now=NOW)
        self.transport.publish(REF, encode(payload))

    def stats_lines(self):
        path = stats_log_path(self.repo)
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text().splitlines()]


class TestRunCheck(RepoTestCase):

    def test_allow(self):
        self.publish(120)
        result = run_check(self.repo, {"tool_name": "Bash"}, self.transport, now=NOW + 1)
        self.assertTrue(result.allowed)

    def test_deny_below_threshold(self):
        self.publish(72)
        result = run_check(self.repo, {}, self.transport, now=NOW + 1)
        self.assertEqual(result.reason, Reason.BELOW_THRESHOLD)

    def test_attempt_recorded(self):
        self.publish(72)
        run_check(self.repo, {"tool_name": "Edit", "tool_use_id": "tu_1"}, self.transport, now=NOW + 1)
        (line,) = self.stats_lines()
        self.assertEqual(line["type"], "attempt")
        self.assertEqual(line["tool"], "Edit")
        self.assertEqual(line["tool_use_id"], "tu_1")
        self.assertEqual(line["reason"], "below_threshold")
        self.assertEqual(line["ts"], NOW + 1)
        self.assertFalse(line["allowed"])

    def test_missing_config_denies(self):
        os.remove(self.repo / CONFIG_FILENAME)
        self.publish(120)
        result = run_check(self.repo, {}, self.transport, now=NOW + 1)
        self.assertEqual(result.reason, Reason.CONFIG_MISSING)

    def test_invalid_config_denies(self):
        (self.repo / CONFIG_FILENAME).write_text('{"subject_key": "octocat"}')
        self.publish(120)
        result = run_check(self.repo, {}, self.transport, now=NOW + 1)
        self.assertEqual(result.reason, Reason.CONFIG_MISSING)

    def test_disable_file_skips_verification(self):
        (self.repo / DISABLE_FILENAME).touch()
        result = run_check(self.repo, {}, self.transport, now=NOW + 1)
        self.assertTrue(result.allowed)
        self.assertFalse(result.gated)
        self.assertEqual(self.stats_lines()[0]["reason"], "gating_disabled")

    def test_no_git_dir_still_verifies(self):
        shutil.rmtree(self.repo / ".git")
        self.publish(120)
        self.assertTrue(run_check(self.repo, {}, self.transport, now=NOW + 1).allowed)
        self.assertIsNone(stats_log_path(self.repo))


class TestSyncStats(RepoTestCase):

    def test_publishes_and_clears(self):
        run_check(self.repo, {"tool_name": "Bash"}, self.transport, now=NOW + 1)
        self.assertTrue(sync_stats(self.repo, self.transport))

        data = self.transport.fetch("refs/hrgate/stats/octocat", "tool-stats.jsonl")
        self.assertEqual(json.loads(data.splitlines()[0])["tool"], "Bash")
        self.assertEqual(self.stats_lines(), [])

    def test_nothing_to_sync(self):
        self.assertFalse(sync_stats(self.repo, self.transport))
        self.assertEqual(self.transport.publish_count, 0)

    def test_failure_keeps_log(self):
        run_check(self.repo, {}, self.transport, now=NOW + 1)
        self.assertFalse(sync_stats(self.repo, FailingTransport()))
        self.assertEqual(len(self.stats_lines()), 1)


class TestHookInput(unittest.TestCase):

    def test_parses_object(self):
        self.assertEqual(read_hook_input(io.StringIO('{"tool_name": "Bash"}')), {"tool_name": "Bash"})

    def test_garbage_is_empty(self):
        self.assertEqual(read_hook_input(io.StringIO("not json")), {})
        self.assertEqual(read_hook_input(io.StringIO("[1]")), {})
        self.assertEqual(read_hook_input(io.StringIO("")), {})


class TestMain(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp(prefix="hrgate-main-")

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_check_without_config_blocks(self):
        stderr = io.StringIO()
        with mock.patch("sys.stdin", io.StringIO("{}")), contextlib.redirect_stderr(stderr):
            code = main(["check", "-C", self.tmp])
        self.assertEqual(code, EXIT_DENY)
        self.assertIn("tools locked", stderr.getvalue())

    def test_check_disabled_allows(self):
        Path(self.tmp, DISABLE_FILENAME).touch()
        with mock.patch("sys.stdin", io.StringIO("{}")), contextlib.redirect_stderr(io.StringIO()):
            self.assertEqual(main(["check", "-C", self.tmp]), EXIT_ALLOW)

    def test_check_crash_blocks(self):
        with mock.patch("hrgate.cli.run_check", side_effect=RuntimeError("boom")), \
                mock.patch("sys.stdin", io.StringIO("{}")), \
                contextlib.redirect_stderr(io.StringIO()):
            self.assertEqual(main(["check", "-C", self.tmp]), EXIT_DENY)

    def test_post_tool_never_blocks(self):
        with mock.patch("sys.stdin", io.StringIO("{}")), contextlib.redirect_stderr(io.StringIO()):
            self.assertEqual(main(["post-tool", "-C", self.tmp]), EXIT_ALLOW)

    def test_keygen_to_file(self):
        out = os.path.join(self.tmp, "key.json")
        stdout = io.StringIO()
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(io.StringIO()):
            self.assertEqual(main(["keygen", "-o", out]), 0)

        with open(out) as f:
            keypair = json.load(f)
        self.assertEqual(json.loads(stdout.getvalue()), {"public_key": keypair["public_key"]})
        self.assertEqual(os.stat(out).st_mode & 0o777, 0o600)

    def test_init_writes_loadable_config(self):
        _, public_hex = generate_keypair()
        with contextlib.redirect_stderr(io.StringIO()):
            self.assertEqual(main(["init", "-C", self.tmp, "-s", "octocat", "-p", public_hex, "-t", "30"]), 0)
        config = load_gate_config(Path(self.tmp, CONFIG_FILENAME))
        self.assertEqual(config.ttl_seconds, 30)
        self.assertEqual(config.ref_name, REF)

    def test_no_command(self):
        with contextlib.redirect_stderr(io.StringIO()):
            self.assertEqual(main([]), 1)


class TestBootstrap(unittest.TestCase):

    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp(prefix="hrgate-boot-"))
        _, self.public_hex = generate_keypair()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_three_files(self):
        files = generate_bootstrap_files("octocat", self.public_hex)
        self.assertEqual([f.path for f in files], [CONFIG_FILENAME, SETTINGS_PATH, INSTRUCTIONS_PATH])

    def test_settings_hook_every_tool(self):
        write_bootstrap_files(generate_bootstrap_files("octocat", self.public_hex), self.tmp)
        settings = json.loads((self.tmp / SETTINGS_PATH).read_text())
        (entry,) = settings["hooks"]["PreToolUse"]
        self.assertEqual(entry["matcher"], "*")
        self.assertEqual(entry["hooks"][0]["command"], "hrgate check")

    def test_instructions_appended_once(self):
        (self.tmp / INSTRUCTIONS_PATH).write_text("# Existing\n\nKeep me.\n")
        files = generate_bootstrap_files("octocat", self.public_hex)
        write_bootstrap_files(files, self.tmp)
        write_bootstrap_files(files, self.tmp)

        text = (self.tmp / INSTRUCTIONS_PATH).read_text()
        self.assertTrue(text.startswith("# Existing"))
        self.assertEqual(text.count(SECTION_MARKER), 1)


class TestGateConfig(unittest.TestCase):

    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp(prefix="hrgate-cfg-"))
        _, self.public_hex = generate_keypair()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _write(self, doc):
        path = self.tmp / CONFIG_FILENAME
        path.write_text(json.dumps(doc))
        return path

    def test_defaults(self):
        config = load_gate_config(self._write({"subject_key": "octocat", "public_key": self.public_hex}))
        self.assertEqual(config.ttl_seconds, 15)
        self.assertEqual(config.payload_filename, "hr-signal.json")

    def test_rejects(self):
        bad = [
            {"subject_key": "octocat"},
            {"subject_key": "octocat", "public_key": self.public_hex.upper()},
            {"subject_key": "octocat", "public_key": self.public_hex, "version": 2},
            {"subject_key": "octocat", "public_key": self.public_hex, "signal_ref_pattern": "refs/x"},
            {"subject_key": "octocat", "public_key": self.public_hex, "ttl_seconds": "15"},
            {"subject_key": "octocat", "public_key": self.public_hex, "unknown": True},
        ]
        for doc in bad:
            with self.subTest(doc=doc), self.assertRaises(ConfigError):
                load_gate_config(self._write(doc))

    def test_missing_file(self):
        with self.assertRaises(ConfigError):
            load_gate_config(self.tmp / "nope.json")

    def test_not_json(self):
        path = self.tmp / CONFIG_FILENAME
        path.write_text("subject_key=octocat")
        with self.assertRaises(ConfigError):
            load_gate_config(path)


if __name__ == "__main__":
    unittest.main()
