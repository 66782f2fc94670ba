import io
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest.mock import patch

from agent_rpc_relay.cli import main

AGENT_SCRIPT = r"""
import json, os, sys
while True:
    raw = sys.stdin.readline()
    if not raw:
        break
    msg = json.loads(raw)["message"]
    if msg.startswith("exit:"):
        sys.exit(int(msg.split(":", 1)[1]))
    if msg == "hang":
        continue
    if msg == "env":
        print("env:" + os.environ.get("RELAY_TEST_GREETING", ""), flush=True)
        print(json.dumps({"type": "agent_end"}), flush=True)
        continue
    print("echo:" + msg, flush=True)
    print(json.dumps({"type": "agent_end"}), flush=True)
"""

_CLEAN_ENV = {"RELAY_TEST_GREETING": "", "RPC_AGENT_COMMAND": "", "RPC_AGENT_CWD": "", "RPC_TIMEOUT_SEC": "", "RPC_TIMEOUT_CEILING_SEC": ""}


class TestCli(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self._env = patch.dict(os.environ, _CLEAN_ENV)
        self._env.start()

    def tearDown(self):
        self._env.stop()
        self._tmp.cleanup()

    def _run(self, *args: str):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(["--config-dir", self._tmp.name, *args])
        return code, out.getvalue(), err.getvalue()

    def test_print_config(self):
        code, out, _ = self._run("--print-config")
        self.assertEqual(code, 0)
        self.assertIn("Agent command: (not set)", out)
        self.assertIn("ceiling 300s", out)

    def test_missing_command_is_an_error(self):
        code, _, err = self._run("--prompt", "hi")
        self.assertEqual(code, 2)
        self.assertIn("Missing agent command", err)

    def test_single_prompt_prints_turn_output(self):
        code, out, _ = self._run("--prompt", "hello", "--timeout", "10", "--", sys.executable, "-u", "-c", AGENT_SCRIPT)
        self.assertEqual(code, 0)
        self.assertIn("echo:hello", out)
        self.assertIn('"agent_end"', out)

    def test_json_prompt_is_normalized(self):
        code, out, _ = self._run(
            "--json",
            "--prompt",
            '{"role": "user", "content": [{"type": "text", "text": "structured"}]}',
            "--timeout",
            "10",
            "--",
            sys.executable,
            "-u",
            "-c",
            AGENT_SCRIPT,
        )
        self.assertEqual(code, 0)
        self.assertIn("echo:structured", out)

    def test_invalid_json_prompt(self):
        code, _, err = self._run("--json", "--prompt", "{nope", "--", sys.executable, "-c", AGENT_SCRIPT)
        self.assertEqual(code, 2)
        self.assertIn("not valid JSON", err)

    def test_stream_echoes_lines_to_stderr(self):
        code, _, err = self._run("--stream", "--prompt", "live", "--timeout", "10", "--", sys.executable, "-u", "-c", AGENT_SCRIPT)
        self.assertEqual(code, 0)
        self.assertIn("echo:live", err)

    def test_exit_code_is_propagated(self):
        code, _, _ = self._run("--prompt", "exit:3", "--timeout", "10", "--", sys.executable, "-u", "-c", AGENT_SCRIPT)
        self.assertEqual(code, 3)

    def test_timeout_maps_to_124(self):
        code, _, err = self._run("--prompt", "hang", "--timeout", "0.3", "--", sys.executable, "-u", "-c", AGENT_SCRIPT)
        self.assertEqual(code, 124)
        self.assertIn("ERR_RPC_TIMEOUT", err)

    def test_missing_executable_maps_to_127(self):
        code, _, err = self._run("--prompt", "hi", "--", "/nonexistent/agent-binary-for-tests")
        self.assertEqual(code, 127)
        self.assertIn("ERR_RPC_SPAWN", err)

    def test_command_from_env(self):
        command = f"{sys.executable} -u -c '{AGENT_SCRIPT}'"
        with patch.dict(os.environ, {"RPC_AGENT_COMMAND": command}):
            code, out, _ = self._run("--prompt", "from-env", "--timeout", "10")
        self.assertEqual(code, 0)
        self.assertIn("echo:from-env", out)

    def test_env_file_values_reach_the_agent(self):
        with open(os.path.join(self._tmp.name, ".env"), "w", encoding="utf-8") as fh:
            fh.write("RELAY_TEST_GREETING=hello-from-dotenv\n")
        code, out, _ = self._run("--prompt", "env", "--timeout", "10", "--", sys.executable, "-u", "-c", AGENT_SCRIPT)
        self.assertEqual(code, 0)
        self.assertIn("env:hello-from-dotenv", out)

    def test_repl_reuses_agent_across_prompts(self):
        stdin = io.StringIO("first\nsecond\n\n")
        with patch.object(sys, "stdin", stdin):
            code, out, _ = self._run("--repl", "--timeout", "10", "--", sys.executable, "-u", "-c", AGENT_SCRIPT)
        self.assertEqual(code, 0)
        self.assertIn("echo:first", out)
        self.assertIn("echo:second", out)


if __name__ == "__main__":
    unittest.main()
