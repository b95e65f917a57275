"""
Tests for external command execution.
"""

import pytest

from branchfarm.logging_config import CommandLogHandler
from branchfarm.models import ExternalCommandFailure
from branchfarm.runner import CommandRunner, format_command, is_toolchain_variable


class TestCommandRunner:
    """Test CommandRunner against real processes."""

    def test_run_success(self, temp_workspace):
        result = CommandRunner().run(["sh", "-c", "pwd; echo ok"], cwd=temp_workspace)

        assert result.success
        assert result.stdout.splitlines() == [str(temp_workspace.resolve()), "ok"]

    def test_run_failure_raises(self):
        with pytest.raises(ExternalCommandFailure) as exc_info:
            CommandRunner().run(["sh", "-c", "echo broken >&2; exit 3"])

        assert exc_info.value.exit_code == 3
        assert "broken" in str(exc_info.value)
        assert "exit code 3" in str(exc_info.value)

    def test_run_unchecked_returns_result(self):
        result = CommandRunner().run_unchecked(["sh", "-c", "exit 2"])

        assert result.exit_code == 2
        assert not result.success

    def test_missing_executable(self):
        result = CommandRunner().run_unchecked(["branchfarm-no-such-binary"])

        assert result.exit_code == 127

    def test_shell_string(self, temp_workspace):
        CommandRunner().run("echo hello > out.txt && echo more >> out.txt", cwd=temp_workspace)

        assert (temp_workspace / "out.txt").read_text() == "hello\nmore\n"

    def test_dry_run_does_not_execute(self, temp_workspace):
        marker = temp_workspace / "marker"

        result = CommandRunner(dry_run=True).run(["touch", str(marker)])

        assert result.dry_run
        assert result.success
        assert not marker.exists()

    def test_probe_runs_in_dry_run(self):
        runner = CommandRunner(dry_run=True)

        assert runner.probe(["sh", "-c", "exit 0"]) is True
        assert runner.probe(["sh", "-c", "exit 1"]) is False

    def test_env_is_merged(self):
        result = CommandRunner().run(["sh", "-c", "echo $BRANCHFARM_TEST_VALUE"], env={"BRANCHFARM_TEST_VALUE": "42"})

        assert result.stdout.strip() == "42"

    def test_clean_toolchain_strips_caller_ruby(self, monkeypatch):
        monkeypatch.setenv("BUNDLE_GEMFILE", "/elsewhere/Gemfile")
        monkeypatch.setenv("RUBYOPT", "-W0")
        monkeypatch.setenv("KEEP_ME", "yes")

        env = CommandRunner().build_env({"BUNDLE_GEMFILE": "/worktree/Gemfile"}, clean_toolchain=True)

        assert env["BUNDLE_GEMFILE"] == "/worktree/Gemfile"
        assert "RUBYOPT" not in env
        assert env["KEEP_ME"] == "yes"

    def test_commands_go_to_command_log(self, temp_workspace):
        handler = CommandLogHandler("test", str(temp_workspace / "logs"))
        try:
            CommandRunner(log_handler=handler).run(["sh", "-c", "echo logged"])
        finally:
            handler.close()

        content = open(handler.get_log_file_path()).read()
        assert "Executing command: sh -c" in content
        assert "logged" in content


def test_is_toolchain_variable():
    assert is_toolchain_variable("BUNDLE_PATH")
    assert is_toolchain_variable("GEM_HOME")
    assert is_toolchain_variable("RBENV_VERSION")
    assert not is_toolchain_variable("PATH")
    assert not is_toolchain_variable("RUBY_VERSION_FILE")


def test_format_command():
    assert format_command(["git", "commit", "-m", "two words"]) == "git commit -m 'two words'"
    assert format_command("echo $HOME") == "echo $HOME"
