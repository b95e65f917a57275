"""
Tests for tmux session management.
"""

from branchfarm.session import TmuxSessions

from .fixtures import RecordingRunner


def test_create_session_strips_toolchain(temp_workspace):
    runner = RecordingRunner(responses={"has-session": (1, "", "can't find session")})
    sessions = TmuxSessions(runner, parent_env={"BUNDLE_GEMFILE": "/other/Gemfile", "RUBYOPT": "-W0", "PATH": "/bin"})

    assert sessions.create("myapp-feat", temp_workspace) is True

    assert runner.commands == [
        "tmux has-session -t myapp-feat",
        f"tmux new-session -d -s myapp-feat -c {temp_workspace}",
        "tmux set-environment -t myapp-feat -r BUNDLE_GEMFILE",
        "tmux set-environment -t myapp-feat -r RUBYOPT",
        f"tmux new-window -t myapp-feat -c {temp_workspace}",
        "tmux kill-window -t myapp-feat:0",
        "tmux move-window -t myapp-feat -r",
    ]


def test_existing_session_is_kept(temp_workspace):
    runner = RecordingRunner()

    assert TmuxSessions(runner, parent_env={}).create("myapp-feat", temp_workspace) is False
    assert runner.commands == ["tmux has-session -t myapp-feat"]


def test_kill():
    runner = RecordingRunner()

    assert TmuxSessions(runner, parent_env={}).kill("myapp-feat") is True
    assert runner.commands[-1] == "tmux kill-session -t myapp-feat"


def test_kill_missing_session():
    runner = RecordingRunner(responses={"has-session": (1, "", "")})

    assert TmuxSessions(runner, parent_env={}).kill("myapp-feat") is False
    assert len(runner.commands) == 1
