"""
Tests for Caddy route management.
"""

import pytest

from branchfarm.models import ConfigError, ExternalCommandFailure
from branchfarm.proxy import CaddyProxy

from .fixtures import RecordingRunner


@pytest.fixture
def caddyfile(temp_workspace):
    path = temp_workspace / "Caddyfile"
    path.write_text("import snippets/*.caddy\n")
    return path


@pytest.fixture
def proxy(temp_workspace, caddyfile):
    return CaddyProxy(temp_workspace / "snippets", RecordingRunner(), caddyfile_candidates=[caddyfile])


def test_render_snippet(proxy):
    snippet = proxy.render_snippet("myapp", "feature-login", "feature-login.myapp.localhost", 5001)

    assert snippet == (
        "@myapp_feature_login host feature-login.myapp.localhost *.feature-login.myapp.localhost\n"
        "handle @myapp_feature_login {\n"
        "  reverse_proxy 127.0.0.1:5001\n"
        "}\n"
    )


def test_write_and_remove_snippet(proxy, temp_workspace):
    path = proxy.write_snippet("myapp", "feat", "feat.myapp.localhost", 5001)

    assert path == temp_workspace / "snippets" / "myapp-feat.caddy"
    assert "reverse_proxy 127.0.0.1:5001" in path.read_text()

    assert proxy.remove_snippet("myapp", "feat") is True
    assert not path.exists()
    assert proxy.remove_snippet("myapp", "feat") is False


def test_dry_run_writes_nothing(temp_workspace, caddyfile):
    proxy = CaddyProxy(temp_workspace / "snippets", RecordingRunner(dry_run=True), caddyfile_candidates=[caddyfile])

    path = proxy.write_snippet("myapp", "feat", "feat.myapp.localhost", 5001)

    assert not path.exists()


def test_reload(proxy, caddyfile):
    proxy.reload()

    assert proxy.runner.commands == [f"caddy reload --config {caddyfile}"]


def test_reload_failure(proxy):
    proxy.runner.responses["caddy reload"] = (1, "", "Error: adapting config: unrecognized directive")

    with pytest.raises(ExternalCommandFailure, match="unrecognized directive"):
        proxy.reload()


def test_missing_caddyfile(temp_workspace):
    proxy = CaddyProxy(temp_workspace / "snippets", RecordingRunner(), caddyfile_candidates=[temp_workspace / "nope"])

    with pytest.raises(ConfigError, match="Could not find Caddyfile"):
        proxy.reload()
