"""
Integration tests for the gitforge command line.

Commands run in-process through click's CliRunner with GITFORGE_* settings
pointing at a temp directory.

These tests verify:
- ``hook update`` is a no-op for pushes without a UUID
- ``admin create-user`` and ``admin create-repo`` bootstrap an installation
- ``serv`` without a command greets and exits
"""
import logging

import pytest
from click.testing import CliRunner

from gitforge.cli import ServError, cli, parse_key_id


@pytest.fixture
def env(tmp_path) -> dict[str, str]:
    return {
        "GITFORGE_WORK_DIR": str(tmp_path),
        "GITFORGE_DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'gitforge.db'}",
        "GITFORGE_APP_URL": "http://forge.example",
        "GITFORGE_LFS_JWT_SECRET": "c2VjcmV0LXNlY3JldC1zZWNyZXQtc2VjcmV0LXNlY3JldA",
        "GITFORGE_INTERNAL_TOKEN": "cli-token",
        "UUID": "",
        "SSH_ORIGINAL_COMMAND": "",
    }


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_root_logging():
    # Commands reconfigure root logging for their own log files
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


# -----------------------------------------------------------------------------
# hook
# -----------------------------------------------------------------------------

class TestHookUpdate:
    """gitforge hook update."""

    def test_without_uuid_is_a_no_op(self, runner, env, tmp_path):
        result = runner.invoke(cli, ["hook", "update", "refs/heads/master", "0" * 40, "a" * 40], env=env)

        assert result.exit_code == 0
        assert result.output == ""
        assert not (tmp_path / "gitforge.db").exists()

    def test_needs_three_arguments(self, runner, env):
        result = runner.invoke(cli, ["hook", "update", "refs/heads/master"], env=env)
        assert result.exit_code == 2


# -----------------------------------------------------------------------------
# admin
# -----------------------------------------------------------------------------

class TestAdmin:
    """gitforge admin create-user / create-repo."""

    def test_create_user(self, runner, env):
        result = runner.invoke(
            cli,
            ["admin", "create-user", "alice", "--email", "alice@example.com", "--password", "pw", "--admin"],
            env=env,
        )

        assert result.exit_code == 0, result.output
        assert "Created user alice" in result.output
        assert "as admin" in result.output

    def test_duplicate_user(self, runner, env):
        args = ["admin", "create-user", "alice", "--email", "alice@example.com", "--password", "pw"]
        runner.invoke(cli, args, env=env)

        result = runner.invoke(cli, args, env=env)

        assert result.exit_code == 1
        assert "user already exists" in result.output

    def test_create_repo(self, runner, env, tmp_path):
        runner.invoke(cli, ["admin", "create-user", "alice", "-e", "alice@example.com", "-p", "pw"], env=env)

        result = runner.invoke(cli, ["admin", "create-repo", "alice", "Demo", "--private"], env=env)

        assert result.exit_code == 0, result.output
        assert "http://forge.example/alice/Demo.git" in result.output
        assert (tmp_path / "repositories" / "alice" / "demo.git" / "hooks" / "update").is_file()

    def test_create_repo_for_unknown_owner(self, runner, env):
        result = runner.invoke(cli, ["admin", "create-repo", "nobody", "demo"], env=env)

        assert result.exit_code == 1
        assert "user does not exist" in result.output


# -----------------------------------------------------------------------------
# serv
# -----------------------------------------------------------------------------

class TestServ:
    """gitforge serv."""

    def test_greeting_without_command(self, runner, env):
        result = runner.invoke(cli, ["serv", "key-1"], env=env)

        assert result.exit_code == 0
        assert "successfully authenticated" in result.output
        assert "does not provide shell access" in result.output

    def test_refused_when_ssh_disabled(self, runner, env):
        env = {**env, "SSH_ORIGINAL_COMMAND": "git-upload-pack 'alice/demo.git'", "GITFORGE_SSH_DISABLED": "true"}

        result = runner.invoke(cli, ["serv", "key-1"], env=env)

        assert result.exit_code == 1

    def test_unknown_key(self, runner, env):
        env = {**env, "SSH_ORIGINAL_COMMAND": "git-upload-pack 'alice/demo.git'"}
        runner.invoke(cli, ["admin", "create-user", "alice", "-e", "alice@example.com", "-p", "pw"], env=env)

        result = runner.invoke(cli, ["serv", "key-99"], env=env)

        assert result.exit_code == 1

    def test_parse_key_id(self):
        assert parse_key_id("key-7") == 7
        with pytest.raises(ServError):
            parse_key_id("key-seven")
