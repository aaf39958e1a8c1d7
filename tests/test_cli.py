"""
Tests for the Engram CLI.

These tests verify the command-line interface functionality using subprocess calls.
"""

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from engram import codec
from engram.cli import main
from engram.models import create_node
from engram.store import MemoryStore

REPO_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture
def cli_env():
    """Environment for CLI commands with quiet logging and no inherited passphrase."""
    env = os.environ.copy()
    env["ENGRAM_LOG_LEVEL"] = "WARNING"
    env.pop("ENGRAM_PASSPHRASE", None)
    return env


@pytest.fixture
def container(temp_dir):
    """A two-level container on disk."""
    store = MemoryStore()
    root = store.add(create_node("Project notes", ids=store.ids, embedding=[1, 0, 0]))
    store.add_child(root, "Use PostgreSQL for storage", embedding=[0, 1, 0])
    return str(codec.save(store, os.path.join(temp_dir, "notes")))


@pytest.fixture
def encrypted_container(temp_dir):
    store = MemoryStore()
    store.add(create_node("secret", ids=store.ids))
    return str(codec.save(store, os.path.join(temp_dir, "secret"), encrypt=True, passphrase="pw"))


def run_cli(*args, env=None):
    """Run CLI command and return result."""
    cmd = [sys.executable, "-m", "engram", *args]
    return subprocess.run(cmd, capture_output=True, text=True, env=env, cwd=REPO_ROOT)


class TestCLIHelp:
    """Tests for CLI help and basic functionality."""

    def test_help_displays(self, cli_env):
        """Test that --help works."""
        result = run_cli("--help", env=cli_env)
        assert result.returncode == 0
        assert "usage:" in result.stdout.lower()

    def test_no_command_shows_help(self, cli_env):
        """Test that running without command exits with 1."""
        result = run_cli(env=cli_env)
        assert result.returncode == 1


class TestInfoCommand:
    """Tests for the info command."""

    def test_info_json(self, container, cli_env):
        result = run_cli("--json", "info", container, env=cli_env)
        assert result.returncode == 0

        data = json.loads(result.stdout)
        assert data["version"] == "1.0"
        assert data["encrypted"] is False
        assert data["stats"]["total_chunks"] == 2
        assert data["stats"]["max_depth"] == 1
        assert data["embedding_dims"] == 3

    def test_info_text(self, container, cli_env):
        result = run_cli("info", container, env=cli_env)
        assert result.returncode == 0
        assert "Engram v1.0" in result.stdout
        assert "Encrypted: no" in result.stdout

    def test_info_encrypted_needs_no_passphrase(self, encrypted_container, cli_env):
        result = run_cli("--json", "info", encrypted_container, env=cli_env)
        assert result.returncode == 0
        assert json.loads(result.stdout)["encrypted"] is True

    def test_info_missing_file(self, temp_dir, cli_env):
        result = run_cli("info", os.path.join(temp_dir, "nope.engram"), env=cli_env)
        assert result.returncode == 1
        assert "ERROR" in result.stderr


class TestVerifyCommand:
    """Tests for the verify command."""

    def test_verify_ok(self, container, cli_env):
        result = run_cli("--json", "verify", container, env=cli_env)
        assert result.returncode == 0
        assert json.loads(result.stdout)["nodes"] == 2

    def test_verify_encrypted_without_passphrase(self, encrypted_container, cli_env):
        result = run_cli("--json", "verify", encrypted_container, env=cli_env)
        assert result.returncode == 1
        assert json.loads(result.stdout)["type"] == "PassphraseRequiredError"

    def test_verify_wrong_passphrase(self, encrypted_container, cli_env):
        result = run_cli("--json", "verify", encrypted_container, "--passphrase", "bad", env=cli_env)
        assert result.returncode == 1
        assert json.loads(result.stdout)["type"] == "CryptoError"

    def test_verify_passphrase_from_env(self, encrypted_container, cli_env):
        cli_env["ENGRAM_PASSPHRASE"] = "pw"
        result = run_cli("verify", encrypted_container, env=cli_env)
        assert result.returncode == 0
        assert result.stdout.startswith("OK: 1 nodes")

    def test_verify_corrupted(self, container, cli_env):
        data = bytearray(Path(container).read_bytes())
        data[-1] ^= 0xFF
        Path(container).write_bytes(bytes(data))

        result = run_cli("--json", "verify", container, env=cli_env)
        assert result.returncode == 1
        assert json.loads(result.stdout)["type"] == "IntegrityError"


class TestTreeCommand:
    """Tests for the tree command."""

    def test_tree_text(self, container, cli_env):
        result = run_cli("tree", container, env=cli_env)
        assert result.returncode == 0
        lines = result.stdout.splitlines()
        assert lines[0].startswith("- [text/hot]")
        assert "Project notes" in lines[0]
        assert lines[1].startswith("  - [text/hot]")

    def test_tree_json_max_depth(self, container, cli_env):
        result = run_cli("--json", "tree", container, "--max-depth", "0", env=cli_env)
        rows = json.loads(result.stdout)
        assert [r["depth"] for r in rows] == [0]


class TestMigrateCommand:
    """Tests for the migrate-v2 command."""

    def test_migrate(self, temp_dir, cli_env):
        source = os.path.join(temp_dir, "old.json")
        with open(source, "w", encoding="utf-8") as fh:
            json.dump({"version": 2, "created": 0, "chunks": [{"content": "hi", "embedding": [1, 0]}]}, fh)

        result = run_cli("--json", "migrate-v2", source, os.path.join(temp_dir, "new"), env=cli_env)
        assert result.returncode == 0
        data = json.loads(result.stdout)
        assert data["output"].endswith("new.engram")
        assert len(codec.read_file(data["output"]).nodes) == 1


class TestMainInProcess:
    """Call main() directly."""

    def test_exit_codes(self, container, capsys):
        assert main(["--json", "--log-level", "WARNING", "verify", container]) == 0
        assert json.loads(capsys.readouterr().out)["valid"] is True
        assert main(["--log-level", "WARNING", "verify", container + ".missing"]) == 1
