"""Tests for the skpass command line via Click's test runner."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from skpass.cli import main


@pytest.fixture
def home(tmp_path: Path) -> Path:
    return tmp_path / ".skpass"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _run(runner: CliRunner, home: Path, *args: str, **kwargs):
    return runner.invoke(main, ["--home", str(home), *args], **kwargs)


@pytest.fixture
def initialized(runner: CliRunner, home: Path) -> Path:
    result = _run(runner, home, "init")
    assert result.exit_code == 0, result.output
    return home


class TestStoreCommands:
    """init / insert / show / ls / rm."""

    def test_help(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "scoped sovereign credential store" in result.output

    def test_init(self, runner: CliRunner, home: Path) -> None:
        result = _run(runner, home, "init")

        assert result.exit_code == 0, result.output
        assert "SKPass Store" in result.output
        assert (home / "store" / ".recipients").exists()
        assert (home / "store" / "shared" / ".recipients").exists()
        assert (home / "config.yaml").exists()

        again = _run(runner, home, "init")
        assert again.exit_code == 0
        assert "already set up" in again.output

    def test_insert_show_ls_rm(self, runner: CliRunner, initialized: Path) -> None:
        result = _run(runner, initialized, "insert", "shared/openai/api-key", "--value", "sk-123")
        assert result.exit_code == 0, result.output
        assert "Stored" in result.output

        shown = _run(runner, initialized, "show", "shared/openai/api-key")
        assert shown.exit_code == 0, shown.output
        assert "sk-123" in shown.output

        listed = _run(runner, initialized, "ls")
        assert listed.exit_code == 0
        assert "shared/openai/api-key" in listed.output

        removed = _run(runner, initialized, "rm", "shared/openai/api-key")
        assert removed.exit_code == 0
        assert "Removed" in removed.output
        assert "No entries" in _run(runner, initialized, "ls").output

    def test_insert_from_stdin(self, runner: CliRunner, initialized: Path) -> None:
        result = _run(runner, initialized, "insert", "shared/token", "--stdin", input="from-pipe")
        assert result.exit_code == 0, result.output
        assert "from-pipe" in _run(runner, initialized, "show", "shared/token").output

    def test_insert_refuses_overwrite(self, runner: CliRunner, initialized: Path) -> None:
        _run(runner, initialized, "insert", "shared/token", "--value", "one")

        result = _run(runner, initialized, "insert", "shared/token", "--value", "two")
        assert result.exit_code == 1
        assert "already exists" in result.output

        forced = _run(runner, initialized, "insert", "shared/token", "--value", "two", "--force")
        assert forced.exit_code == 0
        assert "two" in _run(runner, initialized, "show", "shared/token").output

    def test_missing_entry_exits_1(self, runner: CliRunner, initialized: Path) -> None:
        result = _run(runner, initialized, "show", "shared/nothing")
        assert result.exit_code == 1
        assert "EntryNotFound" in result.output

    def test_invalid_path_exits_1(self, runner: CliRunner, initialized: Path) -> None:
        result = _run(runner, initialized, "insert", "../escape", "--value", "x")
        assert result.exit_code == 1
        assert "InvalidPath" in result.output

    def test_commands_need_a_store(self, runner: CliRunner, home: Path) -> None:
        result = _run(runner, home, "ls")
        assert result.exit_code == 1
        assert "No store at" in result.output

    def test_stale(self, runner: CliRunner, initialized: Path) -> None:
        _run(runner, initialized, "insert", "shared/token", "--value", "x")
        result = _run(runner, initialized, "stale")
        assert result.exit_code == 0
        assert "All entries match" in result.output


class TestScopeAndKeyCommands:
    """scope / key / bot / rotate."""

    def test_scope_show(self, runner: CliRunner, initialized: Path) -> None:
        result = _run(runner, initialized, "scope", "show")
        assert result.exit_code == 0
        assert "shared/" in result.output
        assert "infrastructure/" in result.output

    def test_scope_set_and_undo(self, runner: CliRunner, initialized: Path) -> None:
        _run(runner, initialized, "key", "generate", "laptop")

        result = _run(runner, initialized, "scope", "add", "shared", "laptop")
        assert result.exit_code == 0, result.output
        assert "laptop" in result.output

        refused = _run(runner, initialized, "scope", "set", "shared", "master")
        assert refused.exit_code == 1
        assert "RecipientRemovalError" in refused.output

        undone = _run(runner, initialized, "scope", "undo", "shared")
        assert undone.exit_code == 0, undone.output
        assert "laptop" not in undone.output

    def test_key_list(self, runner: CliRunner, initialized: Path) -> None:
        result = _run(runner, initialized, "key", "list")
        assert result.exit_code == 0
        assert "master" in result.output
        assert "active" in result.output

    def test_key_export_import(self, runner: CliRunner, initialized: Path, tmp_path: Path) -> None:
        _run(runner, initialized, "key", "generate", "remote-bot")
        exported = _run(runner, initialized, "key", "export", "remote-bot")
        assert exported.exit_code == 0
        record = tmp_path / "remote-bot.json"
        record.write_text(exported.output)

        other = tmp_path / "other-home"
        _run(runner, other, "init")
        imported = _run(runner, other, "key", "import", str(record))
        assert imported.exit_code == 0, imported.output
        assert "remote-bot" in _run(runner, other, "key", "list").output

    def test_bot_add_grants_shared(self, runner: CliRunner, initialized: Path) -> None:
        _run(runner, initialized, "insert", "shared/openai/api-key", "--value", "sk-shared")

        result = _run(runner, initialized, "bot", "add", "giskard")
        assert result.exit_code == 0, result.output
        assert "bot-giskard" in result.output

        shown = _run(runner, initialized, "show", "shared/openai/api-key", "-i", "bot-giskard")
        assert shown.exit_code == 0, shown.output
        assert "sk-shared" in shown.output

        _run(runner, initialized, "insert", "infrastructure/x", "--value", "root-only")
        denied = _run(runner, initialized, "show", "infrastructure/x", "-i", "bot-giskard")
        assert denied.exit_code == 1
        assert "DecryptionFailed" in denied.output

    def test_rotate(self, runner: CliRunner, initialized: Path) -> None:
        _run(runner, initialized, "insert", "shared/openai/api-key", "--value", "sk-shared")
        _run(runner, initialized, "bot", "add", "giskard")
        _run(runner, initialized, "key", "generate", "bot-giskard-2")

        dry = _run(runner, initialized, "rotate", "bot-giskard", "bot-giskard-2", "--dry-run")
        assert dry.exit_code == 0
        assert "shared/" in dry.output
        assert "bot-giskard/" in dry.output

        result = _run(runner, initialized, "rotate", "bot-giskard", "bot-giskard-2", "--reason", "test")
        assert result.exit_code == 0, result.output
        assert "Rotation" in result.output

        shown = _run(runner, initialized, "show", "shared/openai/api-key", "-i", "bot-giskard-2")
        assert "sk-shared" in shown.output
        old = _run(runner, initialized, "show", "shared/openai/api-key", "-i", "bot-giskard")
        assert old.exit_code == 1
        assert "DecryptionFailed" in old.output

    def test_bundle_moves_a_bot_key(self, runner: CliRunner, initialized: Path, tmp_path: Path) -> None:
        added = _run(runner, initialized, "bot", "add", "giskard")
        assert added.exit_code == 0, added.output
        assert (initialized / "bundles" / "bot-giskard.bundle").exists()

        exported = _run(runner, initialized, "key", "export-bundle", "bot-giskard", "--output-dir", str(tmp_path / "out"))
        assert exported.exit_code == 0, exported.output
        bundle = tmp_path / "out" / "bot-giskard.bundle"
        assert bundle.exists()

        server = tmp_path / "server-home"
        imported = _run(
            runner, server, "key", "import-bundle", str(bundle),
            "--recovery-key", str(initialized / "recovery.key"),
        )
        assert imported.exit_code == 0, imported.output
        assert "bot-giskard" in imported.output
        identities = (server / "keyring" / "identities.json").read_text()
        assert '"bot-giskard"' in identities
        assert '"master"' in identities
        assert len(list((server / "keyring" / "private").glob("*.key"))) == 1

    def test_import_bundle_needs_recovery_key(self, runner: CliRunner, initialized: Path, tmp_path: Path) -> None:
        server = tmp_path / "server-home"
        result = _run(runner, server, "key", "import-bundle", str(initialized / "bundles" / "master.bundle"))
        assert result.exit_code == 1
        assert "UnknownIdentity" in result.output

    def test_rotate_refreshes_bundle(self, runner: CliRunner, initialized: Path) -> None:
        _run(runner, initialized, "bot", "add", "giskard")
        _run(runner, initialized, "key", "generate", "bot-giskard-2")

        result = _run(runner, initialized, "rotate", "bot-giskard", "bot-giskard-2")
        assert result.exit_code == 0, result.output
        assert "Key bundle updated" in result.output
        assert (initialized / "bundles" / "bot-giskard-2.bundle").exists()

    def test_key_revoke(self, runner: CliRunner, initialized: Path) -> None:
        _run(runner, initialized, "bot", "add", "giskard")

        result = _run(runner, initialized, "key", "revoke", "bot-giskard", "--yes")
        assert result.exit_code == 0, result.output
        assert "Revocation" in result.output

        listed = _run(runner, initialized, "key", "list", "--all")
        assert "revoked" in listed.output


class TestOperationalCommands:
    """backup / sync / tokens."""

    def test_backup_snapshot_list_verify(self, runner: CliRunner, initialized: Path) -> None:
        _run(runner, initialized, "insert", "shared/token", "--value", "x")

        result = _run(runner, initialized, "backup", "snapshot")
        assert result.exit_code == 0, result.output
        assert "Snapshot written" in result.output

        listed = _run(runner, initialized, "backup", "list")
        assert "1" in listed.output
        assert "snapshot(s)" in listed.output

        archive = next((initialized / "backups").glob("credentials-*.tar.gz"))
        verified = _run(runner, initialized, "backup", "verify", archive.name)
        assert verified.exit_code == 0, verified.output
        assert "OK" in verified.output

    def test_backup_run_without_remote(self, runner: CliRunner, initialized: Path) -> None:
        result = _run(runner, initialized, "backup", "run")
        assert result.exit_code == 0, result.output
        assert "Backup cycle" in result.output

    def test_sync_without_git(self, runner: CliRunner, initialized: Path) -> None:
        result = _run(runner, initialized, "sync", "status")
        assert result.exit_code == 1
        assert "DistributionError" in result.output

    def test_tokens_from_env(self, runner: CliRunner, initialized: Path, monkeypatch) -> None:
        monkeypatch.delenv("TF_VAR_hcloud_token", raising=False)
        result = _run(
            runner, initialized, "tokens", "resolve", "hcloud_token", "--no-prompt",
            env={"HCLOUD_TOKEN": "hc-0123456789abcdef"},
        )
        assert result.exit_code == 0, result.output
        assert "env" in result.output
        assert "0123456789" not in result.output

    def test_tokens_from_store(self, runner: CliRunner, initialized: Path, monkeypatch) -> None:
        for var in ("HCLOUD_TOKEN", "TF_VAR_hcloud_token"):
            monkeypatch.delenv(var, raising=False)
        _run(runner, initialized, "insert", "infrastructure/hetzner/api-token", "--value", "hc-store")

        result = _run(runner, initialized, "tokens", "resolve", "hcloud_token", "--no-prompt")
        assert result.exit_code == 0, result.output
        assert "store" in result.output

    def test_tokens_write_tfvars(self, runner: CliRunner, initialized: Path, monkeypatch) -> None:
        monkeypatch.delenv("TF_VAR_hcloud_token", raising=False)
        with (initialized / "config.yaml").open("a") as f:
            f.write("tfvars_file: terraform.tfvars\n")

        result = _run(
            runner, initialized, "tokens", "resolve", "hcloud_token", "--no-prompt",
            "--write-tfvars", env={"HCLOUD_TOKEN": "hc-written"},
        )
        assert result.exit_code == 0, result.output
        assert 'hcloud_token = "hc-written"' in (initialized / "terraform.tfvars").read_text()

    def test_tokens_unavailable(self, runner: CliRunner, initialized: Path, monkeypatch) -> None:
        for var in ("HCLOUD_TOKEN", "TF_VAR_hcloud_token"):
            monkeypatch.delenv(var, raising=False)
        result = _run(runner, initialized, "tokens", "resolve", "hcloud_token", "--no-prompt")
        assert result.exit_code == 1
        assert "TokenUnavailable" in result.output

    def test_unknown_token(self, runner: CliRunner, initialized: Path) -> None:
        result = _run(runner, initialized, "tokens", "resolve", "nope", "--no-prompt")
        assert result.exit_code == 1
        assert "Unknown token" in result.output
