"""Tests for token resolution and the tfvars cache."""

from __future__ import annotations

import stat
from pathlib import Path

import click
import pytest

from skpass.errors import TokenUnavailable
from skpass.models import IdentityKey
from skpass.store import ScopedStore
from skpass.tokens import (
    TokenResolver,
    TokenSource,
    TokenSpec,
    tfvars_get,
    tfvars_update,
    write_tfvars,
)

HCLOUD = TokenSpec(
    name="hcloud_token",
    env_vars=["HCLOUD_TOKEN", "TF_VAR_hcloud_token"],
    store_path="infrastructure/hetzner/api-token",
)


class TestTfvars:
    """Reading and rewriting terraform.tfvars."""

    def test_get(self, tmp_path: Path) -> None:
        path = tmp_path / "terraform.tfvars"
        path.write_text('hcloud_token = "abc"\nssh_key = ""\n')
        assert tfvars_get("hcloud_token", path) == "abc"
        assert tfvars_get("ssh_key", path) == ""
        assert tfvars_get("missing", path) is None
        assert tfvars_get("x", tmp_path / "nope.tfvars") is None

    def test_update_existing_key_only(self, tmp_path: Path) -> None:
        path = tmp_path / "terraform.tfvars"
        path.write_text('# comment\nhcloud_token = "old"\nregion = "fsn1"\n')

        assert tfvars_update("hcloud_token", "new", path)
        assert not tfvars_update("not_there", "x", path)

        assert path.read_text() == '# comment\nhcloud_token = "new"\nregion = "fsn1"\n'
        assert (tmp_path / "terraform.tfvars.bak").read_text().count('"old"') == 1

    def test_special_characters_survive(self, tmp_path: Path) -> None:
        path = tmp_path / "terraform.tfvars"
        path.write_text('hcloud_token = ""\n')
        nasty = 'a"b\\c${d}|e&f/g'

        tfvars_update("hcloud_token", nasty, path)

        assert tfvars_get("hcloud_token", path) == nasty
        assert len(path.read_text().splitlines()) == 1

    def test_write_creates_once(self, tmp_path: Path) -> None:
        path = tmp_path / "infra" / "terraform.tfvars"

        assert write_tfvars(path, {"hcloud_token": "abc", "region": "fsn1"}, header="generated")
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert path.read_text().startswith("# generated\n")
        assert tfvars_get("region", path) == "fsn1"

        assert not write_tfvars(path, {"hcloud_token": "other"})
        assert tfvars_get("hcloud_token", path) == "abc"


class TestResolver:
    """Source precedence."""

    def test_cache_wins(self, tmp_path: Path) -> None:
        path = tmp_path / "terraform.tfvars"
        path.write_text('hcloud_token = "from-cache"\n')
        resolver = TokenResolver(tfvars_file=path, environ={"HCLOUD_TOKEN": "from-env"})

        token = resolver.resolve(HCLOUD)

        assert token.value == "from-cache"
        assert token.source == TokenSource.CACHE

    def test_empty_cache_falls_through(self, tmp_path: Path) -> None:
        path = tmp_path / "terraform.tfvars"
        path.write_text('hcloud_token = ""\n')
        resolver = TokenResolver(tfvars_file=path, environ={"TF_VAR_hcloud_token": "tf"})
        token = resolver.resolve(HCLOUD)
        assert (token.value, token.source) == ("tf", TokenSource.ENV)

    def test_env_order(self) -> None:
        resolver = TokenResolver(environ={"HCLOUD_TOKEN": "first", "TF_VAR_hcloud_token": "second"})
        assert resolver.resolve(HCLOUD).value == "first"

    def test_store_first_line(self, store: ScopedStore, master_key: IdentityKey) -> None:
        store.put("infrastructure/hetzner/api-token", b"tok-123\nnote: rotated monthly\n")
        resolver = TokenResolver(store=store, identity=master_key, interactive=False, environ={})

        token = resolver.resolve(HCLOUD)

        assert (token.value, token.source) == ("tok-123", TokenSource.STORE)

    def test_store_unreadable_is_skipped(
        self, store: ScopedStore, master, bot_a_key: IdentityKey, caplog
    ) -> None:
        store.put("infrastructure/hetzner/api-token", b"root-only")
        resolver = TokenResolver(store=store, identity=bot_a_key, interactive=False, environ={})

        with pytest.raises(TokenUnavailable, match="hcloud_token"):
            resolver.resolve(HCLOUD)
        assert "Cannot read" in caplog.text

    def test_store_binary_entry_falls_through(
        self, store: ScopedStore, master_key: IdentityKey, monkeypatch, caplog
    ) -> None:
        store.put("infrastructure/hetzner/api-token", b"\xff\xfe\x00binary")
        monkeypatch.setattr(click, "prompt", lambda *a, **kw: "typed")
        resolver = TokenResolver(store=store, identity=master_key, environ={})

        token = resolver.resolve(HCLOUD)

        assert (token.value, token.source) == ("typed", TokenSource.PROMPT)
        assert "not UTF-8" in caplog.text

    def test_prompt(self, monkeypatch) -> None:
        monkeypatch.setattr(click, "prompt", lambda *a, **kw: "  typed  ")
        token = TokenResolver(environ={}).resolve(HCLOUD)
        assert (token.value, token.source) == ("typed", TokenSource.PROMPT)

    def test_empty_prompt_is_unavailable(self, monkeypatch) -> None:
        monkeypatch.setattr(click, "prompt", lambda *a, **kw: "")
        with pytest.raises(TokenUnavailable, match="prompt"):
            TokenResolver(environ={}).resolve(HCLOUD)

    def test_non_interactive_lists_sources(self) -> None:
        with pytest.raises(TokenUnavailable, match=r"\$HCLOUD_TOKEN"):
            TokenResolver(interactive=False, environ={}).resolve(HCLOUD)

    def test_value_hidden_from_repr(self) -> None:
        token = TokenResolver(environ={"HCLOUD_TOKEN": "s3cret"}).resolve(HCLOUD)
        assert "s3cret" not in repr(token)

    def test_resolve_all(self) -> None:
        other = TokenSpec(name="telegram_bot_token", env_vars=["TELEGRAM_BOT_TOKEN"])
        resolver = TokenResolver(environ={"HCLOUD_TOKEN": "h", "TELEGRAM_BOT_TOKEN": "t"})
        resolved = resolver.resolve_all([HCLOUD, other])
        assert {k: v.value for k, v in resolved.items()} == {
            "hcloud_token": "h", "telegram_bot_token": "t",
        }

    def test_tfvars_key_override(self, tmp_path: Path) -> None:
        path = tmp_path / "terraform.tfvars"
        path.write_text('hetzner = "via-alias"\n')
        spec = TokenSpec(name="hcloud_token", tfvars_key="hetzner")
        assert TokenResolver(tfvars_file=path, environ={}).resolve(spec).value == "via-alias"
