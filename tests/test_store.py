"""Tests for the credential store file formats."""
from __future__ import annotations

import json
import os
from datetime import date
from pathlib import Path

import pytest

from zivctl.errors import StoreIOError
from zivctl.store import (
    CredentialStore,
    ServiceConfig,
    format_ledger_line,
    ledger_token,
    parse_ledger_line,
)


def _store(tmp_path: Path) -> CredentialStore:
    return CredentialStore(tmp_path / "config.json", tmp_path / "users.db")


def test_load_configuration_missing_file_is_error(tmp_path: Path) -> None:
    """An absent service config is never treated as empty."""
    with pytest.raises(StoreIOError, match="not found"):
        _store(tmp_path).load_configuration()


def test_load_configuration_invalid_json_is_error(tmp_path: Path) -> None:
    """Corrupt JSON surfaces as an IO error."""
    (tmp_path / "config.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(StoreIOError, match="corrupted"):
        _store(tmp_path).load_configuration()


def test_auth_config_must_be_string_list(tmp_path: Path) -> None:
    """A malformed secret list is rejected rather than silently coerced."""
    (tmp_path / "config.json").write_text(
        json.dumps({"auth": {"mode": "passwords", "config": [1, 2]}}), encoding="utf-8"
    )

    with pytest.raises(StoreIOError, match="auth.config"):
        _store(tmp_path).load_configuration()


def test_configuration_round_trip_preserves_unknown_keys(tmp_path: Path) -> None:
    """Keys the tool does not manage survive a load/save cycle."""
    document = {
        "listen": ":5667",
        "cert": "/etc/zivpn/zivpn.crt",
        "key": "/etc/zivpn/zivpn.key",
        "obfs": "zivpn",
        "auth": {"mode": "passwords", "config": ["zi"], "extra": True},
        "mtu": 1400,
    }
    (tmp_path / "config.json").write_text(json.dumps(document), encoding="utf-8")
    store = _store(tmp_path)

    config = store.load_configuration()
    config.credentials.append("alice")
    store.save_configuration(config)

    text = (tmp_path / "config.json").read_text(encoding="utf-8")
    saved = json.loads(text)
    assert text.endswith("}\n")
    assert '\n  "listen"' in text
    assert saved["auth"] == {"mode": "passwords", "config": ["zi", "alice"], "extra": True}
    assert saved["mtu"] == 1400


def test_save_configuration_keeps_file_mode(tmp_path: Path) -> None:
    """Atomic replacement keeps the permissions of the file it replaces."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps(ServiceConfig().to_dict()), encoding="utf-8")
    os.chmod(path, 0o600)
    store = _store(tmp_path)

    store.save_configuration(store.load_configuration())

    assert path.stat().st_mode & 0o777 == 0o600
    assert not list(tmp_path.glob(".config.json.*"))


def test_ledger_missing_file_reads_empty(tmp_path: Path) -> None:
    """A missing ledger is an empty ledger."""
    assert _store(tmp_path).load_ledger() == []


def test_ledger_append_and_save(tmp_path: Path) -> None:
    """Append adds one record; save rewrites the whole file with a trailing newline."""
    store = _store(tmp_path)
    store.append_ledger("alice | 2024-01-31")
    store.append_ledger("bob | 2024-02-01")

    assert store.load_ledger() == ["alice | 2024-01-31", "bob | 2024-02-01"]

    store.save_ledger(["bob | 2024-02-01"])
    assert (tmp_path / "users.db").read_text(encoding="utf-8") == "bob | 2024-02-01\n"


def test_load_entries_skips_malformed_lines(tmp_path: Path) -> None:
    """Lines without the delimiter are not records."""
    (tmp_path / "users.db").write_text(
        "alice | 2024-01-31\nlegacy-line\n\n  bob|2024-02-01  \n", encoding="utf-8"
    )

    entries = _store(tmp_path).load_entries()

    assert [(entry.secret, entry.expiry) for entry in entries] == [
        ("alice", "2024-01-31"),
        ("bob", "2024-02-01"),
    ]


def test_ledger_helpers() -> None:
    """Formatting and token extraction agree with the on-disk format."""
    assert format_ledger_line("alice", date(2024, 1, 31)) == "alice | 2024-01-31"
    assert parse_ledger_line("no delimiter") is None
    assert ledger_token("alice | 2024-01-31") == "alice"
    assert ledger_token("  bare-secret ") == "bare-secret"
    entry = parse_ledger_line("carol | someday")
    assert entry is not None
    assert entry.expiry_date() is None
