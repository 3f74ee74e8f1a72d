"""
Operator CLI against the in-process backends.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json

import pytest

from medchain_anchor import cli


@pytest.fixture
def stub_env(monkeypatch):
    monkeypatch.setenv("CHAIN_BACKEND", "stub")
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    return monkeypatch


def test_parser_rejects_unknown_kind():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["verify", "BANDAGE", "1"])


def test_parser_accepts_lowercase_kind():
    args = cli.build_parser().parse_args(["status", "medicine", "101"])
    assert args.kind.value == "MEDICINE"
    assert args.id == 101


def test_verify_prints_json(stub_env, capsys):
    assert cli.main(["verify", "MEDICINE", "101"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["verdict"] == "ABSENT"


def test_verify_many_prints_summary(stub_env, capsys):
    assert cli.main(["verify", "STOCK", "1", "2"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["total"] == 2
    assert out["summary"]["ABSENT"] == 2


def test_stats_reports_counts(stub_env, capsys):
    assert cli.main(["stats"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["counts"] == {"MEDICINE": 0, "STOCK": 0, "RELEASE": 0, "REMOVAL": 0}
    assert out["block"] == 0


def test_init_db_needs_postgres(stub_env, capsys):
    assert cli.main(["init-db"]) == 1
    assert "postgres" in json.loads(capsys.readouterr().out)["error"]


def test_status_of_unknown_row_is_an_error(stub_env, capsys):
    assert cli.main(["status", "MEDICINE", "5"]) == 1
    assert json.loads(capsys.readouterr().out)["error"] == "NOT_FOUND"
