"""Tests for the ``cortexmem`` command-line interface."""

from __future__ import annotations

import json
import logging

import pytest

from cortexmem import __version__
from cortexmem.cli import main
from cortexmem.store import MemoryStore


@pytest.fixture(autouse=True)
def _isolated(tmp_path, monkeypatch):
    """Keep the user's config file and environment out of every run."""
    monkeypatch.setenv("CORTEX_CONFIG", str(tmp_path / "no-config.json"))
    for var in ("CORTEX_PASSWORD", "CORTEX_GLOBAL", "CORTEX_DB_PATH", "CORTEX_PROJECT_ID"):
        monkeypatch.delenv(var, raising=False)
    yield
    logger = logging.getLogger("cortexmem")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture()
def run(tmp_path, capsys):
    """Run the CLI against a temporary database and capture its output."""
    db = str(tmp_path / "cli.db")

    def _run(*argv, project="proj-cli"):
        base = ["--db", db, "--embedding", "none"]
        if project is not None:
            base += ["--project-id", project]
        code = main([*base, *argv])
        out, err = capsys.readouterr()
        return code, out, err

    _run.db = db
    return _run


# ------------------------------------------------------------------
# Basics
# ------------------------------------------------------------------


def test_version(capsys):
    with pytest.raises(SystemExit) as info:
        main(["--version"])
    assert info.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "usage" in capsys.readouterr().out.lower()


def test_bad_arguments_exit_with_usage_error(run):
    with pytest.raises(SystemExit) as info:
        run("add", "text", "--type", "opinion", "--source", "s")
    assert info.value.code == 2


# ------------------------------------------------------------------
# CRUD
# ------------------------------------------------------------------


def test_add_get_list(run):
    code, out, _ = run(
        "add", "We use JWT tokens", "--type", "decision", "--source", "adr", "--tag", "auth"
    )
    assert code == 0
    assert out.strip() == "Added memory 1"

    code, out, _ = run("get", "1")
    assert code == 0
    assert "We use JWT tokens" in out
    assert "decision" in out
    assert "auth" in out

    code, out, _ = run("get", "1", "--format", "json")
    data = json.loads(out)
    assert data["content"] == "We use JWT tokens"
    assert data["tags"] == ["auth"]
    assert data["project_id"] == "proj-cli"

    code, out, _ = run("list", "--format", "json")
    assert [item["id"] for item in json.loads(out)] == [1]

    code, out, _ = run("list")
    assert "Showing 1 memories" in out


def test_add_blank_content_fails(run):
    code, _, err = run("add", "   ", "--type", "note", "--source", "s")
    assert code == 1
    assert err.startswith("Error:")
    assert json.loads(run("list", "--format", "json")[1]) == []


def test_get_missing(run):
    code, _, err = run("get", "99")
    assert code == 1
    assert "No memory found" in err


def test_update_and_delete(run):
    run("add", "Redis is the cache", "--type", "fact", "--source", "s")

    code, out, _ = run("update", "1", "--content", "Memcached is the cache")
    assert code == 0
    assert json.loads(run("get", "1", "--format", "json")[1])["content"] == (
        "Memcached is the cache"
    )

    assert run("update", "1")[0] == 1
    assert run("update", "42", "--content", "x")[0] == 1

    code, out, _ = run("delete", "1")
    assert code == 0
    assert run("delete", "1")[0] == 1


def test_clear_requires_confirmation(run):
    run("add", "a", "--type", "note", "--source", "s")
    run("add", "b", "--type", "note", "--source", "s")

    assert run("clear")[0] == 1
    code, out, _ = run("clear", "--yes")
    assert code == 0
    assert "Removed 2 memories" in out


# ------------------------------------------------------------------
# Search, stats and projects
# ------------------------------------------------------------------


def test_search(run):
    run("add", "The API uses PostgreSQL", "--type", "fact", "--source", "s")
    run("add", "Frontend uses React", "--type", "fact", "--source", "s")

    code, out, _ = run("search", "postgresql", "--format", "json")
    assert code == 0
    assert [r["content"] for r in json.loads(out)] == ["The API uses PostgreSQL"]

    code, out, _ = run("search", "nothing-here")
    assert "No memories found" in out


def test_semantic_search_without_provider(run):
    run("add", "The API uses PostgreSQL", "--type", "fact", "--source", "s")
    code, out, _ = run("search", "postgresql", "--semantic", "--format", "json")
    assert code == 0
    assert json.loads(out)[0]["similarity"] == 0.5


def test_stats_and_projects(run):
    run("add", "a", "--type", "fact", "--source", "s")
    run("add", "b", "--type", "note", "--source", "s", project="other")

    code, out, _ = run("stats")
    assert code == 0
    assert "proj-cli" in out
    assert "fact:" in out
    assert "note:" not in out

    code, out, _ = run("projects")
    assert "proj-cli" in out
    assert "other" in out


def test_global_flag_sees_every_project(run):
    run("add", "a", "--type", "fact", "--source", "s")
    run("add", "b", "--type", "fact", "--source", "s", project="other")
    code, out, _ = run("--global", "list", "--format", "json", project=None)
    assert code == 0
    assert len(json.loads(out)) == 2


def test_password_flag_encrypts(run):
    code, _, _ = run("--password", "pw", "add", "secret plan", "--type", "note", "--source", "s")
    assert code == 0
    with MemoryStore(run.db, project_id="proj-cli") as store:
        assert store.get(1).content != "secret plan"
    code, out, _ = run("--password", "pw", "get", "1", "--format", "json")
    assert json.loads(out)["content"] == "secret plan"


def test_list_encrypted_rows_without_password(run):
    run("--password", "pw", "add", "secret plan", "--type", "note", "--source", "s")
    code, out, _ = run("list")
    assert code == 0
    assert "<encrypted>" in out
    assert "secret plan" not in out


# ------------------------------------------------------------------
# Route, fuse, guard and embed
# ------------------------------------------------------------------


def test_route(run):
    run("add", "We use JWT tokens for authentication", "--type", "decision", "--source", "s")
    run("add", "Team standup is at 10am", "--type", "note", "--source", "s")

    code, out, _ = run("route", "implement JWT authentication", "--scores")
    assert code == 0
    first = out.splitlines()[0]
    assert "#1" in first
    assert "type:decision" in first


def test_route_empty(run):
    code, out, _ = run("route", "anything")
    assert code == 0
    assert "No relevant memories" in out


def test_fuse(run, tmp_path):
    notes = tmp_path / "notes.md"
    notes.write_text("Freeze deploys on Friday", encoding="utf-8")
    run("add", "We use JWT for auth", "--type", "decision", "--source", "s")

    code, out, err = run(
        "fuse", "--memory", "jwt", "--file", str(notes), "--session", "current task: login"
    )
    assert code == 0
    assert "[memory] [decision] We use JWT for auth" in out
    assert "[file] Freeze deploys on Friday" in out
    assert "[session] current task: login" in out
    assert "tokens" in err


def test_fuse_json_and_no_sources(run):
    code, out, _ = run("fuse", "--session", "hello", "--format", "json")
    assert code == 0
    assert json.loads(out) == [{"type": "session", "content": "hello", "weight": 1.0}]
    assert run("fuse")[0] == 1


def test_guard(run):
    code, out, err = run("guard", "mail ana@example.com", "--filter", "emails")
    assert code == 0
    assert out.strip() == "mail [REDACTED]"
    assert "emails: 1" in err

    code, out, _ = run("guard", "mail ana@example.com", "--filter", "emails", "--mode", "block")
    assert out.strip() == ""


def test_embed_without_provider(run):
    run("add", "a", "--type", "note", "--source", "s")
    code, _, err = run("embed")
    assert code == 1
    assert "No embedding provider" in err
