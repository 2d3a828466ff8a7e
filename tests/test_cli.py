from __future__ import annotations

import pytest

import bookbrief.cli as cli
from bookbrief.api import BackendUnavailableError

from conftest import FakeBackend, FakeDiagramEngine


@pytest.fixture
def fake_backend(monkeypatch) -> FakeBackend:
    backend = FakeBackend()
    monkeypatch.setattr(cli, "BackendClient", lambda *args, **kwargs: backend)
    monkeypatch.setattr(cli, "MermaidCliEngine", lambda *args, **kwargs: FakeDiagramEngine())
    return backend


def _run(tmp_path, *argv: str) -> int:
    return cli.main([*argv, "--store", str(tmp_path / "store.json")])


def test_books_lists_library(fake_backend, tmp_path, capsys) -> None:
    assert _run(tmp_path, "books") == 0
    out = capsys.readouterr().out
    assert "Sample Book" in out
    assert "book-1" in out


def test_toc_shows_expanded_children(fake_backend, tmp_path, capsys) -> None:
    assert _run(tmp_path, "toc", "book-1") == 0
    collapsed = capsys.readouterr().out
    assert "Intro" in collapsed
    assert "(c1.1)" not in collapsed

    assert _run(tmp_path, "toc", "book-1", "--expand", "c1") == 0
    expanded = capsys.readouterr().out
    assert "(c1.1)" in expanded


def test_read_expanded_prints_full_text(fake_backend, tmp_path, capsys) -> None:
    assert _run(tmp_path, "read", "book-1", "c1", "--expanded") == 0
    out = capsys.readouterr().out
    assert "Intro" in out
    assert "Sub text" in out


def test_summarize_writes_html_and_marks_chapter(fake_backend, tmp_path, capsys) -> None:
    fake_backend.summary_response["summary"] = "## Gist\n\n```mermaid\ngraph TD\n  A --> B\n```"
    output = tmp_path / "summary.html"
    exit_code = _run(
        tmp_path, "summarize", "book-1", "c1", "--expanded", "--ratio", "0.33", "--html", str(output)
    )
    assert exit_code == 0
    assert "28% compressed" in capsys.readouterr().out
    assert fake_backend.summarize_requests[0]["ratio"] == 0.3
    assert fake_backend.summarize_requests[0]["content"] == "Intro\nSub text"
    page = output.read_text(encoding="utf-8")
    assert "<svg" in page
    assert '<h2 class="bb-h2">Gist</h2>' in page

    assert _run(tmp_path, "toc", "book-1") == 0
    assert "*" in capsys.readouterr().out


def test_config_set_updates_backend(fake_backend, tmp_path, capsys) -> None:
    assert _run(tmp_path, "config", "--set", "modelName=gpt-4o-mini") == 0
    assert fake_backend.config["modelName"] == "gpt-4o-mini"
    assert "gpt-4o-mini" in capsys.readouterr().out

    assert _run(tmp_path, "config", "--set", "bogus=1") == 1
    assert "bogus" in capsys.readouterr().err


def test_backend_failure_exits_with_message(fake_backend, tmp_path, capsys) -> None:
    def _offline():
        raise BackendUnavailableError("Failed to contact backend")

    fake_backend.list_books = _offline
    assert _run(tmp_path, "books") == 1
    assert "Failed to contact backend" in capsys.readouterr().err


def test_unknown_chapter_exits_with_message(fake_backend, tmp_path, capsys) -> None:
    assert _run(tmp_path, "read", "book-1", "nope") == 1
    assert "Chapter not found" in capsys.readouterr().err


def test_delete_with_yes_skips_prompt(fake_backend, tmp_path) -> None:
    assert _run(tmp_path, "delete", "book-1", "--yes") == 0
    assert fake_backend.deleted == ["book-1"]


def test_no_arguments_prints_help(capsys) -> None:
    assert cli.main([]) == 0
    assert "bookbrief" in capsys.readouterr().out


def test_ratio_outside_range_is_rejected(fake_backend, tmp_path, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        _run(tmp_path, "summarize", "book-1", "c2", "--ratio", "0.95")
    assert excinfo.value.code == 2
    assert "outside 0.1-0.8" in capsys.readouterr().err
    assert fake_backend.summarize_requests == []


def test_off_step_ratio_reports_snapped_value(fake_backend, tmp_path, capsys) -> None:
    assert _run(tmp_path, "summarize", "book-1", "c2", "--ratio", "0.33") == 0
    assert "Using ratio 0.3" in capsys.readouterr().err
    assert fake_backend.summarize_requests[0]["ratio"] == 0.3
