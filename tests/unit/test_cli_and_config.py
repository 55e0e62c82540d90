from pathlib import Path

import fitz
import pytest

from slidesift.cli.main import main
from slidesift.core.config import load_paths, load_tuning
from slidesift.core.errors import ConfigurationError


def _write_pdf(path: Path, page_count: int) -> None:
    doc = fitz.open()
    for index in range(page_count):
        doc.new_page().insert_text((72, 72), f"Slide {index + 1}")
    path.write_bytes(doc.tobytes())
    doc.close()


def test_plan_command_prints_the_chunk_plan(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    deck = tmp_path / "deck.pdf"
    _write_pdf(deck, 14)

    code = main(["--project-root", str(tmp_path), "plan", str(deck)])

    out = capsys.readouterr().out
    assert code == 0
    assert "pages 1-12" in out
    assert "pages 13-14" in out
    assert "chunks=2" in out


def test_cli_reports_user_errors_with_exit_code_one(tmp_path: Path) -> None:
    deck = tmp_path / "deck.pdf"
    _write_pdf(deck, 3)

    assert main(["--project-root", str(tmp_path), "plan", str(deck), "--pages", "9-12"]) == 1
    assert main(["--project-root", str(tmp_path), "analyze", str(tmp_path / "missing")]) == 1


def test_paths_default_under_the_project_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SLIDESIFT_HOME", raising=False)
    paths = load_paths(tmp_path)

    assert paths.state_dir == tmp_path.resolve() / ".slidesift"
    assert paths.state_path.name == "batch_state.json"

    monkeypatch.setenv("SLIDESIFT_HOME", str(tmp_path / "elsewhere"))
    assert load_paths(tmp_path).state_dir == (tmp_path / "elsewhere").resolve()


def test_tuning_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SLIDESIFT_MAX_RETRIES", "4")
    monkeypatch.setenv("SLIDESIFT_RETRY_BASE_DELAY_SECONDS", "0.5")

    tuning = load_tuning("theme")

    assert tuning.kind == "theme"
    assert tuning.max_retries == 4
    assert tuning.retry_base_delay_seconds == 0.5

    monkeypatch.setenv("SLIDESIFT_RENDER_WORKERS", "many")
    with pytest.raises(ConfigurationError):
        load_tuning()
