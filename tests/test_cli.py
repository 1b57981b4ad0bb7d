from unittest.mock import patch

import pytest

from imagebatch import cli, session
from imagebatch.cli import main
from imagebatch.models import ImageBatchConfig
from imagebatch.queue import GeneratedImage, GenerationBackend, GenerationFailure


class StubBackend(GenerationBackend):
    def __init__(self, fail_prompts=()):
        self.fail_prompts = set(fail_prompts)

    def generate(self, prompt, config, ref_images, token):
        if prompt in self.fail_prompts:
            raise GenerationFailure("No image returned")
        return GeneratedImage(data=b"pixels")


@pytest.fixture
def prompts_file(tmp_path):
    path = tmp_path / "prompts.txt"
    path.write_text("# cats\na cat\n\na dog\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture
def stub_open_queue(monkeypatch):
    """Route the CLI to a stub backend with no delay between jobs."""
    backend = StubBackend()
    real_open_queue = session.open_queue

    def fake_open_queue(db_path, config, **kwargs):
        manager = real_open_queue(db_path, config, backend=backend, **kwargs)
        manager.set_delay(0)
        return manager

    monkeypatch.setattr(session, "open_queue", fake_open_queue)
    return backend


def field(out, label):
    """Value printed after '<label>:' in a status block."""
    line = next(l for l in out.splitlines() if l.startswith(f"{label}:"))
    return line.split(":", 1)[1].strip()


def run_cli(*args):
    with patch("sys.argv", ["imagebatch", *args]):
        main()


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["imagebatch", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_enqueue_help():
    """Test enqueue subcommand help."""
    with patch("sys.argv", ["imagebatch", "enqueue", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    with patch("sys.argv", ["imagebatch"]):
        main()
        captured = capsys.readouterr()
        assert "usage:" in captured.out.lower()


def test_read_prompts_file_skips_comments(prompts_file):
    assert session.read_prompts_file(prompts_file) == ["a cat", "a dog"]


def test_cli_enqueue_and_status(capsys, prompts_file, db_path, stub_open_queue):
    """Test enqueue persists jobs that a later invocation can see."""
    run_cli("--db", db_path, "enqueue", prompts_file, "-n", "2")
    assert "Enqueued 4 jobs" in capsys.readouterr().out

    run_cli("--db", db_path, "queue", "status")
    out = capsys.readouterr().out
    assert "QUEUE STATUS" in out
    assert field(out, "Pending") == "4"


def test_cli_run_completes(capsys, prompts_file, db_path, stub_open_queue):
    run_cli("--db", db_path, "enqueue", prompts_file)

    with pytest.raises(SystemExit) as exc_info:
        run_cli("--db", db_path, "run")

    assert exc_info.value.code == 0
    out = capsys.readouterr().out
    assert "RUN SUMMARY" in out
    assert field(out, "Completed") == "2"


def test_cli_run_exits_nonzero_on_failure(prompts_file, db_path, stub_open_queue):
    stub_open_queue.fail_prompts.add("a dog")
    run_cli("--db", db_path, "enqueue", prompts_file)

    with pytest.raises(SystemExit) as exc_info:
        run_cli("--db", db_path, "run")

    assert exc_info.value.code == 1


def test_cli_clear_requires_confirmation(capsys, prompts_file, db_path, stub_open_queue):
    run_cli("--db", db_path, "enqueue", prompts_file)

    with pytest.raises(SystemExit) as exc_info:
        run_cli("--db", db_path, "queue", "clear")
    assert exc_info.value.code == 1

    run_cli("--db", db_path, "queue", "clear", "--yes")
    assert "Queue cleared" in capsys.readouterr().out


def test_print_status_low_confidence(capsys, db_path):
    manager = session.open_queue(db_path, ImageBatchConfig(), backend=StubBackend())
    cli._print_status(manager)
    out = capsys.readouterr().out
    assert field(out, "State") == "idle"
    assert "(low confidence)" in out
