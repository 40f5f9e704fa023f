import html
import json
from pathlib import Path

import pytest
from pypdf import PdfWriter


class FakeRenderer:
    """Stands in for the external renderer; writes a one-page PDF on success."""

    def __init__(self, command=None, timeout_seconds=180, run_logger=None, fail_calls=0, fail_all=False, available=True):
        self.command = command
        self.fail_calls = fail_calls
        self.fail_all = fail_all
        self.available = available
        self.calls = []

    def is_available(self):
        if self.available:
            return True, ""
        return False, "Renderer 'email2pdf' was not found on PATH."

    def render(self, input_path, output_path):
        with open(input_path, "rb") as handle:
            self.calls.append((input_path, handle.read()))
        call_number = len(self.calls)
        if self.fail_all or call_number <= self.fail_calls:
            return False, [f"mock failure {call_number}"]

        writer = PdfWriter()
        writer.add_blank_page(width=72, height=72)
        with open(output_path, "wb") as handle:
            writer.write(handle)
        return True, []


class ArchiveBuilder:
    """Writes an archive folder in the exporter's layout."""

    def __init__(self, root: Path, list_name: str = "testgroup"):
        self.root = root
        (root / "email").mkdir(parents=True, exist_ok=True)
        (root / "about").mkdir(parents=True, exist_ok=True)
        (root / "about" / "about.json").write_text(json.dumps({"name": list_name}), encoding="utf-8")

    @staticmethod
    def export_encode(raw_message: str) -> str:
        """Mimic the exporter: CRLF line endings and entity-encoded text."""
        return html.escape(raw_message.replace("\n", "\r\n"), quote=False)

    def add_message(self, msg_id, raw_message=None, encode=True, **fields) -> Path:
        record = {"msgId": msg_id}
        if raw_message is not None:
            record["rawEmail"] = self.export_encode(raw_message) if encode else raw_message
        record.update(fields)
        path = self.root / "email" / f"{msg_id}_raw.json"
        path.write_text(json.dumps(record), encoding="utf-8")
        return path

    def add_attachment(self, folder: str, file_id, filename: str, data: bytes) -> Path:
        directory = self.root / folder
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{file_id}-{filename}"
        path.write_bytes(data)
        return path

    def add_topic(self, topic_id, record: dict) -> Path:
        directory = self.root / "topics"
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{topic_id}.json"
        path.write_text(json.dumps(record), encoding="utf-8")
        return path


@pytest.fixture
def io_dirs(tmp_path: Path):
    source_dir = tmp_path / "archive"
    destination_dir = tmp_path / "output"
    source_dir.mkdir(parents=True, exist_ok=True)
    return source_dir, destination_dir


@pytest.fixture
def make_archive(io_dirs):
    def _make(list_name: str = "testgroup") -> ArchiveBuilder:
        return ArchiveBuilder(io_dirs[0], list_name=list_name)

    return _make


@pytest.fixture
def make_pdf(tmp_path: Path):
    def _make(filename: str, pages: int = 1, width: int = 72) -> Path:
        path = tmp_path / filename
        writer = PdfWriter()
        for _ in range(pages):
            writer.add_blank_page(width=width, height=72)
        with path.open("wb") as handle:
            writer.write(handle)
        return path

    return _make


@pytest.fixture
def fake_renderer():
    return FakeRenderer


@pytest.fixture
def patch_renderer(monkeypatch):
    def _patch(available: bool = True, fail_all: bool = False):
        created = []

        class PatchedRenderer(FakeRenderer):
            def __init__(self, command=None, timeout_seconds=180, run_logger=None):
                super().__init__(command=command, available=available, fail_all=fail_all)
                created.append(self)

        monkeypatch.setattr("archive_orchestrator.MessageRenderer", PatchedRenderer)
        return created

    return _patch
