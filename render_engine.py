"""
Group Archive Render Engine - PDF rendering and merging
Drives the external message renderer with retries and simplified fallbacks,
then combines per-message PDFs into one consolidated document
"""

import hashlib
import os
import re
import shutil
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from copy import deepcopy
from dataclasses import dataclass, field
from email.message import Message
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.parser import BytesParser
from email.policy import compat32
from email.utils import format_datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from bs4 import BeautifulSoup
from dateutil import parser as date_parser
from striprtf.striprtf import rtf_to_text

from repair_engine import (
    ATTACHMENT_NOT_FOUND_HEADER,
    CONTENT_TRUNCATED_HEADER,
    RunLogger,
    _log,
    _make_writable_temp_dir,
    _record_warning,
    _safe_progress,
    iter_leaf_parts,
)

# PDF handling
try:
    from pypdf import PdfReader, PdfWriter
    HAS_PYPDF = True
except ImportError:
    HAS_PYPDF = False


def _output_ready(path: str) -> bool:
    return os.path.exists(path) and os.path.getsize(path) > 0


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _decode_output(data) -> str:
    if not data:
        return ""
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    return data.strip()


@dataclass
class RenderJob:
    index: int
    message_id: str
    eml_path: str
    pdf_path: str
    # True when the .eml was written by the current run.
    fresh: bool = True


@dataclass
class RenderResult:
    message_id: str
    index: int
    success: bool = False
    pdf_path: Optional[str] = None
    size_bytes: int = 0
    diagnostics: List[str] = field(default_factory=list)
    strategy: str = ""
    fresh: bool = True


@dataclass
class MergeResult:
    output_path: Optional[str]
    strategy: str
    merged_inputs: List[str] = field(default_factory=list)
    skipped_inputs: List[str] = field(default_factory=list)
    dropped_batches: int = 0


class MessageRenderer:
    """Converts one .eml file to PDF by running an external renderer."""

    DEFAULT_COMMAND = (
        "email2pdf",
        "--input-file", "{input}",
        "--output-file", "{output}",
        "--headers",
        "--mostly-hide-warnings",
    )
    SIDECAR_SUFFIX = ".warnings.txt"

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        timeout_seconds: int = 180,
        run_logger: Optional[RunLogger] = None,
    ):
        self.command = tuple(command or self.DEFAULT_COMMAND)
        self.timeout_seconds = timeout_seconds
        self.run_logger = run_logger

    def is_available(self) -> Tuple[bool, str]:
        if shutil.which(self.command[0]) is None:
            return False, f"Renderer '{self.command[0]}' was not found on PATH."
        return True, ""

    def build_args(self, input_path: str, output_path: str) -> List[str]:
        return [arg.format(input=input_path, output=output_path) for arg in self.command]

    def _read_sidecar(self, output_path: str) -> str:
        sidecar = output_path + self.SIDECAR_SUFFIX
        if not os.path.exists(sidecar):
            return ""
        try:
            with open(sidecar, "r", encoding="utf-8", errors="replace") as handle:
                text = handle.read().strip()
        except OSError:
            return ""
        _remove_quietly(sidecar)
        return text

    def render(self, input_path: str, output_path: str) -> Tuple[bool, List[str]]:
        """
        Render a message file to PDF.

        Returns:
            (success, diagnostics) where diagnostics holds the renderer's
            error output and sidecar text
        """
        os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
        _remove_quietly(output_path)
        diagnostics: List[str] = []

        try:
            completed = subprocess.run(
                self.build_args(input_path, output_path),
                capture_output=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            diagnostics.append(f"renderer timed out after {self.timeout_seconds}s")
            stderr = _decode_output(exc.stderr)
            if stderr:
                diagnostics.append(stderr)
            _remove_quietly(output_path)
            return False, diagnostics
        except OSError as exc:
            return False, [f"renderer could not be started: {exc}"]

        stderr = _decode_output(completed.stderr)
        sidecar = self._read_sidecar(output_path)
        if completed.returncode != 0:
            diagnostics.append(f"renderer exited with status {completed.returncode}")
        elif not _output_ready(output_path):
            diagnostics.append("renderer produced no output")
        if diagnostics:
            diagnostics.extend(text for text in (stderr, sidecar) if text)
            return False, diagnostics
        return True, []


class MessageSimplifier:
    """Builds progressively simpler variants of a message for renderer fallbacks."""

    PLAIN_TYPES = {"text/plain", "text/html"}
    RICH_TYPES = {"text/enriched", "text/richtext", "text/rtf", "application/rtf"}
    SKIP_FLAGS = (CONTENT_TRUNCATED_HEADER, ATTACHMENT_NOT_FOUND_HEADER)
    SUMMARY_HEADERS = ("From", "To", "Date", "Subject")

    def __init__(self, max_parts: int = 2):
        self.max_parts = max_parts

    @staticmethod
    def part_text(part: Message) -> str:
        payload = part.get_payload(decode=True) or b""
        charset = part.get_content_charset() or "us-ascii"
        try:
            text = payload.decode(charset, errors="replace")
        except LookupError:
            text = payload.decode("latin-1")

        content_type = part.get_content_type()
        if content_type in ("text/rtf", "application/rtf"):
            return rtf_to_text(text)
        if content_type in ("text/enriched", "text/richtext"):
            return re.sub(r'<<|<[^>]*>', lambda match: '<' if match.group(0) == '<<' else '', text)
        return text

    @staticmethod
    def html_to_text(markup: str) -> str:
        soup = BeautifulSoup(markup, "html.parser")
        for tag in soup.find_all(["script", "style", "head"]):
            tag.decompose()
        text = soup.get_text("\n")
        return re.sub(r'\n{3,}', '\n\n', text).strip() + "\n"

    def usable_parts(self, message: Message) -> List[Tuple[Message, str, str]]:
        """
        The longest text-bearing leaf parts as (part, subtype, text).

        Rich text comes back with subtype "plain". Parts flagged truncated or
        missing are never used.
        """
        found = []
        for part in iter_leaf_parts(message):
            content_type = part.get_content_type()
            if content_type not in self.PLAIN_TYPES and content_type not in self.RICH_TYPES:
                continue
            if any(part.get(flag) for flag in self.SKIP_FLAGS):
                continue
            text = self.part_text(part)
            if not text.strip():
                continue
            subtype = "html" if content_type == "text/html" else "plain"
            found.append((part, subtype, text))
        found.sort(key=lambda item: len(item[2]), reverse=True)
        return found[:self.max_parts]

    def summary_headers(self, message: Message) -> List[Tuple[str, str]]:
        headers = []
        for name in self.SUMMARY_HEADERS:
            value = message.get(name)
            if value is None:
                continue
            value = str(value)
            if name == "Date":
                try:
                    value = format_datetime(date_parser.parse(value, fuzzy=True))
                except (ValueError, OverflowError):
                    continue
            headers.append((name, value))
        return headers

    @staticmethod
    def _compose(parts: List[Message], headers: Optional[List[Tuple[str, str]]] = None) -> bytes:
        if len(parts) == 1:
            composed = parts[0]
        else:
            # Identical parts must compose to identical bytes for deduplication.
            digest = hashlib.sha1(b"".join(part.as_bytes() for part in parts)).hexdigest()[:32]
            composed = MIMEMultipart("mixed", boundary=f"=_simplified_{digest}")
            for part in parts:
                composed.attach(part)
        for name, value in headers or []:
            composed[name] = value
        return composed.as_bytes()

    def candidates(self, message: Message, raw_bytes: bytes) -> List[Tuple[str, Union[bytes, Exception]]]:
        """
        Ordered (strategy, message bytes) pairs, duplicates removed.

        A variant that could not be built carries the exception instead of bytes.

        Args:
            message: The repaired message
            raw_bytes: Its serialized form, used for the last-resort variant
        """
        parts = self.usable_parts(message)
        headers = self.summary_headers(message)
        builders: List[Tuple[str, Callable[[], bytes]]] = []

        if parts:
            def parts_only():
                return self._compose([
                    deepcopy(part) if part.get_content_type() in self.PLAIN_TYPES else MIMEText(text, "plain", "utf-8")
                    for part, _, text in parts
                ])

            def parts_utf8():
                return self._compose([MIMEText(text, subtype, "utf-8") for _, subtype, text in parts])

            def minimal_message():
                return self._compose([MIMEText(text, subtype, "utf-8") for _, subtype, text in parts], headers)

            def seven_bit_ascii():
                return self._compose(
                    [
                        MIMEText(re.sub(r'[^\x00-\x7f]', ' ', text), subtype, "us-ascii")
                        for _, subtype, text in parts
                    ],
                    headers,
                )

            builders.extend([
                ("parts_only", parts_only),
                ("parts_utf8", parts_utf8),
                ("minimal_message", minimal_message),
                ("seven_bit_ascii", seven_bit_ascii),
            ])

            if any(subtype == "html" for _, subtype, _ in parts):
                def html_as_text():
                    return self._compose(
                        [
                            MIMEText(self.html_to_text(text) if subtype == "html" else text, "plain", "utf-8")
                            for _, subtype, text in parts
                        ],
                        headers,
                    )

                builders.append(("html_as_text", html_as_text))

        builders.append(("whole_message_ascii", lambda: re.sub(rb'[^\x00-\x7f]', b' ', raw_bytes)))

        seen = set()
        variants = []
        for strategy, build in builders:
            try:
                data = build()
            except (ValueError, TypeError, LookupError, UnicodeError) as exc:
                variants.append((strategy, exc))
                continue
            if data in seen:
                continue
            seen.add(data)
            variants.append((strategy, data))
        return variants


class RenderPipeline:
    """Renders repaired messages with retries, fallbacks and a bounded worker pool."""

    def __init__(
        self,
        renderer: MessageRenderer,
        simplifier: Optional[MessageSimplifier] = None,
        attempts: int = 3,
        backoff_seconds: Sequence[float] = (0, 1, 2),
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
        warnings: Optional[List[Dict]] = None,
        run_logger: Optional[RunLogger] = None,
    ):
        self.renderer = renderer
        self.simplifier = simplifier or MessageSimplifier()
        self.attempts = max(1, int(attempts))
        self.backoff_seconds = tuple(backoff_seconds) or (0,)
        self.max_workers = max(1, int(max_workers))
        self.sleep = sleep
        self.warnings = warnings
        self.run_logger = run_logger

    def worker_count(self, job_count: int) -> int:
        return max(1, min(os.cpu_count() or 1, self.max_workers, job_count))

    def _backoff(self, attempt: int) -> float:
        if attempt < len(self.backoff_seconds):
            return self.backoff_seconds[attempt]
        return self.backoff_seconds[-1]

    def render_message(self, job: RenderJob) -> RenderResult:
        """
        Render one message: direct attempts first, then simplified variants.

        The result's diagnostics hold one entry per failed attempt, in order.
        """
        result = RenderResult(message_id=job.message_id, index=job.index, fresh=job.fresh)

        if not job.fresh and _output_ready(job.pdf_path):
            result.success = True
            result.pdf_path = job.pdf_path
            result.size_bytes = os.path.getsize(job.pdf_path)
            result.strategy = "existing"
            return result

        for attempt in range(self.attempts):
            delay = self._backoff(attempt)
            if delay:
                self.sleep(delay)
            ok, diagnostics = self.renderer.render(job.eml_path, job.pdf_path)
            if ok:
                return self._succeeded(result, job, "direct")
            result.diagnostics.append(f"direct attempt {attempt + 1}: " + "; ".join(diagnostics))

        _log(
            self.run_logger,
            "info",
            "render_simplifying",
            "Direct rendering failed; trying simplified variants",
            message_id=job.message_id,
            attempts=self.attempts,
        )
        try:
            with open(job.eml_path, "rb") as handle:
                raw_bytes = handle.read()
        except OSError as exc:
            result.diagnostics.append(f"could not read message for simplification: {exc}")
            return self._failed(result, job)

        message = BytesParser(policy=compat32).parsebytes(raw_bytes)
        work_dir = _make_writable_temp_dir(prefix=f"render_{job.message_id}_")
        try:
            for strategy, data in self.simplifier.candidates(message, raw_bytes):
                if isinstance(data, Exception):
                    result.diagnostics.append(f"{strategy}: could not build variant: {data}")
                    continue
                variant_path = os.path.join(work_dir, f"{strategy}.eml")
                with open(variant_path, "wb") as handle:
                    handle.write(data)
                ok, diagnostics = self.renderer.render(variant_path, job.pdf_path)
                if ok:
                    return self._succeeded(result, job, strategy)
                result.diagnostics.append(f"{strategy}: " + "; ".join(diagnostics))
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        return self._failed(result, job)

    def _succeeded(self, result: RenderResult, job: RenderJob, strategy: str) -> RenderResult:
        result.success = True
        result.strategy = strategy
        result.pdf_path = job.pdf_path
        result.size_bytes = os.path.getsize(job.pdf_path)
        level = "debug" if strategy == "direct" else "info"
        _log(
            self.run_logger,
            level,
            "render_succeeded",
            "Rendered message",
            message_id=job.message_id,
            strategy=strategy,
            failed_attempts=len(result.diagnostics),
        )
        return result

    def _failed(self, result: RenderResult, job: RenderJob) -> RenderResult:
        _remove_quietly(job.pdf_path)
        _record_warning(
            self.warnings,
            'render_failed',
            'Message could not be rendered to PDF; excluded from the merged document',
            message_id=job.message_id,
            eml=job.eml_path,
            diagnostics=list(result.diagnostics),
        )
        return result

    def render_all(self, jobs: List[RenderJob], progress_callback=None) -> List[RenderResult]:
        """
        Render jobs in parallel and return results in job index order.

        Args:
            jobs: Render jobs tagged with their position in the archive order
            progress_callback: Optional callback(done, total, message_id)
        """
        if not jobs:
            return []

        results: List[RenderResult] = []
        total = len(jobs)
        with ThreadPoolExecutor(max_workers=self.worker_count(total)) as pool:
            futures = {pool.submit(self.render_message, job): job for job in jobs}
            for done, future in enumerate(as_completed(futures), 1):
                job = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    result = RenderResult(
                        message_id=job.message_id,
                        index=job.index,
                        diagnostics=[f"render worker crashed: {exc}"],
                        fresh=job.fresh,
                    )
                    self._failed(result, job)
                results.append(result)
                _safe_progress(progress_callback, done, total, job.message_id)

        results.sort(key=lambda item: item.index)
        return results


class PDFMerger:
    """Merges per-message PDFs into one document, in process or with an external tool"""

    DEFAULT_COMMAND = ("pdfunite",)

    def __init__(
        self,
        merge_command: Optional[Sequence[str]] = None,
        batch_size: int = 1000,
        external_threshold: int = 1000,
        timeout_seconds: int = 1800,
        warnings: Optional[List[Dict]] = None,
        run_logger: Optional[RunLogger] = None,
    ):
        self.merge_command = tuple(merge_command or self.DEFAULT_COMMAND)
        self.batch_size = max(2, int(batch_size))
        self.external_threshold = int(external_threshold)
        self.timeout_seconds = timeout_seconds
        self.warnings = warnings
        self.run_logger = run_logger

    def external_tool_available(self) -> Tuple[bool, str]:
        if shutil.which(self.merge_command[0]) is None:
            return False, f"Merge tool '{self.merge_command[0]}' was not found on PATH."
        return True, ""

    def choose_strategy(self, file_count: int) -> str:
        if file_count > self.external_threshold and self.external_tool_available()[0]:
            return "external"
        return "in_process"

    def merge(self, pdf_files: List[str], output_path: str) -> MergeResult:
        """
        Merge PDFs in the given order into output_path.

        Args:
            pdf_files: Ordered list of per-message PDF paths
            output_path: Consolidated PDF to write

        Returns:
            MergeResult; output_path is None when nothing could be merged
        """
        os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
        strategy = self.choose_strategy(len(pdf_files))
        _log(
            self.run_logger,
            "info",
            "merge_start",
            "Merging rendered messages",
            strategy=strategy,
            file_count=len(pdf_files),
            path=output_path,
        )
        if strategy == "external":
            return self._merge_external(pdf_files, output_path)
        return self._merge_in_process(pdf_files, output_path)

    def _merge_in_process(self, pdf_files: List[str], output_path: str) -> MergeResult:
        if not HAS_PYPDF:
            raise ImportError("pypdf library is required for PDF merging")

        result = MergeResult(output_path=None, strategy="in_process")
        writer = PdfWriter()
        for pdf_file in pdf_files:
            try:
                reader = PdfReader(pdf_file)
                if reader.is_encrypted and not reader.decrypt(""):
                    _record_warning(
                        self.warnings,
                        'pdf_encrypted',
                        'PDF is password-protected and cannot be merged; skipping',
                        file=pdf_file,
                    )
                    result.skipped_inputs.append(pdf_file)
                    continue
                writer.append(reader)
                result.merged_inputs.append(pdf_file)
            except Exception as exc:
                _record_warning(
                    self.warnings,
                    'pdf_unreadable',
                    'Could not append PDF to the merged document; skipping',
                    file=pdf_file,
                    error=str(exc),
                )
                result.skipped_inputs.append(pdf_file)

        if not result.merged_inputs:
            _record_warning(
                self.warnings,
                'pdf_empty_merge',
                'No readable PDFs were available to merge',
                file_count=len(pdf_files),
            )
            return result

        with open(output_path, "wb") as handle:
            writer.write(handle)
        result.output_path = output_path
        print(f"    Created: {os.path.basename(output_path)} ({len(result.merged_inputs)} PDFs)")
        return result

    def _run_external(self, inputs: List[str], output_path: str) -> Tuple[bool, str]:
        _remove_quietly(output_path)
        if len(inputs) == 1:
            shutil.copyfile(inputs[0], output_path)
            return True, ""
        try:
            completed = subprocess.run(
                list(self.merge_command) + list(inputs) + [output_path],
                capture_output=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            return False, f"timed out after {self.timeout_seconds}s {_decode_output(exc.stderr)}".strip()
        except OSError as exc:
            return False, str(exc)

        output = "\n".join(
            text for text in (_decode_output(completed.stdout), _decode_output(completed.stderr)) if text
        )
        if completed.returncode != 0:
            return False, f"exit status {completed.returncode}: {output}".strip()
        if not _output_ready(output_path):
            return False, f"no output written: {output}".strip()
        return True, output

    def _merge_external(self, pdf_files: List[str], output_path: str) -> MergeResult:
        result = MergeResult(output_path=None, strategy="external")
        work_dir = _make_writable_temp_dir(prefix="pdf_rollup_")
        try:
            rollups: List[str] = []
            for batch_num, start in enumerate(range(0, len(pdf_files), self.batch_size), 1):
                batch = pdf_files[start:start + self.batch_size]
                rollup = os.path.join(work_dir, f"rollup_{batch_num:05d}.pdf")
                ok, output = self._run_external(batch, rollup)
                if ok:
                    rollups.append(rollup)
                    result.merged_inputs.extend(batch)
                    continue
                result.dropped_batches += 1
                result.skipped_inputs.extend(batch)
                _record_warning(
                    self.warnings,
                    'pdf_batch_merge_failed',
                    'External merge of a batch failed; its messages are left out of the merged document',
                    batch=batch_num,
                    file_count=len(batch),
                    error=output,
                )

            if not rollups:
                _record_warning(
                    self.warnings,
                    'pdf_empty_merge',
                    'No batch could be merged',
                    file_count=len(pdf_files),
                )
                return result

            if len(rollups) == 1:
                shutil.move(rollups[0], output_path)
                result.output_path = output_path
                return result

            ok, output = self._run_external(rollups, output_path)
            if ok:
                result.output_path = output_path
                print(f"    Created: {os.path.basename(output_path)} ({len(rollups)} rollups)")
                return result

            _record_warning(
                self.warnings,
                'pdf_rollup_merge_failed',
                'External merge of rollups failed; merging rollups in process instead',
                rollup_count=len(rollups),
                error=output,
            )
            fallback = self._merge_in_process(rollups, output_path)
            result.output_path = fallback.output_path
            if fallback.skipped_inputs:
                result.dropped_batches += len(fallback.skipped_inputs)
            return result
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
