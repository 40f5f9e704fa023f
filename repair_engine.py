"""
Group Archive Repair Engine - Core reconstruction logic
Sanitizes exported raw messages, restores redacted sender headers and
reattaches detached attachments so every message becomes a self-contained MIME file
"""

import hashlib
import html
import json
import mailbox
import mimetypes
import os
import re
import shutil
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from email import encoders, errors as email_errors
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.message import Message
from email.mime.base import MIMEBase
from email.parser import Parser
from email.policy import compat32
from email.utils import parseaddr
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from rapidfuzz.distance import Levenshtein

# Fixed strings the export substitutes into damaged message bodies.
ATTACHMENT_SENTINEL = "[ Attachment content not displayed ]"
TRUNCATION_MARKER = "(Message over 64 KB, truncated)"

# Audit headers added by the repairs.
REDACTED_BACKUP_PREFIX = "X-Original-Redacted-"
ORIGINAL_HEADER_PREFIX = "X-Original-"
ATTACHMENT_NOT_FOUND_HEADER = "X-Archive-Attachment-Not-Found"
CONTENT_TRUNCATED_HEADER = "X-Archive-Content-Truncated"
ATTACHMENT_RESTORED_HEADER = "X-Archive-Attachment-Restored"
ATTACHMENT_REATTACHED_HEADER = "X-Archive-Attachment-Reattached"

LOG_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


class ArchivePreflightError(RuntimeError):
    """Raised when the archive or destination cannot be used at all."""


def _record_warning(warnings: Optional[List[Dict]], code: str, message: str, **context) -> None:
    """Append a structured warning when a warning collector is provided."""
    if warnings is None:
        return
    warning = {'code': code, 'message': message}
    warning.update(context)
    warnings.append(warning)


def _safe_progress(callback, *args) -> None:
    """Call a progress callback, swallowing exceptions to avoid crashing the run."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        pass


def _make_writable_temp_dir(prefix: str) -> str:
    """
    Create a writable temporary directory.
    Falls back to the working directory when the system temp root is unusable.
    """
    base_candidates = [tempfile.gettempdir(), os.getcwd()]

    for base_dir in base_candidates:
        if not base_dir:
            continue
        try:
            os.makedirs(base_dir, exist_ok=True)
        except OSError:
            continue

        for _ in range(8):
            candidate = os.path.join(base_dir, f"{prefix}{uuid.uuid4().hex}")
            try:
                os.makedirs(candidate, exist_ok=False)
                probe = os.path.join(candidate, ".write_probe")
                with open(probe, "wb") as handle:
                    handle.write(b"ok")
                os.remove(probe)
                return candidate
            except OSError:
                shutil.rmtree(candidate, ignore_errors=True)

    raise RuntimeError("Unable to create a writable temporary directory.")


def natural_sort_key(value: str) -> List[Any]:
    """Sort key that orders embedded numbers numerically ("2_raw" before "10_raw")."""
    return [int(token) if token.isdigit() else token.lower() for token in re.split(r'(\d+)', value)]


class RunLogger:
    """Persist run events to text and JSONL logs."""

    def __init__(
        self,
        logs_dir: str,
        run_id: str,
        enabled: bool = True,
        privacy_mode: str = "redacted",
        min_level: str = "debug",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.enabled = enabled
        self.privacy_mode = privacy_mode
        self.min_level = LOG_LEVELS.get(min_level, 10)
        self.run_id = run_id
        self.logs_dir = logs_dir
        self.event_callback = event_callback
        self.text_log_path = os.path.join(logs_dir, f"run_{run_id}.log")
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{run_id}.jsonl")
        self._text_handle = None
        self._jsonl_handle = None
        # Render workers log concurrently.
        self._lock = threading.Lock()

        if self.enabled:
            os.makedirs(self.logs_dir, exist_ok=True)
            self._text_handle = open(self.text_log_path, "a", encoding="utf-8")
            self._jsonl_handle = open(self.jsonl_log_path, "a", encoding="utf-8")

    def close(self) -> None:
        with self._lock:
            for handle in (self._text_handle, self._jsonl_handle):
                if handle is not None:
                    try:
                        handle.close()
                    except OSError:
                        pass
            self._text_handle = None
            self._jsonl_handle = None

    def _redact_value(self, key: str, value):
        if self.privacy_mode != "redacted":
            return value
        if isinstance(value, str) and key.lower() in {"file", "source", "destination", "path", "eml", "pdf"}:
            return os.path.basename(value)
        return value

    def _sanitize_context(self, context: Dict) -> Dict:
        sanitized = {}
        for key, value in context.items():
            sanitized[key] = self._redact_value(key, value)
        return sanitized

    def log(self, level: str, event: str, message: str, **context) -> None:
        if not self.enabled or self._text_handle is None:
            return
        if LOG_LEVELS.get(level.lower(), 20) < self.min_level:
            return
        timestamp = datetime.now().isoformat()
        safe_context = self._sanitize_context(context)
        payload = {
            "ts": timestamp,
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": safe_context,
        }

        text_context = ""
        if safe_context:
            context_parts = [f"{key}={value}" for key, value in sorted(safe_context.items())]
            text_context = " | " + ", ".join(context_parts)
        with self._lock:
            if self._jsonl_handle is None:
                return
            self._jsonl_handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            self._jsonl_handle.flush()
            self._text_handle.write(f"[{timestamp}] {level.upper()} {event}: {message}{text_context}\n")
            self._text_handle.flush()
        if self.event_callback:
            try:
                self.event_callback(payload)
            except Exception:
                pass


def _log(run_logger: Optional[RunLogger], level: str, event: str, message: str, **context) -> None:
    if run_logger is not None:
        run_logger.log(level, event, message, **context)


@dataclass
class AttachmentDescriptor:
    """Declared metadata for one detached attachment."""

    file_id: str
    filename: str = ""
    content_type: str = ""


@dataclass
class MessageRecord:
    """
    One damaged message as exported by the groups API.

    Attributes:
        message_id: Numeric message identifier (unique, may have gaps)
        topic_id: Thread identifier, when the export recorded one
        raw_email: Raw entity-encoded message text, or None
        profile: Submitter profile handle
        user_id: Submitter numeric user id
        post_date: Posting time as epoch seconds
        attachments: Descriptors listed directly on the message
        source_path: JSON file the record was loaded from
    """

    message_id: str
    topic_id: Optional[str] = None
    raw_email: Optional[str] = None
    profile: Optional[str] = None
    user_id: Optional[str] = None
    post_date: Optional[int] = None
    attachments: List[AttachmentDescriptor] = field(default_factory=list)
    source_path: str = ""

    @property
    def pseudonym_id(self) -> Optional[str]:
        return self.profile or self.user_id or None


@dataclass
class CandidateFile:
    """An attachment file found on disk, keyed by its file id."""

    file_id: str
    filename: str
    path: str
    descriptor: Optional[AttachmentDescriptor] = None

    @property
    def declared_filename(self) -> str:
        if self.descriptor and self.descriptor.filename:
            return self.descriptor.filename
        return self.filename

    @property
    def declared_content_type(self) -> str:
        declared = self.descriptor.content_type if self.descriptor else ""
        if declared and re.match(r'^[\w.+-]+/[\w.+-]+$', declared):
            return declared.lower()
        guessed, _ = mimetypes.guess_type(self.declared_filename)
        return guessed or "application/octet-stream"

    def read_bytes(self) -> bytes:
        with open(self.path, "rb") as handle:
            return handle.read()


@dataclass
class ParseResult:
    """Outcome of parsing a sanitized message; failures are values, not exceptions."""

    message: Optional[Message] = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.message is not None


@dataclass
class ReconstructionResult:
    message: Message
    placed_inline: List[str] = field(default_factory=list)
    placed_trailer: List[str] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)
    truncated_parts: int = 0
    unplaced: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Text sanitizing
# ---------------------------------------------------------------------------

_UNICODE_SPACE_RE = re.compile(r'[\u00a0\u1680\u2000-\u200a\u202f\u205f\u3000]')
_CONTROL_RE = re.compile(r'[\x00-\x08\x0b-\x1f\x7f]')
_NON_ASCII_RE = re.compile(r'[^\x00-\x7f]')


def sanitize_raw_email(raw) -> str:
    """
    Make an exported rawEmail field safe for MIME parsing.

    The export entity-encodes the message text, sprinkles carriage returns
    through it and leaves 8-bit bytes in bodies declared as 7-bit.

    Args:
        raw: The raw field as str or bytes, or None

    Returns:
        Pure 7-bit text with LF line endings
    """
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    text = html.unescape(raw)
    text = _UNICODE_SPACE_RE.sub(" ", text)
    # \r is inside the control range
    text = _CONTROL_RE.sub("", text)
    return _NON_ASCII_RE.sub("", text)


# ---------------------------------------------------------------------------
# Attachment matching
# ---------------------------------------------------------------------------

class AttachmentMatcher:
    """Pairs a filename declared in a message part with a file found on disk."""

    def __init__(self, threshold: float = 0.8):
        self.threshold = threshold

    @staticmethod
    def normalize_filename(filename: str) -> str:
        """Collapse whitespace runs to a hyphen, the way the export names files on disk."""
        return re.sub(r'\s+', '-', filename)

    def distance(self, wanted_filename: str, candidate_filename: str) -> float:
        """Normalized edit distance from the wanted name to a candidate name."""
        normalized = self.normalize_filename(wanted_filename)
        if candidate_filename in (wanted_filename, normalized):
            return 0.0
        if not candidate_filename:
            return float("inf")
        return Levenshtein.distance(normalized, candidate_filename) / len(candidate_filename)

    def best_match(self, wanted_filename: Optional[str], candidates: Dict[str, str]) -> Optional[str]:
        """
        Find the candidate most likely to be the wanted attachment.

        Args:
            wanted_filename: Filename declared by the message part
            candidates: Mapping of file id to on-disk filename

        Returns:
            The file id of the best candidate, or None when nothing is close enough
        """
        if not wanted_filename:
            return None

        best_id = None
        best_distance = float("inf")
        for file_id in sorted(candidates, key=natural_sort_key):
            distance = self.distance(wanted_filename, candidates[file_id])
            if distance < best_distance:
                best_id = file_id
                best_distance = distance
                if distance == 0:
                    break

        if best_id is not None and best_distance <= self.threshold:
            return best_id
        return None


# ---------------------------------------------------------------------------
# Header redaction repair
# ---------------------------------------------------------------------------

class HeaderRedactionRepairer:
    """Replaces redacted sender domains with a stable per-submitter pseudonym domain."""

    HEADERS = ("From", "X-Sender", "Return-Path")

    _BRACKETED_RE = re.compile(r'([^\s<>@"]+)@\.\.\.>')
    _TRAILING_RE = re.compile(r'([^\s<>@"]+)@\.\.\.(\s*)$')

    def __init__(self, run_logger: Optional[RunLogger] = None):
        self.run_logger = run_logger

    @staticmethod
    def pseudonym_domain(pseudonym_id) -> Optional[str]:
        if pseudonym_id is None:
            return None
        label = re.sub(r'[^A-Za-z0-9-]', '-', str(pseudonym_id).strip())
        if not label.strip("-"):
            return None
        return f"{label}.invalid"

    def repair_value(self, value: str, pseudonym_id) -> Optional[str]:
        """Return the repaired header value, or None when nothing was redacted."""
        domain = self.pseudonym_domain(pseudonym_id)
        if domain is None or not value:
            return None

        repaired, count = self._BRACKETED_RE.subn(rf'\1@{domain}>', value)
        if count:
            return repaired
        repaired, count = self._TRAILING_RE.subn(rf'\1@{domain}\2', value)
        if count:
            return repaired
        return None

    def repair_headers(self, message: Message, pseudonym_id, message_id: str = "") -> List[str]:
        """
        Repair the sender headers of a message in place.

        Only the first occurrence of each header is considered. The original
        value is kept under X-Original-Redacted-<Header>.

        Returns:
            Names of the headers that were rewritten
        """
        changed = []
        if self.pseudonym_domain(pseudonym_id) is None:
            return changed

        for name in self.HEADERS:
            value = message.get(name)
            if value is None:
                continue
            original = str(value)
            repaired = self.repair_value(original, pseudonym_id)
            if repaired is None:
                continue

            backup_name = f"{REDACTED_BACKUP_PREFIX}{name}"
            del message[backup_name]
            message[backup_name] = original
            message.replace_header(name, repaired)
            changed.append(name)
            _log(
                self.run_logger,
                "debug",
                "header_repaired",
                "Replaced redacted address",
                message_id=message_id,
                header=name,
            )
        return changed


# ---------------------------------------------------------------------------
# MIME reconstruction
# ---------------------------------------------------------------------------

class PartKind(Enum):
    NORMAL = "normal"
    DETACHED_ATTACHMENT = "detached_attachment"
    TRUNCATED_BODY = "truncated_body"


_FATAL_PARSE_DEFECTS = (
    email_errors.StartBoundaryNotFoundDefect,
    email_errors.MultipartInvariantViolationDefect,
)


def parse_raw_message(text: str) -> ParseResult:
    """Parse sanitized message text, keeping raw part bodies untouched."""
    if not text.strip():
        return ParseResult(error="message text is empty")
    try:
        message = Parser(policy=compat32).parsestr(text)
    except (email_errors.MessageError, ValueError, TypeError, IndexError) as exc:
        return ParseResult(error=f"{type(exc).__name__}: {exc}")

    for part in message.walk():
        for defect in part.defects:
            if isinstance(defect, _FATAL_PARSE_DEFECTS):
                return ParseResult(error=f"{type(defect).__name__} in {part.get_content_type()} part")
    return ParseResult(message=message)


def iter_leaf_parts(message: Message) -> Iterator[Message]:
    for part in message.walk():
        if not part.is_multipart():
            yield part


def _decoded_body_text(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    return payload.decode("ascii", errors="replace")


def declared_filename(part: Message) -> Optional[str]:
    """The part's declared filename with RFC 2047 words decoded, or None."""
    filename = part.get_filename()
    if not filename:
        return None
    try:
        decoded = str(make_header(decode_header(filename)))
    except (HeaderParseError, LookupError, UnicodeDecodeError):
        decoded = filename
    return decoded.strip() or None


def classify_part(part: Message) -> PartKind:
    if part.is_multipart():
        return PartKind.NORMAL
    raw = part.get_payload()
    if not isinstance(raw, str):
        return PartKind.NORMAL
    # The sentinel is short, so large bodies are never decoded here.
    if len(raw) < 512 and _decoded_body_text(part).strip() == ATTACHMENT_SENTINEL:
        return PartKind.DETACHED_ATTACHMENT
    if raw.rstrip().endswith(TRUNCATION_MARKER):
        return PartKind.TRUNCATED_BODY
    return PartKind.NORMAL


def strip_truncation_marker(raw_body: str) -> str:
    """Remove the trailing truncation marker and the newline before it."""
    body = raw_body.rstrip()
    if not body.endswith(TRUNCATION_MARKER):
        return raw_body
    body = body[:-len(TRUNCATION_MARKER)]
    if body.endswith("\n"):
        body = body[:-1]
    return body


def repair_truncated_part(part: Message) -> None:
    # The cut went through encoded data, so the remaining raw text is kept
    # under the existing Content-Transfer-Encoding without re-encoding.
    part.set_payload(strip_truncation_marker(part.get_payload()))
    part[CONTENT_TRUNCATED_HEADER] = "yes"


def restore_attachment_part(part: Message, data: bytes, file_id: str) -> None:
    del part["Content-Transfer-Encoding"]
    part.set_payload(data)
    encoders.encode_base64(part)
    part[ATTACHMENT_RESTORED_HEADER] = file_id


def mark_attachment_not_found(part: Message, filename: Optional[str]) -> None:
    originals = [
        (name, part.get(name))
        for name in ("Content-Type", "Content-Disposition", "Content-ID")
    ]
    for name in ("Content-Type", "Content-Disposition", "Content-ID", "Content-Transfer-Encoding"):
        del part[name]
    for name, value in originals:
        if value is not None:
            part[f"{ORIGINAL_HEADER_PREFIX}{name}"] = str(value)

    if filename:
        note = (
            f"[ The attachment \"{filename}\" was detached by the archive export "
            "and could not be found among the archived attachment files. ]\n"
        )
    else:
        note = (
            "[ An attachment was detached by the archive export and no filename "
            "was recorded, so it could not be restored. ]\n"
        )
    part["Content-Type"] = 'text/plain; charset="us-ascii"'
    part["Content-Transfer-Encoding"] = "7bit"
    part[ATTACHMENT_NOT_FOUND_HEADER] = "yes"
    part.set_payload(note)


def ensure_mixed_root(message: Message) -> None:
    """Turn the root into multipart/mixed so attachments can be appended."""
    if message.is_multipart() and message.get_content_type() == "multipart/mixed":
        return

    # Derived from the content so reruns serialize identically.
    boundary = "=_archive_mixed_" + hashlib.sha1(message.as_bytes()).hexdigest()[:32]
    body = Message()
    content_headers = [(name, value) for name, value in message.items() if name.lower().startswith("content-")]
    for name, value in content_headers:
        body[name] = value
    body.set_payload(message.get_payload())
    body.preamble = message.preamble
    body.epilogue = message.epilogue

    for name in {name for name, _ in content_headers}:
        del message[name]
    if message.get("MIME-Version") is None:
        message["MIME-Version"] = "1.0"
    message["Content-Type"] = f'multipart/mixed; boundary="{boundary}"'
    message.preamble = None
    message.epilogue = None
    message.set_payload([body])


def build_trailer_attachment(candidate: CandidateFile, data: bytes) -> MIMEBase:
    maintype, _, subtype = candidate.declared_content_type.partition("/")
    part = MIMEBase(maintype, subtype)
    part.set_payload(data)
    encoders.encode_base64(part)
    part.add_header("Content-Disposition", "attachment", filename=candidate.declared_filename)
    part[ATTACHMENT_REATTACHED_HEADER] = candidate.file_id
    return part


class MimeReconstructor:
    """Walks leaf parts, repairs the damage the export left, and reattaches orphans."""

    def __init__(
        self,
        matcher: Optional[AttachmentMatcher] = None,
        warnings: Optional[List[Dict]] = None,
        run_logger: Optional[RunLogger] = None,
    ):
        self.matcher = matcher or AttachmentMatcher()
        self.warnings = warnings
        self.run_logger = run_logger

    def _find_candidate(self, wanted: Optional[str], pool: Dict[str, CandidateFile]) -> Optional[str]:
        if not wanted:
            return None
        for file_id in sorted(pool, key=natural_sort_key):
            if pool[file_id].descriptor and pool[file_id].descriptor.filename == wanted:
                return file_id
        return self.matcher.best_match(wanted, {file_id: candidate.filename for file_id, candidate in pool.items()})

    def _read_candidate(self, candidate: CandidateFile, message_id: str) -> Optional[bytes]:
        try:
            return candidate.read_bytes()
        except OSError as exc:
            _record_warning(
                self.warnings,
                'attachment_unreadable',
                'Attachment file could not be read',
                message_id=message_id,
                file_id=candidate.file_id,
                file=candidate.path,
                error=str(exc),
            )
            return None

    def reconstruct(
        self,
        message: Message,
        attachment_pool: Dict[str, CandidateFile],
        message_id: str,
    ) -> ReconstructionResult:
        """
        Repair every leaf part of a parsed message.

        Args:
            message: Parsed message; modified in place
            attachment_pool: Candidate files keyed by file id; claimed files are removed
            message_id: Identifier used in diagnostics

        Returns:
            ReconstructionResult listing where each pool entry ended up
        """
        result = ReconstructionResult(message=message)

        # Collect first: repairs change part headers the walk relies on.
        classified = [(part, classify_part(part)) for part in iter_leaf_parts(message)]
        for part, kind in classified:
            if kind is PartKind.DETACHED_ATTACHMENT:
                self._repair_detached(part, attachment_pool, message_id, result)
            elif kind is PartKind.TRUNCATED_BODY:
                repair_truncated_part(part)
                result.truncated_parts += 1
                _log(self.run_logger, "info", "body_truncated", "Removed truncation marker", message_id=message_id)

        for file_id in sorted(attachment_pool, key=natural_sort_key):
            candidate = attachment_pool[file_id]
            data = self._read_candidate(candidate, message_id)
            if data is None:
                result.unplaced.append(file_id)
                continue
            ensure_mixed_root(message)
            message.attach(build_trailer_attachment(candidate, data))
            result.placed_trailer.append(file_id)
            _log(
                self.run_logger,
                "info",
                "attachment_reattached",
                "Appended unclaimed attachment",
                message_id=message_id,
                file_id=file_id,
            )
        for file_id in result.placed_trailer:
            del attachment_pool[file_id]

        return result

    def _repair_detached(
        self,
        part: Message,
        pool: Dict[str, CandidateFile],
        message_id: str,
        result: ReconstructionResult,
    ) -> None:
        wanted = declared_filename(part)
        file_id = self._find_candidate(wanted, pool)
        data = self._read_candidate(pool[file_id], message_id) if file_id is not None else None

        if data is None:
            mark_attachment_not_found(part, wanted)
            result.not_found.append(wanted or "")
            _log(
                self.run_logger,
                "debug",
                "attachment_not_found",
                "No attachment file matched the detached part",
                message_id=message_id,
                filename=wanted or "",
            )
            return

        restore_attachment_part(part, data, file_id)
        del pool[file_id]
        result.placed_inline.append(file_id)
        _log(
            self.run_logger,
            "debug",
            "attachment_restored",
            "Restored detached attachment",
            message_id=message_id,
            file_id=file_id,
            filename=wanted,
        )


# ---------------------------------------------------------------------------
# Archive reading
# ---------------------------------------------------------------------------

class ArchiveReader:
    """Loads message records, attachment descriptors and candidate files from an archive folder."""

    RECORD_SUFFIX = "_raw.json"

    def __init__(
        self,
        source_path: str,
        warnings: Optional[List[Dict]] = None,
        run_logger: Optional[RunLogger] = None,
    ):
        self.source_path = source_path
        self.email_dir = os.path.join(source_path, "email")
        self.topics_dir = os.path.join(source_path, "topics")
        self.attachments_root = os.path.join(source_path, "attachments")
        self.about_path = os.path.join(source_path, "about", "about.json")
        self.warnings = warnings
        self.run_logger = run_logger
        self._thread_cache: Dict[str, Dict[str, AttachmentDescriptor]] = {}

    def list_record_files(self) -> List[str]:
        try:
            names = os.listdir(self.email_dir)
        except OSError:
            return []
        names = [name for name in names if name.endswith(self.RECORD_SUFFIX)]
        return [os.path.join(self.email_dir, name) for name in sorted(names, key=natural_sort_key)]

    def read_list_name(self) -> str:
        with open(self.about_path, "r", encoding="utf-8") as handle:
            about = json.load(handle)
        name = about.get("name") if isinstance(about, dict) else None
        return str(name) if name else ""

    @staticmethod
    def _descriptors_from(entries) -> List[AttachmentDescriptor]:
        descriptors = []
        for entry in entries or []:
            if not isinstance(entry, dict) or entry.get("fileId") in (None, ""):
                continue
            descriptors.append(
                AttachmentDescriptor(
                    file_id=str(entry["fileId"]),
                    filename=html.unescape(str(entry.get("filename") or "")),
                    content_type=str(entry.get("fileType") or ""),
                )
            )
        return descriptors

    def load_record(self, record_path: str) -> Optional[MessageRecord]:
        """Load one message record; malformed files are reported and yield None."""
        try:
            with open(record_path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            _record_warning(
                self.warnings,
                'record_unreadable',
                'Message record could not be read as JSON; skipping',
                file=record_path,
                error=str(exc),
            )
            return None
        if not isinstance(data, dict):
            _record_warning(
                self.warnings,
                'record_malformed',
                'Message record is not a JSON object; skipping',
                file=record_path,
            )
            return None

        message_id = data.get("msgId")
        if message_id in (None, ""):
            message_id = os.path.basename(record_path)[:-len(self.RECORD_SUFFIX)]

        def _optional_str(key):
            value = data.get(key)
            return None if value in (None, "") else str(value)

        post_date = data.get("postDate")
        try:
            post_date = int(post_date) if post_date not in (None, "") else None
        except (TypeError, ValueError):
            post_date = None

        return MessageRecord(
            message_id=str(message_id),
            topic_id=_optional_str("topicId"),
            raw_email=data.get("rawEmail") or None,
            profile=_optional_str("profile"),
            user_id=_optional_str("userId"),
            post_date=post_date,
            attachments=self._descriptors_from(data.get("attachments")),
            source_path=record_path,
        )

    def load_thread_descriptors(self, topic_id: Optional[str], message_id: str) -> Dict[str, AttachmentDescriptor]:
        """Descriptors recorded for a message in its thread's topic file."""
        if not topic_id:
            return {}
        cache_key = f"{topic_id}:{message_id}"
        if cache_key in self._thread_cache:
            return self._thread_cache[cache_key]

        descriptors: Dict[str, AttachmentDescriptor] = {}
        topic_path = os.path.join(self.topics_dir, f"{topic_id}.json")
        if os.path.isfile(topic_path):
            try:
                with open(topic_path, "r", encoding="utf-8") as handle:
                    topic = json.load(handle)
            except (OSError, ValueError) as exc:
                _record_warning(
                    self.warnings,
                    'topic_unreadable',
                    'Thread record could not be read; ignoring its attachment list',
                    file=topic_path,
                    error=str(exc),
                )
                topic = None
            if isinstance(topic, dict):
                entries = list(topic.get("attachments") or [])
                for thread_message in topic.get("messages") or []:
                    if isinstance(thread_message, dict) and str(thread_message.get("msgId")) == message_id:
                        entries.extend(thread_message.get("attachments") or [])
                for descriptor in self._descriptors_from(entries):
                    descriptors.setdefault(descriptor.file_id, descriptor)

        self._thread_cache[cache_key] = descriptors
        return descriptors

    def collect_descriptors(self, record: MessageRecord) -> Dict[str, AttachmentDescriptor]:
        descriptors = dict(self.load_thread_descriptors(record.topic_id, record.message_id))
        for descriptor in record.attachments:
            descriptors[descriptor.file_id] = descriptor
        return descriptors

    def attachment_dirs(self, record: MessageRecord) -> List[str]:
        dirs = [os.path.join(self.email_dir, f"{record.message_id}_attachments")]
        if record.topic_id:
            dirs.append(os.path.join(self.topics_dir, f"{record.topic_id}_attachments"))
            dirs.append(os.path.join(self.attachments_root, record.topic_id))
        return dirs

    @staticmethod
    def split_candidate_name(name: str) -> Tuple[str, str]:
        match = re.match(r'^(\d+)-(.*)$', name)
        if match and match.group(2):
            return match.group(1), match.group(2)
        return name, name

    def build_candidate_pool(self, record: MessageRecord) -> Dict[str, CandidateFile]:
        """Union of candidate files across the attachment layouts; first location wins."""
        descriptors = self.collect_descriptors(record)
        pool: Dict[str, CandidateFile] = {}
        for directory in self.attachment_dirs(record):
            if not os.path.isdir(directory):
                continue
            try:
                names = sorted(os.listdir(directory), key=natural_sort_key)
            except OSError as exc:
                _record_warning(
                    self.warnings,
                    'attachment_dir_unreadable',
                    'Attachment folder could not be listed',
                    message_id=record.message_id,
                    path=directory,
                    error=str(exc),
                )
                continue
            for name in names:
                path = os.path.join(directory, name)
                if not os.path.isfile(path):
                    continue
                file_id, filename = self.split_candidate_name(name)
                if file_id in pool:
                    _log(
                        self.run_logger,
                        "debug",
                        "attachment_duplicate",
                        "Ignoring duplicate attachment file",
                        message_id=record.message_id,
                        file_id=file_id,
                        path=path,
                    )
                    continue
                pool[file_id] = CandidateFile(
                    file_id=file_id,
                    filename=filename,
                    path=path,
                    descriptor=descriptors.get(file_id),
                )
        return pool


# ---------------------------------------------------------------------------
# Mailbox output
# ---------------------------------------------------------------------------

class MailboxWriter:
    """Appends repaired messages to a single mbox file, rebuilt from scratch."""

    def __init__(self, mbox_path: str):
        self.mbox_path = mbox_path
        self.count = 0
        self._mbox = None

    def __enter__(self):
        if os.path.exists(self.mbox_path):
            os.remove(self.mbox_path)
        self._mbox = mailbox.mbox(self.mbox_path, create=True)
        self._mbox.lock()
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._mbox is not None:
            try:
                self._mbox.flush()
            finally:
                self._mbox.unlock()
                self._mbox.close()
                self._mbox = None
        return False

    def append(self, message: Message, post_date: Optional[int] = None) -> None:
        if self._mbox is None:
            raise RuntimeError("Mailbox is not open.")
        entry = mailbox.mboxMessage(message)
        _, sender = parseaddr(str(message.get("From", "")))
        timestamp = time.gmtime(post_date) if post_date else True
        entry.set_from(sender or "MAILER-DAEMON", timestamp)
        self._mbox.add(entry)
        self.count += 1
