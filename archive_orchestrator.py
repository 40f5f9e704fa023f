"""
Archive Orchestrator - Coordinates the whole repair run
Validates the archive, rebuilds every message, renders PDFs and merges them
"""

import contextlib
import json
import os
import re
import traceback
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from repair_engine import (
    ArchivePreflightError,
    ArchiveReader,
    AttachmentMatcher,
    HeaderRedactionRepairer,
    MailboxWriter,
    MimeReconstructor,
    RunLogger,
    _record_warning,
    _safe_progress,
    parse_raw_message,
    sanitize_raw_email,
)
from render_engine import (
    MessageRenderer,
    MessageSimplifier,
    PDFMerger,
    RenderJob,
    RenderPipeline,
    RenderResult,
)


class ArchiveOrchestrator:
    """Coordinates reconstruction, rendering and merging for one archive folder"""

    def __init__(
        self,
        render_pdfs=True,
        merge_pdfs=True,
        write_mbox=True,
        force_render=False,
        verbose=False,
        render_command: Optional[Sequence[str]] = None,
        render_timeout_seconds=180,
        render_attempts=3,
        render_backoff_seconds: Sequence[float] = (0, 1, 2),
        max_render_workers=8,
        merge_command: Optional[Sequence[str]] = None,
        merge_batch_size=1000,
        external_merge_threshold=1000,
        match_threshold=0.8,
        enable_detailed_logging=True,
        log_privacy_mode="redacted",
        log_level="info",
        logs_subdir="logs",
        pdf_subdir="pdf",
    ):
        self.render_pdfs = render_pdfs
        self.merge_pdfs = merge_pdfs
        self.write_mbox = write_mbox
        self.force_render = force_render
        self.verbose = verbose
        self.render_command = render_command
        self.render_timeout_seconds = max(10, int(render_timeout_seconds))
        self.render_attempts = max(1, int(render_attempts))
        self.render_backoff_seconds = tuple(render_backoff_seconds)
        self.max_render_workers = max(1, int(max_render_workers))
        self.merge_command = merge_command
        self.merge_batch_size = max(2, int(merge_batch_size))
        self.external_merge_threshold = int(external_merge_threshold)
        self.match_threshold = float(match_threshold)
        self.enable_detailed_logging = enable_detailed_logging
        self.log_privacy_mode = log_privacy_mode
        self.log_level = log_level
        self.logs_subdir = logs_subdir
        self.pdf_subdir = pdf_subdir
        self.renderer_factory = MessageRenderer

    @staticmethod
    def _safe_filename(value: str, fallback: str = "archive") -> str:
        cleaned = re.sub(r'[^\w.-]+', '_', value or "").strip("._")
        return cleaned or fallback

    def preflight(self, source_path: str, destination_path: str) -> Dict[str, Any]:
        """
        Check everything a run needs before any output is written.

        Raises:
            ArchivePreflightError: If the archive or destination is unusable
        """
        if not os.path.isdir(source_path) or not os.access(source_path, os.R_OK):
            raise ArchivePreflightError(f"Can't access source directory {source_path}")

        reader = ArchiveReader(source_path)
        if not os.path.isdir(reader.email_dir) or not os.access(reader.email_dir, os.R_OK):
            raise ArchivePreflightError(f"Can't access the email sub-folder at {reader.email_dir}")

        record_files = reader.list_record_files()
        if not record_files:
            raise ArchivePreflightError(f"Couldn't see any *{ArchiveReader.RECORD_SUFFIX} in {reader.email_dir}")

        if not os.path.isfile(reader.about_path):
            raise ArchivePreflightError(f"Can't access list description file at {reader.about_path}")
        try:
            list_name = reader.read_list_name()
        except (OSError, ValueError) as exc:
            raise ArchivePreflightError(f"Can't read list description file at {reader.about_path}: {exc}") from exc

        try:
            os.makedirs(destination_path, exist_ok=True)
        except OSError as exc:
            raise ArchivePreflightError(f"Can't create destination directory {destination_path}: {exc}") from exc
        if not os.access(destination_path, os.W_OK):
            raise ArchivePreflightError(f"Can't write to destination directory {destination_path}")

        return {
            "list_name": list_name or os.path.basename(os.path.abspath(source_path)),
            "record_files": record_files,
        }

    @staticmethod
    def _sync_warning_events(
        warnings: List[Dict],
        cursor: int,
        run_logger: Optional[RunLogger],
    ) -> int:
        if not run_logger:
            return len(warnings)
        while cursor < len(warnings):
            warning = warnings[cursor]
            code = warning.get("code", "warning")
            message = warning.get("message", "")
            context = {
                key: value
                for key, value in warning.items()
                if key not in {"code", "message"}
            }
            run_logger.log("warning", code, message, **context)
            cursor += 1
        return cursor

    @staticmethod
    def _write_if_changed(path: str, data: bytes) -> bool:
        """Write data to path unless identical bytes are already there. Returns True if written."""
        if os.path.isfile(path):
            try:
                with open(path, "rb") as handle:
                    if handle.read() == data:
                        return False
            except OSError:
                pass
        with open(path, "wb") as handle:
            handle.write(data)
        return True

    def run(
        self,
        source_path: str,
        destination_path: str,
        progress_callback=None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Dict:
        """
        Main entry point for repairing an archive

        Args:
            source_path: Archive folder written by the group exporter
            destination_path: Folder for repaired messages, PDFs and logs
            progress_callback: Optional callback function(current, total, message)
            event_callback: Optional callback receiving every run log event

        Returns:
            Dict with run statistics (also written to archive_manifest.json)

        Raises:
            ArchivePreflightError: If the archive or destination is unusable
        """
        preflight = self.preflight(source_path, destination_path)
        list_name = preflight["list_name"]
        record_files = preflight["record_files"]
        output_name = self._safe_filename(list_name)

        logs_dir = os.path.join(destination_path, self.logs_subdir)
        pdf_dir = os.path.join(destination_path, self.pdf_subdir)
        run_id = datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
        run_logger = RunLogger(
            logs_dir=logs_dir,
            run_id=run_id,
            enabled=self.enable_detailed_logging,
            privacy_mode=self.log_privacy_mode,
            min_level=self.log_level,
            event_callback=event_callback,
        )
        run_logger.log("info", "run_start", "Starting archive repair", list_name=list_name, records=len(record_files))
        print(f"\nRepairing archive: {list_name} ({len(record_files)} records)")

        warnings: List[Dict] = []
        errors: List[Dict] = []
        warning_cursor = 0
        fatal_exception = None
        mbox_path = os.path.join(destination_path, f"{output_name}.mbox") if self.write_mbox else None
        consolidated_pdf = None
        render_results: List[RenderResult] = []
        reconstruction = {
            'records_total': len(record_files),
            'messages_written': 0,
            'messages_unchanged': 0,
            'skipped_no_body': 0,
            'failed': 0,
            'headers_repaired': 0,
            'attachments_restored': 0,
            'attachments_reattached': 0,
            'attachments_not_found': 0,
            'attachments_unplaced': 0,
            'bodies_truncated': 0,
        }
        rendering = {'attempted': 0, 'rendered': 0, 'reused': 0, 'simplified': 0, 'failed': 0}
        merge_summary: Dict[str, Any] = {}
        written: List[Dict[str, Any]] = []

        try:
            written = self._reconstruct_all(
                ArchiveReader(source_path, warnings=warnings, run_logger=run_logger),
                record_files,
                destination_path,
                list_name,
                mbox_path,
                reconstruction,
                warnings,
                errors,
                run_logger,
                progress_callback,
            )
            warning_cursor = self._sync_warning_events(warnings, warning_cursor, run_logger)

            if self.render_pdfs and written:
                render_results = self._render_all(written, pdf_dir, rendering, warnings, run_logger, progress_callback)
                warning_cursor = self._sync_warning_events(warnings, warning_cursor, run_logger)

            if self.merge_pdfs and render_results:
                consolidated_pdf, merge_summary = self._merge_all(
                    render_results,
                    os.path.join(destination_path, f"{output_name}.pdf"),
                    warnings,
                    run_logger,
                )
                warning_cursor = self._sync_warning_events(warnings, warning_cursor, run_logger)
        except Exception as exc:
            fatal_exception = exc
            errors.append(
                {
                    "code": "infra_unhandled_error",
                    "message": "Fatal processing error stopped the run",
                    "error": str(exc),
                    "traceback": traceback.format_exc(),
                }
            )
            run_logger.log("error", "fatal_error", "Fatal processing error", error=str(exc))
        finally:
            warning_cursor = self._sync_warning_events(warnings, warning_cursor, run_logger)
            manifest_path = os.path.join(destination_path, 'archive_manifest.json')
            manifest = {
                'timestamp': datetime.now().isoformat(),
                'run_id': run_id,
                'list_name': list_name,
                'source_path': source_path,
                'destination_path': destination_path,
                'messages': [entry["eml_path"] for entry in written],
                'mbox': mbox_path,
                'consolidated_pdf': consolidated_pdf,
                'reconstruction': reconstruction,
                'rendering': rendering,
                'render_failures': [
                    {'message_id': result.message_id, 'diagnostics': result.diagnostics}
                    for result in render_results
                    if not result.success
                ],
                'logs': {
                    'text_log': run_logger.text_log_path,
                    'jsonl_log': run_logger.jsonl_log_path,
                },
                'summary': {
                    'records_total': len(record_files),
                    'messages_total': len(written),
                    'pdfs_total': sum(1 for result in render_results if result.success),
                    'warnings_total': len(warnings),
                    'errors_total': len(errors),
                },
            }
            if merge_summary:
                manifest['merge'] = merge_summary
            if warnings:
                manifest['warnings'] = warnings
            if errors:
                manifest['errors'] = errors

            try:
                with open(manifest_path, 'w', encoding='utf-8') as f:
                    json.dump(manifest, f, indent=2, default=str)
                run_logger.log("info", "manifest_written", "Wrote archive manifest", path=manifest_path)
            except (OSError, TypeError, ValueError) as manifest_exc:
                run_logger.log(
                    "warning",
                    "manifest_write_failed",
                    f"Could not write archive_manifest.json: {manifest_exc}",
                    path=manifest_path,
                )
                manifest['manifest_write_error'] = str(manifest_exc)
            finally:
                run_logger.close()

        if fatal_exception is not None:
            raise RuntimeError(
                f"{fatal_exception}\n"
                f"Run log: {run_logger.text_log_path}\n"
                f"Manifest: {manifest_path}"
            ) from fatal_exception

        return manifest

    def _reconstruct_all(
        self,
        reader: ArchiveReader,
        record_files: List[str],
        destination_path: str,
        list_name: str,
        mbox_path: Optional[str],
        stats: Dict[str, int],
        warnings: List[Dict],
        errors: List[Dict],
        run_logger: RunLogger,
        progress_callback=None,
    ) -> List[Dict[str, Any]]:
        """Rebuild every record into an .eml file (and the mailbox), in natural id order."""
        header_repairer = HeaderRedactionRepairer(run_logger=run_logger)
        reconstructor = MimeReconstructor(
            matcher=AttachmentMatcher(threshold=self.match_threshold),
            warnings=warnings,
            run_logger=run_logger,
        )
        written: List[Dict[str, Any]] = []
        total = len(record_files)
        mailbox_context = MailboxWriter(mbox_path) if mbox_path else contextlib.nullcontext()

        with mailbox_context as mailbox_writer:
            for count, record_path in enumerate(record_files, 1):
                try:
                    entry = self._reconstruct_record(
                        reader,
                        record_path,
                        destination_path,
                        header_repairer,
                        reconstructor,
                        mailbox_writer,
                        stats,
                        warnings,
                        run_logger,
                    )
                except Exception as exc:
                    stats['failed'] += 1
                    errors.append(
                        {
                            "code": "message_failed",
                            "message": "Unexpected error while rebuilding message; skipped",
                            "file": record_path,
                            "error": str(exc),
                            "traceback": traceback.format_exc(),
                        }
                    )
                    run_logger.log("error", "message_failed", "Unexpected error while rebuilding message", file=record_path, error=str(exc))
                    entry = None

                if entry is not None:
                    entry["index"] = len(written)
                    written.append(entry)

                if self.verbose:
                    print(f"{list_name} -> {count} of {total}")
                _safe_progress(progress_callback, count, total, f"Rebuilt {os.path.basename(record_path)}")

        run_logger.log(
            "info",
            "reconstruction_summary",
            "Finished rebuilding messages",
            written=stats['messages_written'],
            unchanged=stats['messages_unchanged'],
            skipped=stats['skipped_no_body'],
            failed=stats['failed'],
        )
        return written

    def _reconstruct_record(
        self,
        reader: ArchiveReader,
        record_path: str,
        destination_path: str,
        header_repairer: HeaderRedactionRepairer,
        reconstructor: MimeReconstructor,
        mailbox_writer: Optional[MailboxWriter],
        stats: Dict[str, int],
        warnings: List[Dict],
        run_logger: RunLogger,
    ) -> Optional[Dict[str, Any]]:
        record = reader.load_record(record_path)
        if record is None:
            stats['failed'] += 1
            return None
        if not record.raw_email:
            stats['skipped_no_body'] += 1
            run_logger.log("debug", "message_no_body", "Record has no raw message; skipped", message_id=record.message_id)
            return None

        parsed = parse_raw_message(sanitize_raw_email(record.raw_email))
        if not parsed.ok:
            stats['failed'] += 1
            _record_warning(
                warnings,
                'message_parse_failed',
                'Raw message could not be parsed as MIME; skipped',
                message_id=record.message_id,
                file=record_path,
                error=parsed.error,
            )
            return None

        message = parsed.message
        stats['headers_repaired'] += len(header_repairer.repair_headers(message, record.pseudonym_id, record.message_id))
        pool = reader.build_candidate_pool(record)
        result = reconstructor.reconstruct(message, pool, record.message_id)
        stats['attachments_restored'] += len(result.placed_inline)
        stats['attachments_reattached'] += len(result.placed_trailer)
        stats['attachments_not_found'] += len(result.not_found)
        stats['attachments_unplaced'] += len(result.unplaced)
        stats['bodies_truncated'] += result.truncated_parts
        if result.unplaced:
            _record_warning(
                warnings,
                'attachments_unplaced',
                'Some attachment files could not be added to the message',
                message_id=record.message_id,
                file_ids=list(result.unplaced),
            )

        data = message.as_bytes()
        eml_path = os.path.join(destination_path, f"{self._safe_filename(record.message_id)}.eml")
        fresh = self._write_if_changed(eml_path, data)
        stats['messages_written' if fresh else 'messages_unchanged'] += 1
        if mailbox_writer is not None:
            mailbox_writer.append(message, record.post_date)

        return {
            "message_id": record.message_id,
            "eml_path": eml_path,
            "fresh": fresh,
        }

    def _render_all(
        self,
        written: List[Dict[str, Any]],
        pdf_dir: str,
        stats: Dict[str, int],
        warnings: List[Dict],
        run_logger: RunLogger,
        progress_callback=None,
    ) -> List[RenderResult]:
        renderer = self.renderer_factory(
            command=self.render_command,
            timeout_seconds=self.render_timeout_seconds,
            run_logger=run_logger,
        )
        available, reason = renderer.is_available()
        if not available:
            _record_warning(
                warnings,
                'renderer_unavailable',
                'PDF rendering skipped because the renderer is unavailable',
                error=reason,
            )
            return []

        os.makedirs(pdf_dir, exist_ok=True)
        jobs = [
            RenderJob(
                index=entry["index"],
                message_id=entry["message_id"],
                eml_path=entry["eml_path"],
                pdf_path=os.path.join(pdf_dir, os.path.splitext(os.path.basename(entry["eml_path"]))[0] + ".pdf"),
                fresh=entry["fresh"] or self.force_render,
            )
            for entry in written
        ]
        pipeline = RenderPipeline(
            renderer,
            simplifier=MessageSimplifier(),
            attempts=self.render_attempts,
            backoff_seconds=self.render_backoff_seconds,
            max_workers=self.max_render_workers,
            warnings=warnings,
            run_logger=run_logger,
        )
        print(f"    Rendering {len(jobs)} messages with {pipeline.worker_count(len(jobs))} workers")

        def on_progress(done, total, message_id):
            if self.verbose:
                print(f"    Rendered {done} of {total} (message {message_id})")
            _safe_progress(progress_callback, done, total, f"Rendered {message_id}")

        results = pipeline.render_all(jobs, progress_callback=on_progress)
        for result in results:
            if not result.success:
                stats['failed'] += 1
            elif result.strategy == "existing":
                stats['reused'] += 1
            else:
                stats['rendered'] += 1
                if result.strategy != "direct":
                    stats['simplified'] += 1
        stats['attempted'] = stats['rendered'] + stats['failed']
        run_logger.log("info", "render_summary", "Finished rendering", **stats)
        return results

    def _merge_all(
        self,
        results: List[RenderResult],
        output_path: str,
        warnings: List[Dict],
        run_logger: RunLogger,
    ):
        pdf_files = [result.pdf_path for result in results if result.success]
        produced_this_run = any(result.success and result.strategy != "existing" for result in results)
        if not pdf_files:
            return None, {}
        if not produced_this_run and os.path.exists(output_path):
            run_logger.log("info", "merge_skipped", "No PDFs changed in this run; keeping merged document", path=output_path)
            return output_path, {'strategy': 'unchanged', 'merged_total': len(pdf_files)}

        merger = PDFMerger(
            merge_command=self.merge_command,
            batch_size=self.merge_batch_size,
            external_threshold=self.external_merge_threshold,
            warnings=warnings,
            run_logger=run_logger,
        )
        result = merger.merge(pdf_files, output_path)
        return result.output_path, {
            'strategy': result.strategy,
            'merged_total': len(result.merged_inputs),
            'skipped_total': len(result.skipped_inputs),
            'dropped_batches': result.dropped_batches,
        }
