"""
Clustering workflow - the admin and student operations behind the dashboard.

Admin flow:
1. Preview an attendance workbook and register its students
2. Run clustering for a sheet and save the rows into a batch
3. Notify guardians and advisors, or send the batch report

Every admin operation ends in a single WorkflowMessage (success / info / error)
with per-record details attached.
"""

import logging
import time
from datetime import date
from typing import Any, BinaryIO, Dict, List, Optional, Sequence, Tuple, Union

from src.accounts import require_admin, require_user
from src.config import config
from src.credentials import derive_email
from src.errors import NoValidRowsError, RecordNotFoundError, RegistrationHaltedError, ValidationError
from src.models import (
    Batch,
    ClusteringRow,
    Period,
    ReconciliationReport,
    StudentRecord,
    WorkflowMessage,
)
from src.notifications import NotificationDispatcher
from src.reconciliation import StudentReconciliationEngine
from src.reports import BatchReport, build_batch_report, dashboard_stats, personal_history
from src.results_store import BatchResultStore
from src.session_guard import UserContext, with_preserved_session
from src.telemetry import telemetry

logger = logging.getLogger(__name__)

Upload = Union[bytes, BinaryIO]


def registration_message(report: ReconciliationReport) -> WorkflowMessage:
    counts = report.counts()
    created = counts.get("created", 0)
    existing = counts.get("already_exists", 0)
    failed = sum(counts.get(key, 0) for key in ("rate_limited", "policy_denied", "error"))

    text = ""
    if created:
        text += f"✅ {created} mahasiswa berhasil ditambahkan. "
    if existing:
        text += f"ℹ️ {existing} mahasiswa sudah terdaftar sebelumnya. "
    if failed:
        text += f"❌ {failed} mahasiswa gagal ditambahkan."
    if report.halted:
        text += " Pendaftaran dihentikan: sesi admin ditolak oleh server autentikasi."

    if report.halted:
        kind = "error"
    else:
        kind = "success" if created else "info" if existing else "error"
    return WorkflowMessage(kind, text.strip() or "Tidak ada mahasiswa yang ditambahkan", details=report.to_dict())


class ClusteringWorkflow:
    """Admin and student operations wired to the database and external services."""

    def __init__(self, database, clustering_client, whatsapp_client, cfg=config, engine_overrides: Optional[Dict[str, Any]] = None):
        self.db = database
        self.clustering = clustering_client
        self.store = BatchResultStore(database)
        self.dispatcher = NotificationDispatcher(whatsapp_client, self.store)
        self.settings = cfg
        self.engine_overrides = engine_overrides or {}

    # ------------------------------------------------------------------
    # Students
    # ------------------------------------------------------------------

    def preview_students(self, context: UserContext, file: Upload, filename: str, sheet_name: str) -> List[Dict[str, Any]]:
        """Students found in a workbook, with the login email each would get."""
        require_admin(context)
        rows = self.clustering.process_file(file, filename, sheet_name)
        preview = []
        for row in rows:
            if not row.id_number or not row.student_name:
                continue
            record = StudentRecord.from_clustering_row(row)
            preview.append({
                **record.to_dict(),
                "email": derive_email(record.display_name, record.id_number, self.settings.student_email_domain),
            })
        logger.info(f"Previewed {len(preview)} students from {filename} ({sheet_name})")
        return preview

    async def register_students(
        self,
        context: UserContext,
        records: Sequence[StudentRecord],
        retry_rate_limited: bool = False
    ) -> WorkflowMessage:
        require_admin(context)
        if not records:
            raise ValidationError("Tidak ada data mahasiswa untuk ditambahkan")

        overrides = dict(self.engine_overrides)
        overrides.setdefault("retry_rate_limited", retry_rate_limited)
        engine = StudentReconciliationEngine.from_config(self.db, context.gateway, self.settings, **overrides)

        try:
            report = await with_preserved_session(context, lambda guard: engine.reconcile(records, guard))
        except RegistrationHaltedError as exc:
            logger.error(f"Student registration halted: {exc}")
            return registration_message(exc.report)
        return registration_message(report)

    # ------------------------------------------------------------------
    # Clustering and results
    # ------------------------------------------------------------------

    def run_clustering(self, context: UserContext, file: Upload, filename: str, sheet_name: str) -> Tuple[List[ClusteringRow], WorkflowMessage]:
        require_admin(context)
        started = time.perf_counter()
        with telemetry.span("clustering_run", sheet=sheet_name):
            try:
                rows = self.clustering.process_file(file, filename, sheet_name)
            except Exception:
                telemetry.record_clustering_call(
                    sheet_name, 0, success=False, duration_ms=(time.perf_counter() - started) * 1000
                )
                raise
        telemetry.record_clustering_call(
            sheet_name, len(rows), success=True, duration_ms=(time.perf_counter() - started) * 1000
        )
        return rows, WorkflowMessage("success", "Clustering berhasil diproses!", details={"rows": len(rows)})

    def save_results(self, context: UserContext, rows: Sequence[ClusteringRow], batch_id: str) -> WorkflowMessage:
        require_admin(context)
        if not batch_id:
            raise ValidationError("Pilih batch terlebih dahulu", field="batch_id")
        if not rows:
            raise ValidationError("Tidak ada hasil clustering untuk disimpan")
        if self.db.get_batch(batch_id) is None:
            raise RecordNotFoundError(f"Batch {batch_id} not found")

        try:
            report = self.store.save_results(rows, batch_id)
        except NoValidRowsError as exc:
            return WorkflowMessage(
                "error",
                "Tidak ada data mahasiswa yang valid untuk disimpan. Pastikan mahasiswa sudah terdaftar di sistem.",
                details={"skipped": exc.skipped},
            )
        text = f"Berhasil menyimpan {report.saved} hasil clustering!"
        if report.skipped:
            text += f" {report.skipped} baris dilewati karena mahasiswa belum terdaftar."
        return WorkflowMessage("success", text, details=report.to_dict())

    def batch_results(self, context: UserContext, batch_id: str):
        require_admin(context)
        return self.store.get_results_for_batch(batch_id)

    async def notify_batch(self, context: UserContext, batch_id: str) -> WorkflowMessage:
        require_admin(context)
        results = self.store.get_results_for_batch(batch_id)
        summary = await self.dispatcher.dispatch_batch(results)
        return WorkflowMessage(
            "success",
            f"Berhasil mengirim {summary.delivered} pesan WhatsApp",
            details=summary.to_dict(),
        )

    def batch_report(self, context: UserContext, batch_id: str) -> Optional[BatchReport]:
        require_admin(context)
        return build_batch_report(self.store.get_results_for_batch(batch_id))

    async def send_batch_report(self, context: UserContext, batch_id: str) -> WorkflowMessage:
        report = self.batch_report(context, batch_id)
        if report is None:
            raise ValidationError("Tidak ada data untuk diekspor")
        summary = await self.dispatcher.dispatch_report(report)
        return WorkflowMessage(
            "success",
            f"Laporan berhasil diekspor dan dikirim ke {summary.delivered} kontak",
            details=summary.to_dict(),
        )

    def dashboard(self, context: UserContext) -> Dict[str, Any]:
        require_admin(context)
        return dashboard_stats(self.store.get_all_results())

    def my_results(self, context: UserContext) -> Dict[str, Any]:
        context = require_user(context)
        return personal_history(self.store.get_results_for_user(context.profile.account_id))

    # ------------------------------------------------------------------
    # Periods and batches
    # ------------------------------------------------------------------

    def list_periods(self, context: UserContext) -> List[Period]:
        require_admin(context)
        return self.db.list_periods()

    def create_period(self, context: UserContext, name: str, academic_year: Optional[str] = None,
                      semester: Optional[str] = None) -> Period:
        require_admin(context)
        return self.db.create_period(name, academic_year, semester)

    def update_period(self, context: UserContext, period_id: str, **fields) -> Period:
        require_admin(context)
        return self.db.update_period(period_id, **fields)

    def list_batches(self, context: UserContext, period_id: Optional[str] = None) -> List[Batch]:
        require_admin(context)
        return self.db.list_batches(period_id)

    def create_batch(self, context: UserContext, name: str, period_id: str,
                     batch_date: Optional[date] = None) -> Batch:
        require_admin(context)
        return self.db.create_batch(name, period_id, batch_date)
