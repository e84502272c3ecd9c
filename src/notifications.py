"""WhatsApp notices for clustering results and batch reports."""

from typing import List, Sequence, Tuple

from src.errors import ConfigurationError, ValidationError
from src.logger import app_logger as logger, audit_logger
from src.models import ClusteringResult, DispatchSummary
from src.reports import BatchReport
from src.telemetry import telemetry

INSTITUTION = "Politeknik Negeri Lhokseumawe"

APPRECIATION = (
    "Kami mengapresiasi kedisiplinan Anda dalam mengikuti kegiatan perkuliahan. "
    "Semoga hal ini dapat menjadi motivasi bagi rekan-rekan mahasiswa lainnya. "
    "Harap dipertahankan dan terus ditingkatkan untuk semester berikutnya."
)
NOTICE = (
    "Dengan ini kami menyampaikan status kedisiplinan Anda selama periode yang telah ditentukan. "
    "Harap informasi ini dapat menjadi perhatian dan bahan evaluasi untuk menjaga atau "
    "meningkatkan kedisiplinan ke depannya."
)


def _student_name(result: ClusteringResult) -> str:
    if result.profile and result.profile.display_name:
        return result.profile.display_name
    return result.student_name


def _student_id(result: ClusteringResult) -> str:
    if result.profile and result.profile.id_number:
        return result.profile.id_number
    return result.id_number


def render_result_message(result: ClusteringResult) -> str:
    """The formal notice sent for one clustering result. Same input, same text."""
    period = result.period
    name = _student_name(result)
    closing = APPRECIATION if result.discipline_status == "Disiplin" else NOTICE
    return f"""Kepada Yth.
Sdr. {name}
Mahasiswa {result.track_level}, Kelas {result.section}
{INSTITUTION}
di Tempat

Dengan hormat,
Berdasarkan hasil evaluasi rekapitulasi absensi mahasiswa untuk Semester {period.name if period else ''}, bersama ini kami sampaikan informasi terkait kehadiran Anda sebagai berikut:

Keterangan\tNilai
Nama Mahasiswa\t{name}
NIM\t{_student_id(result)}
Tingkat / Kelas\t{result.track_level} / {result.section}
Total Ketidakhadiran\t{result.total_absences}
Jumlah Pertemuan (JP)\t{result.total_sessions}
Status Kedisiplinan\t{result.discipline_status}
Keterangan Tambahan\t{result.insight}

{closing}

Demikian surat pemberitahuan ini kami sampaikan. Atas perhatian dan kerja samanya, kami ucapkan terima kasih.

Hormat kami,
Bagian Akademik
{INSTITUTION}"""


def render_report_message(result: ClusteringResult, report: BatchReport) -> str:
    batch = report.batch
    period = batch.period if batch else None
    period_line = " ".join(part for part in (
        period.name if period else "",
        (period.academic_year or "") if period else "",
    ) if part)
    stats = report.stats
    return f"""LAPORAN CLUSTERING KEDISIPLINAN MAHASISWA

Periode: {period_line}
Batch: {batch.name if batch else ''}

DATA MAHASISWA:
Nama: {_student_name(result)}
NIM: {_student_id(result)}
Tingkat/Kelas: {result.track_level}/{result.section}
Total Ketidakhadiran: {result.total_absences}
Status Kedisiplinan: {result.discipline_status}
Cluster: {result.cluster_label}

RINGKASAN BATCH:
Total Mahasiswa: {report.total}
- Disiplin: {stats['disiplin']} ({report.share('disiplin'):.1f}%)
- SP-I: {stats['sp1']} ({report.share('sp1'):.1f}%)
- SP-II: {stats['sp2']} ({report.share('sp2'):.1f}%)
- SP-III: {stats['sp3']} ({report.share('sp3'):.1f}%)

Insight: {result.insight}

{INSTITUTION}
Bagian Akademik"""


def contact_targets(result: ClusteringResult) -> List[Tuple[str, str]]:
    """Guardian and advisor numbers present on the student's profile."""
    profile = result.profile
    if profile is None:
        return []
    targets = []
    for role, number in (("guardian", profile.guardian_contact), ("advisor", profile.advisor_contact)):
        if number and number.strip():
            targets.append((role, number.strip()))
    return targets


class NotificationDispatcher:
    """Sends notices one contact at a time; a failed contact never stops the run."""

    def __init__(self, client, store):
        self.client = client
        self.store = store

    def _require_ready(self, items: Sequence) -> None:
        if not items:
            raise ValidationError("Tidak ada data untuk dikirim")
        if not self.client.is_configured:
            raise ConfigurationError("FONNTE_TOKEN", "Token Fonnte belum dikonfigurasi")

    def _send_to_contacts(self, result: ClusteringResult, message: str, summary: DispatchSummary) -> Tuple[int, int]:
        attempted = delivered = 0
        for role, number in contact_targets(result):
            attempted += 1
            try:
                self.client.send(number, message)
                delivered += 1
            except Exception as exc:
                logger.error(f"Error sending to {role} of {result.id_number}: {exc}")
                summary.failures.append({"result_id": result.id, "contact": role, "error": str(exc)})
        summary.attempted += attempted
        summary.delivered += delivered
        return attempted, delivered

    async def dispatch_batch(self, results: Sequence[ClusteringResult]) -> DispatchSummary:
        """Notify guardian and advisor of every result, then mark each one sent.

        A result is marked sent once its attempts were made, whatever the
        provider answered.
        """
        self._require_ready(results)
        summary = DispatchSummary()
        with telemetry.span("notification_dispatch", results=len(results)):
            for result in results:
                attempted, delivered = self._send_to_contacts(result, render_result_message(result), summary)
                self.store.mark_sent(result.id)
                audit_logger.log_notification(result.id, attempted, delivered)
                summary.results_processed += 1

        telemetry.record_notification(summary.attempted, summary.delivered)
        logger.info(f"Notifications: {summary.delivered}/{summary.attempted} delivered for {summary.results_processed} results")
        return summary

    async def dispatch_report(self, report: BatchReport) -> DispatchSummary:
        """Send the batch report to every student's contacts; result status is left alone."""
        results = report.results if report else []
        self._require_ready(results)
        summary = DispatchSummary()
        with telemetry.span("report_dispatch", results=len(results)):
            for result in results:
                self._send_to_contacts(result, render_report_message(result, report), summary)
                summary.results_processed += 1

        telemetry.record_notification(summary.attempted, summary.delivered, kind="report")
        return summary
