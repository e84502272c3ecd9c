"""Persistence of clustering results per batch (``hasil_clustering``)."""

import json
from typing import Any, Dict, List, Optional, Sequence

from src.database import Database, new_id
from src.errors import NoValidRowsError, RecordNotFoundError
from src.logger import app_logger as logger
from src.models import (
    MESSAGE_SENT,
    MESSAGE_UNSENT,
    Batch,
    ClusteringResult,
    ClusteringRow,
    Period,
    Profile,
    SaveReport,
    coerce_count,
)
from src.telemetry import telemetry
from src.utils import safe_load_json

INSERT_RESULT = """
    INSERT INTO hasil_clustering (
        id, id_user, id_batch, nim, nama_mahasiswa, tingkat, kelas,
        total_a, jp, kedisiplinan, cluster, insight, nilai_matkul, status_pesan
    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

RESULT_SELECT = """
    SELECT h.*,
           u.email AS user_email, u.nama AS user_nama, u.nim AS user_nim,
           u.role AS user_role, u.level_user AS user_level_user,
           u.nama_wali AS user_nama_wali, u.no_wa_wali AS user_no_wa_wali,
           u.nama_dosen_pembimbing AS user_nama_dosen_pembimbing,
           u.no_wa_dosen_pembimbing AS user_no_wa_dosen_pembimbing,
           u.tingkat AS user_tingkat, u.kelas AS user_kelas,
           u.account_linked AS user_account_linked,
           b.nama_batch, b.tgl_batch, b.id_periode,
           p.nama_periode, p.tahun_ajaran, p.semester
    FROM hasil_clustering h
    LEFT JOIN users u ON u.id = h.id_user
    LEFT JOIN batch b ON b.id = h.id_batch
    LEFT JOIN periode p ON p.id = b.id_periode
"""


def result_from_row(row: Dict[str, Any]) -> ClusteringResult:
    """Build a ClusteringResult from a joined ``RESULT_SELECT`` row."""
    profile = None
    if row.get("id_user") and row.get("user_email") is not None:
        user_row = {key[len("user_"):]: value for key, value in row.items() if key.startswith("user_")}
        user_row["id"] = row["id_user"]
        profile = Profile.from_row(user_row)

    batch = None
    if row.get("nama_batch") is not None:
        period = None
        if row.get("id_periode") and row.get("nama_periode") is not None:
            period = Period(
                id=row["id_periode"],
                name=row["nama_periode"],
                academic_year=row.get("tahun_ajaran"),
                semester_label=row.get("semester"),
            )
        batch = Batch.from_row({**row, "id": row["id_batch"]}, period=period)

    raw = safe_load_json(row.get("nilai_matkul"))
    return ClusteringResult(
        id=row["id"],
        user_id=row.get("id_user"),
        batch_id=row["id_batch"],
        id_number=row.get("nim") or "",
        student_name=row.get("nama_mahasiswa") or "",
        track_level=row.get("tingkat") or "",
        section=row.get("kelas") or "",
        total_absences=coerce_count(row.get("total_a")),
        total_sessions=coerce_count(row.get("jp")),
        discipline_status=row.get("kedisiplinan") or "",
        cluster_label=str(row.get("cluster") if row.get("cluster") is not None else "0"),
        insight=row.get("insight") or "",
        raw_row=raw if isinstance(raw, dict) else {},
        message_status=row.get("status_pesan") or MESSAGE_UNSENT,
        profile=profile,
        batch=batch,
    )


class BatchResultStore:
    """Delete-then-insert saving and joined reads of clustering results."""

    def __init__(self, database: Database):
        self.db = database

    def save_results(self, rows: Sequence[ClusteringRow], batch_id: str) -> SaveReport:
        """Replace every stored result of ``batch_id`` with ``rows``.

        A batch holds one result per student, so when an ID number repeats
        the last row wins. Rows whose ID number has no profile are dropped
        and counted. When nothing is left NoValidRowsError is raised and the
        batch is untouched.
        """
        skipped: List[str] = []
        latest: Dict[str, ClusteringRow] = {}
        duplicates = 0
        for row in rows:
            if not row.id_number:
                skipped.append(row.id_number)
                continue
            if row.id_number in latest:
                duplicates += 1
                del latest[row.id_number]
            latest[row.id_number] = row

        profiles = self.db.get_profiles_by_id_numbers(latest)

        values: List[tuple] = []
        for row in latest.values():
            profile = profiles.get(row.id_number)
            if profile is None:
                skipped.append(row.id_number)
                continue
            values.append((
                new_id(),
                profile.account_id,
                batch_id,
                row.id_number,
                row.student_name,
                row.track_level,
                row.section,
                coerce_count(row.total_absences),
                coerce_count(row.total_sessions),
                row.discipline_status,
                row.cluster_label or "0",
                row.insight,
                json.dumps(row.raw or row.to_dict(), default=str),
                MESSAGE_UNSENT,
            ))

        if not values:
            raise NoValidRowsError(skipped=len(skipped))

        with self.db.transaction() as cursor:
            self.db.execute_in(cursor, "DELETE FROM hasil_clustering WHERE id_batch = %s", (batch_id,))
            for params in values:
                self.db.execute_in(cursor, INSERT_RESULT, params)

        if skipped:
            logger.warning(f"Skipped {len(skipped)} clustering rows without a registered student")
        if duplicates:
            logger.warning(f"Dropped {duplicates} repeated clustering rows, keeping the last row per student")
        logger.info(f"Saved {len(values)} clustering results for batch {batch_id}")
        telemetry.record_results_saved(len(values), len(skipped))
        return SaveReport(
            batch_id=batch_id,
            saved=len(values),
            skipped=len(skipped),
            skipped_id_numbers=skipped,
            duplicates=duplicates,
        )

    def get_all_results(self) -> List[ClusteringResult]:
        rows = self.db.execute_query(RESULT_SELECT + " ORDER BY h.created_at DESC, h.nim")
        return [result_from_row(row) for row in rows]

    def get_results_for_batch(self, batch_id: str) -> List[ClusteringResult]:
        rows = self.db.execute_query(RESULT_SELECT + " WHERE h.id_batch = %s ORDER BY h.nim", (batch_id,))
        return [result_from_row(row) for row in rows]

    def get_results_for_user(self, account_id: str) -> List[ClusteringResult]:
        """Personal history, newest batch first."""
        rows = self.db.execute_query(
            RESULT_SELECT + " WHERE h.id_user = %s ORDER BY b.tgl_batch DESC, h.created_at DESC",
            (account_id,)
        )
        return [result_from_row(row) for row in rows]

    def get_result(self, result_id: str) -> Optional[ClusteringResult]:
        rows = self.db.execute_query(RESULT_SELECT + " WHERE h.id = %s", (result_id,))
        return result_from_row(rows[0]) if rows else None

    def mark_sent(self, result_id: str) -> None:
        affected = self.db.execute_non_query(
            "UPDATE hasil_clustering SET status_pesan = %s WHERE id = %s",
            (MESSAGE_SENT, result_id)
        )
        if affected == 0:
            raise RecordNotFoundError(f"Clustering result {result_id} not found")
