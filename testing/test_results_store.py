import pytest

from src.errors import NoValidRowsError, RecordNotFoundError
from src.models import MESSAGE_SENT, MESSAGE_UNSENT, ClusteringRow
from src.results_store import BatchResultStore


def _row(id_number, name="Budi Santoso", status="Disiplin", cluster="0", absences=0, sessions=48):
    return ClusteringRow.from_api({
        "NIM": id_number, "Nama Mahasiswa": name, "TINGKAT": "TK1", "KELAS": "A",
        "TOTAL_A": absences, "JP": sessions, "KEDISIPLINAN": status, "Cluster": cluster,
        "Insight": f"insight {id_number}",
    })


@pytest.fixture
def store(database):
    return BatchResultStore(database)


def test_saving_twice_keeps_only_the_second_set(store, make_student, batch):
    for id_number in ("2023001", "2023002", "2023003"):
        make_student(id_number)

    store.save_results([_row("2023001"), _row("2023002")], batch.id)
    report = store.save_results([_row("2023002", status="SP-I"), _row("2023003")], batch.id)

    assert report.saved == 2
    results = store.get_results_for_batch(batch.id)
    assert [r.id_number for r in results] == ["2023002", "2023003"]
    assert results[0].discipline_status == "SP-I"


def test_unmatched_rows_are_skipped(store, make_student, batch):
    make_student("2023001")

    report = store.save_results([_row("2023001"), _row("2023999")], batch.id)

    assert report.saved == 1
    assert report.skipped == 1
    assert report.skipped_id_numbers == ["2023999"]


def test_repeated_id_number_keeps_the_last_row(store, make_student, batch):
    make_student("2023001", guardian_contact="0812")
    make_student("2023002")

    report = store.save_results(
        [_row("2023001"), _row("2023002"), _row("2023001", status="SP-I", cluster=1)], batch.id
    )

    assert report.saved == 2
    assert report.duplicates == 1
    assert report.skipped == 0
    results = store.get_results_for_batch(batch.id)
    assert [r.id_number for r in results] == ["2023001", "2023002"]
    assert results[0].discipline_status == "SP-I"


def test_no_valid_rows_persists_nothing(store, database, make_student, batch):
    make_student("2023001")
    store.save_results([_row("2023001")], batch.id)

    with pytest.raises(NoValidRowsError) as excinfo:
        store.save_results([_row("2023998"), _row("2023999")], batch.id)

    assert excinfo.value.skipped == 2
    # the earlier results of the batch are untouched
    assert [r.id_number for r in store.get_results_for_batch(batch.id)] == ["2023001"]


def test_reads_are_joined(store, make_student, batch):
    student = make_student("2023001", "Budi Santoso", guardian_contact="0812", advisor_name="Dr. Rina")
    store.save_results([_row("2023001", status="SP-II", cluster=2, absences="14", sessions=48.0)], batch.id)

    (result,) = store.get_results_for_batch(batch.id)

    assert result.user_id == student.account_id
    assert result.profile.guardian_contact == "0812"
    assert result.profile.advisor_name == "Dr. Rina"
    assert result.batch.name == "Batch 1"
    assert result.period.name == "Ganjil 2024/2025"
    assert result.total_absences == 14
    assert result.total_sessions == 48
    assert result.cluster_label == "2"
    assert result.raw_row["Insight"] == "insight 2023001"
    assert result.message_status == MESSAGE_UNSENT
    assert result.attendance_percentage == round(34 / 48 * 100, 1)


def test_results_for_user_and_all(store, database, make_student, batch):
    student = make_student("2023001")
    make_student("2023002")
    later = database.create_batch("Batch 2", batch.period_id)
    store.save_results([_row("2023001"), _row("2023002")], batch.id)
    store.save_results([_row("2023001", status="SP-I")], later.id)

    history = store.get_results_for_user(student.account_id)
    assert len(history) == 2
    assert {r.batch.name for r in history} == {"Batch 1", "Batch 2"}
    assert len(store.get_all_results()) == 3


def test_mark_sent(store, make_student, batch):
    make_student("2023001")
    store.save_results([_row("2023001")], batch.id)
    (result,) = store.get_results_for_batch(batch.id)

    store.mark_sent(result.id)

    assert store.get_result(result.id).message_status == MESSAGE_SENT
    with pytest.raises(RecordNotFoundError):
        store.mark_sent("missing")
