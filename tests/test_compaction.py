import json

from sendqueuectl.compaction import compact_latest_by_key, data_file_status, rotate
from sendqueuectl.models import SENT
from sendqueuectl.store import JobStore


def _fill(store, make_request):
    a = store.create_job(make_request("d1"))
    b = store.create_job(make_request("d2"))
    a.status = SENT
    store.update_job(a)
    b.attempts = 2
    store.update_job(b)
    with open(store.path, "a") as f:
        f.write("garbage\n")
    return a, b


def test_dry_run_reports_and_leaves_file(store, make_request, queue_file):
    _fill(store, make_request)
    before = queue_file.read_text()

    result = compact_latest_by_key(queue_file)

    assert result.success and result.dry_run
    assert result.input_lines == 5
    assert result.output_lines == 2
    assert result.reduction_pct > 0
    assert queue_file.read_text() == before


def test_execute_keeps_latest_snapshot_per_job(store, make_request, queue_file):
    a, b = _fill(store, make_request)

    result = compact_latest_by_key(queue_file, execute=True)

    assert result.success
    assert result.backup_path and open(result.backup_path).read().count("\n") == 5
    lines = queue_file.read_text().splitlines()
    assert [json.loads(ln)["job_id"] for ln in lines] == [a.job_id, b.job_id]

    reloaded = JobStore(queue_file)
    assert reloaded.get_job(a.job_id).status == SENT
    assert reloaded.get_job(b.job_id).attempts == 2


def test_missing_file(tmp_path):
    result = compact_latest_by_key(tmp_path / "missing.ndjson", execute=True)
    assert result.success is False
    assert result.error == "Input file does not exist"


def test_rotate(store, make_request, queue_file):
    store.create_job(make_request())

    dry = rotate(queue_file, suffix="20250101")
    assert dry.success and not (queue_file.parent / "send_queue.ndjson.20250101").exists()

    done = rotate(queue_file, execute=True, suffix="20250101")
    assert done.success
    assert queue_file.read_text() == ""
    assert (queue_file.parent / "send_queue.ndjson.20250101").read_text().count("\n") == 1

    store.create_job(make_request("d2"))
    again = rotate(queue_file, execute=True, suffix="20250101")
    assert again.success is False
    assert "already exists" in again.error


def test_data_file_status(store, make_request, queue_file, tmp_path):
    assert data_file_status(tmp_path / "none").exists is False

    _fill(store, make_request)
    status = data_file_status(queue_file)
    assert status.exists
    assert status.lines == 5
    assert status.size_bytes > 0
    assert status.oldest_record <= status.newest_record


def test_snapshots_the_store_would_skip_are_not_kept(store, make_request, queue_file):
    job = store.create_job(make_request())
    with open(queue_file, "a") as f:
        f.write(json.dumps({"job_id": job.job_id, "status": "bogus"}) + "\n")
        f.write(json.dumps({"job_id": job.job_id, "draft_id": "d", "status": "queued", "created_at": 7}) + "\n")
    assert store.get_job(job.job_id) is not None

    result = compact_latest_by_key(queue_file, execute=True)

    assert result.output_lines == 1
    reloaded = JobStore(queue_file).get_job(job.job_id)
    assert reloaded is not None
    assert reloaded.draft_id == job.draft_id
