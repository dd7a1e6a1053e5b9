from pulse.app.services.pbs_tasks import (
    DAY_SECONDS,
    extract_namespace,
    is_stale_task_failure,
    process_pbs_tasks,
)


NOW = 1_700_000_000


def _task(worker_type: str, status: str, *, age_days: float = 1, **extra) -> dict:
    start = int(NOW - age_days * DAY_SECONDS)
    return {
        "upid": f"UPID:pbs:{worker_type}:{start}",
        "node": "pbs",
        "worker_type": worker_type,
        "status": status,
        "starttime": start,
        "endtime": start + 60,
        **extra,
    }


def test_tasks_are_bucketed_by_worker_type():
    buckets = process_pbs_tasks(
        [
            _task("backup", "OK"),
            _task("verificationjob", "OK"),
            _task("verify_group", "OK"),
            _task("syncjob", "OK"),
            _task("garbage_collection", "OK"),
            _task("prunejob", "OK"),
            _task("aptupdate", "OK"),
        ],
        now=NOW,
    )

    assert buckets["backup"].summary.total == 1
    assert buckets["verify"].summary.total == 2
    assert buckets["sync"].summary.total == 1
    assert buckets["prune_gc"].summary.total == 2


def test_summary_counts_and_last_times():
    ok_old = _task("backup", "OK", age_days=3)
    ok_new = _task("backup", "OK", age_days=1)
    failed = _task("backup", "ERROR: connection lost", age_days=2)
    running = _task("backup", "running", age_days=0.1)

    summary = process_pbs_tasks([ok_old, ok_new, failed, running], now=NOW)["backup"].summary

    assert (summary.ok, summary.failed, summary.total) == (2, 1, 3)
    assert summary.last_ok == ok_new["endtime"]
    assert summary.last_failed == failed["endtime"]


def test_empty_buckets_have_no_last_times():
    summary = process_pbs_tasks([], now=NOW)["sync"].summary

    assert summary.total == 0
    assert summary.last_ok is None and summary.last_failed is None


def test_stale_verification_failures_are_ignored():
    stale = _task("verificationjob", "ERROR: verification failed - backup not found", age_days=20)
    fresh = _task("verificationjob", "ERROR: verification failed - missing chunks", age_days=2)

    assert is_stale_task_failure(stale, NOW)
    assert not is_stale_task_failure(fresh, NOW)

    bucket = process_pbs_tasks([stale, fresh], now=NOW)["verify"]
    assert bucket.summary.failed == 1
    assert [task.upid for task in bucket.recent_tasks] == [fresh["upid"]]


def test_old_gc_warnings_are_stale():
    old = _task("garbage_collection", "WARNINGS: 2", age_days=45)
    recent = _task("garbage_collection", "WARNINGS: 1", age_days=5)

    assert is_stale_task_failure(old, NOW)
    assert not is_stale_task_failure(recent, NOW)


def test_recent_tasks_are_sorted_limited_and_windowed():
    tasks = [_task("backup", "OK", age_days=days) for days in (1, 5, 2, 40, 3)]

    recent = process_pbs_tasks(tasks, recent_limit=3, now=NOW)["backup"].recent_tasks

    start_times = [task.start_time for task in recent]
    assert start_times == sorted(start_times, reverse=True)
    assert len(recent) == 3
    assert all(NOW - start <= 30 * DAY_SECONDS for start in start_times)
    assert recent[0].duration == 60


def test_namespace_comes_from_worker_id():
    assert extract_namespace({"worker_id": "datastore1:ns=prod:vm/100"}) == "prod"
    assert extract_namespace({"worker_id": "datastore1:vm/100"}) == "root"
    assert extract_namespace({"namespace": "lab"}) == "lab"


def test_non_list_input_yields_empty_buckets():
    buckets = process_pbs_tasks({"unexpected": True}, now=NOW)

    assert set(buckets) == {"backup", "verify", "sync", "prune_gc"}
    assert all(bucket.recent_tasks == [] for bucket in buckets.values())


def test_odd_field_types_do_not_break_task_details():
    odd = _task("backup", "OK", node=["pbs"], user=None, worker_id=42)
    odd["upid"] = 987

    buckets = process_pbs_tasks([odd, _task("backup", "OK", age_days=2)], now=NOW)

    details = buckets["backup"].recent_tasks
    assert len(details) == 2
    assert details[0].upid == "987"
    assert details[0].node is None
    assert details[0].id == "42"
    assert buckets["backup"].summary.ok == 2
