from library_rec.jobs import SqliteJobTracker, new_job_id


def test_new_job_ids_are_unique_and_prefixed():
    first = new_job_id("recommend")
    second = new_job_id("recommend")

    assert first.startswith("recommend-")
    assert first != second


def test_tracker_records_steps_progress_and_logs(fresh_db):
    tracker = SqliteJobTracker()
    job_id = tracker.create("job-1", "recommend-all movie", total_steps=1)

    tracker.report_step(job_id, 1, "Generating recommendations", 10)
    tracker.report_progress(job_id, 4, 10, "alice")
    tracker.log(job_id, "info", "alice: 12 recommendations")
    tracker.log(job_id, "error", "bob: no embeddings")

    job = tracker.get(job_id)
    assert job["status"] == "running"
    assert job["step_name"] == "Generating recommendations"
    assert (job["items_processed"], job["items_total"], job["current_item"]) == (4, 10, "alice")
    assert [entry["level"] for entry in job["logs"]] == ["info", "error"]


def test_tracker_cancel_complete_and_fail(fresh_db):
    tracker = SqliteJobTracker()
    tracker.create("job-a", "batch")
    tracker.create("job-b", "batch")

    assert tracker.is_cancelled("job-a") is False
    assert tracker.request_cancel("job-a") is True
    assert tracker.is_cancelled("job-a") is True

    tracker.complete("job-a", {"success": 1, "cancelled": True})
    tracker.fail("job-b", "database locked")

    assert tracker.get("job-a")["result"] == {"success": 1, "cancelled": True}
    assert tracker.get("job-b")["status"] == "failed"
    assert tracker.get("job-b")["error_message"] == "database locked"
    assert tracker.get("missing") is None
