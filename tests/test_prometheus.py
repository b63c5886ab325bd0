from attendance_notifier.prometheus import NotifierMetrics


def test_notifier_metrics_counters_and_gauges():
    metrics = NotifierMetrics()

    metrics.inc_sent("text")
    metrics.inc_sent("document")
    metrics.inc_failed("text")
    metrics.inc_retried("rate_limit")
    metrics.inc_reclaimed(3)
    metrics.inc_recap_jobs("monthly", 4)
    metrics.set_pending(7)
    metrics.set_session_open(True)

    output = metrics.generate_latest()
    assert b'atn_sent_total{kind="document"} 1.0' in output
    assert b'atn_failed_total{kind="text"} 1.0' in output
    assert b'atn_retried_total{reason="rate_limit"} 1.0' in output
    assert b"atn_reclaimed_total 3.0" in output
    assert b'atn_recap_jobs_total{schedule="monthly"} 4.0' in output
    assert b"atn_pending_jobs 7.0" in output
    assert b"atn_session_open 1.0" in output


def test_separate_instances_use_separate_registries():
    first = NotifierMetrics()
    second = NotifierMetrics()
    first.set_pending(1)
    assert b"atn_pending_jobs 0.0" in second.generate_latest()
