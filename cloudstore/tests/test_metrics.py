from cloudstore.metrics import MetricsCollector


def test_counts_by_status_class():
    metrics = MetricsCollector()
    for status in (200, 201, 204, 404, 413, 503):
        metrics.record_request(status)

    snapshot = metrics.snapshot()
    assert snapshot['request_count'] == 6
    assert snapshot['status_counts'] == {'2xx': 3, '4xx': 2, '5xx': 1}
    assert snapshot['uptime'] >= 0


def test_reset():
    metrics = MetricsCollector()
    metrics.record_request(200)
    metrics.reset()
    assert metrics.snapshot()['request_count'] == 0
    assert metrics.snapshot()['status_counts'] == {}


def test_snapshot_is_a_copy():
    metrics = MetricsCollector()
    metrics.record_request(200)
    snapshot = metrics.snapshot()
    snapshot['status_counts']['2xx'] = 99
    assert metrics.snapshot()['status_counts'] == {'2xx': 1}
