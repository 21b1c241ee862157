import threading
import time


class MetricsCollector:
    """Request counters for the lifetime of one process.

    One instance lives in ``app.extensions['cloudstore.metrics']``; counts
    start from zero whenever the process restarts.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        with self._lock:
            self.started_at = time.time()
            self.request_count = 0
            self.status_counts = {}

    def record_request(self, status_code):
        status_class = f'{status_code // 100}xx'
        with self._lock:
            self.request_count += 1
            self.status_counts[status_class] = self.status_counts.get(status_class, 0) + 1

    def snapshot(self):
        with self._lock:
            return {
                'uptime': round(time.time() - self.started_at),
                'request_count': self.request_count,
                'status_counts': dict(self.status_counts),
            }
