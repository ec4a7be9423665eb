import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from contextvars import ContextVar
from collections import defaultdict
from threading import Lock

# Name of the reconciliation pass currently executing, attached to every event
pass_name_var: ContextVar[Optional[str]] = ContextVar('pass_name', default=None)

class StructuredLogger:
    """
    JSON-lines logger for director events.
    Every line carries ts, level, event and the active pass name.
    """

    def __init__(self, name: str = "director"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def set_debug(self, enabled: bool) -> None:
        self.logger.setLevel(logging.DEBUG if enabled else logging.INFO)

    def log_event(
        self,
        event: str,
        level: str = "INFO",
        **fields
    ) -> None:
        """
        Log a structured event.

        Args:
            event: Dotted event name (e.g., "push.wake.failed", "import.completed")
            level: DEBUG, INFO, WARN or ERROR
            **fields: Event-specific fields such as device_udid or error
        """
        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "pass": pass_name_var.get(),
        }
        entry.update(fields)

        line = json.dumps(entry, default=str)

        if level == "ERROR":
            self.logger.error(line)
        elif level == "WARN":
            self.logger.warning(line)
        elif level == "DEBUG":
            self.logger.debug(line)
        else:
            self.logger.info(line)


class MetricsCollector:
    """
    In-memory counters and histograms rendered in Prometheus text format.
    """

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, Dict[tuple, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: Dict[str, Dict[tuple, list]] = defaultdict(lambda: defaultdict(list))

        self.latency_buckets = [10, 50, 100, 250, 500, 1000, 5000, 30000]

    def inc_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None, value: int = 1):
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            self._counters[metric_name][label_tuple] += value

    def observe_histogram(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            self._histograms[metric_name][label_tuple].append(value)

    def get_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> int:
        label_tuple = tuple(sorted((labels or {}).items()))
        with self._lock:
            return self._counters.get(metric_name, {}).get(label_tuple, 0)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()

    @staticmethod
    def _format_labels(labels: Dict[str, str]) -> str:
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    def get_prometheus_text(self) -> str:
        lines = []

        with self._lock:
            for metric_name, label_data in sorted(self._counters.items()):
                lines.append(f"# TYPE {metric_name} counter")
                for label_tuple, count in sorted(label_data.items()):
                    if label_tuple:
                        lines.append(f"{metric_name}{{{self._format_labels(dict(label_tuple))}}} {count}")
                    else:
                        lines.append(f"{metric_name} {count}")

            for metric_name, label_data in sorted(self._histograms.items()):
                lines.append(f"# TYPE {metric_name} histogram")
                for label_tuple, observations in sorted(label_data.items()):
                    label_dict = dict(label_tuple)

                    for bucket in self.latency_buckets:
                        count = sum(1 for obs in observations if obs <= bucket)
                        bucket_labels = {**label_dict, "le": str(bucket)}
                        lines.append(f"{metric_name}_bucket{{{self._format_labels(bucket_labels)}}} {count}")

                    inf_labels = {**label_dict, "le": "+Inf"}
                    lines.append(f"{metric_name}_bucket{{{self._format_labels(inf_labels)}}} {len(observations)}")

                    suffix = f"{{{self._format_labels(label_dict)}}}" if label_dict else ""
                    lines.append(f"{metric_name}_count{suffix} {len(observations)}")
                    lines.append(f"{metric_name}_sum{suffix} {sum(observations)}")

        return "\n".join(lines) + "\n"


structured_logger = StructuredLogger()
metrics = MetricsCollector()
