"""
Record model for the round-robin store.

A record is a (timestamp, metric_value) pair. The timestamp is a microsecond
epoch and the only key; the value is an int or a float and is carried through
the store verbatim.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Union

MetricValue = Union[int, float]

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


def is_timestamp(value: Any) -> bool:
    """True for an int64 that is not a bool."""
    return isinstance(value, int) and not isinstance(value, bool) and INT64_MIN <= value <= INT64_MAX


def is_metric_value(value: Any) -> bool:
    """True for a finite int or float that is not a bool."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


@dataclass(frozen=True)
class Record:
    """A single metric sample."""
    timestamp: int
    metric_value: MetricValue

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "metric_value": self.metric_value}

    @classmethod
    def from_dict(cls, data: Any) -> "Record":
        """
        Build a record from a decoded JSON object.

        Raises:
            ValueError: if a field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError("record must be a JSON object")
        if "timestamp" not in data:
            raise ValueError("missing field 'timestamp'")
        if "metric_value" not in data:
            raise ValueError("missing field 'metric_value'")

        timestamp = data["timestamp"]
        metric_value = data["metric_value"]
        if not is_timestamp(timestamp):
            raise ValueError(f"timestamp must be an int64, got {timestamp!r}")
        if not is_metric_value(metric_value):
            raise ValueError(f"metric_value must be a finite number, got {metric_value!r}")

        return cls(timestamp=timestamp, metric_value=metric_value)
