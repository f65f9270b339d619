"""Shared data models for the probing engine."""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple


class InjectionPoint(str, Enum):
    QUERY = "query"
    BODY = "body"
    HEADER = "header"
    PATH = "path"


@dataclass
class RequestOptions:
    """How a single probe is sent."""
    method: Optional[str] = None   # None -> GET (POST for body injection)
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    timeout: Optional[float] = None    # seconds; None -> capturer default
    follow_redirects: bool = True


@dataclass
class ResponseFingerprint:
    """Compact, comparable snapshot of one HTTP response."""
    status_code: int = 0           # 0 = connection failure
    body_hash: str = ""
    body_length: int = 0           # true length, even when the sample is cut
    response_times_ms: List[float] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)   # lower-cased names
    error_class: Optional[str] = None
    raw_body_sample: str = ""

    @property
    def mean_response_time_ms(self) -> float:
        if not self.response_times_ms:
            return 0.0
        return sum(self.response_times_ms) / len(self.response_times_ms)


@dataclass(frozen=True)
class TimingStats:
    mean_response_time_ms: float = 0.0
    std_dev_response_time_ms: float = 0.0

    @classmethod
    def from_fingerprints(cls, fingerprints) -> "TimingStats":
        """Mean and population stddev over every sample of every fingerprint."""
        times = [t for fp in fingerprints for t in fp.response_times_ms]
        if not times:
            return cls(0.0, 0.0)
        return cls(*mean_std(times))


@dataclass
class BaselineProfile:
    """Aggregate of N clean samples of the same request."""
    fingerprint: ResponseFingerprint   # consensus view used for comparisons
    timing: TimingStats
    mean_body_length: float = 0.0
    std_dev_body_length: float = 0.0
    sample_count: int = 0


@dataclass
class ExecutionResult:
    fingerprint: ResponseFingerprint
    raw_body: str = ""
    redirect_chain: List[str] = field(default_factory=list)
    error: Optional[str] = None
    payload: Optional[str] = None      # mutation marker the probe carried

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class BaselineCapture:
    fingerprints: List[ResponseFingerprint]
    stats: TimingStats
    profile: BaselineProfile


@dataclass(frozen=True)
class ResponseDelta:
    """Structured difference between a candidate and its baseline."""
    status_changed: bool = False
    error_class_changed: bool = False
    body_contains_target: bool = False
    timing_delta_std: float = 0.0
    body_length_delta: float = 0.0
    headers_added: frozenset = frozenset()
    headers_removed: frozenset = frozenset()
    body_hash_changed: bool = False
    headers_changed: Dict[str, Tuple[str, str]] = field(default_factory=dict)
    raw_body_similarity: float = 1.0


def mean_std(values: Sequence[float]) -> Tuple[float, float]:
    """Mean and population standard deviation; (0, 0) for no values."""
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    var = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(var)
