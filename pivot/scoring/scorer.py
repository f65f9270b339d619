"""DeterministicScorer — turns deltas into scores and progress/confirm/abandon calls."""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Generic, List, Optional, TypeVar, Union

from pivot.core.models import ResponseDelta
from pivot.reporters.console import Log
from pivot.scoring.registry import SignalRuleRegistry
from pivot.scoring.rules import ConfidenceDecayConfig, RuleType, Signal, SignalRule

# share of strictly decreasing consecutive pairs needed to call a trend
DECREASING_RATIO = 0.7

CustomEvaluator = Callable[[ResponseDelta], float]

_READERS: Dict[Signal, Callable[[ResponseDelta], float]] = {
    Signal.STATUS_CHANGED: lambda d: float(d.status_changed),
    Signal.ERROR_CLASS_CHANGED: lambda d: float(d.error_class_changed),
    Signal.BODY_CONTAINS_TARGET: lambda d: float(d.body_contains_target),
    Signal.TIMING_DELTA: lambda d: d.timing_delta_std,
    # scored like body_contains_target until reflection gets its own detector
    Signal.PAYLOAD_REFLECTED: lambda d: float(d.body_contains_target),
    Signal.BODY_LENGTH_DELTA: lambda d: d.body_length_delta,
    Signal.NEW_HEADERS_PRESENT: lambda d: float(bool(d.headers_added)),
}

_FIELDS: Dict[Signal, str] = {
    Signal.STATUS_CHANGED: "status_changed",
    Signal.ERROR_CLASS_CHANGED: "error_class_changed",
    Signal.BODY_CONTAINS_TARGET: "body_contains_target",
    Signal.TIMING_DELTA: "timing_delta",
    Signal.PAYLOAD_REFLECTED: "payload_reflected",
    Signal.BODY_LENGTH_DELTA: "body_length_delta",
    Signal.NEW_HEADERS_PRESENT: "new_headers",
}


@dataclass(frozen=True)
class ScoreVector:
    status_changed: float = 0.0
    error_class_changed: float = 0.0
    body_contains_target: float = 0.0
    timing_delta: float = 0.0
    payload_reflected: float = 0.0
    body_length_delta: float = 0.0
    new_headers: float = 0.0
    weighted_total: float = 0.0
    custom: Dict[str, float] = field(default_factory=dict)
    confidence_decay: bool = False


class ObstacleState(str, Enum):
    PROBING = "PROBING"
    PROGRESSING = "PROGRESSING"
    STAGNANT = "STAGNANT"
    CONFIRMED = "CONFIRMED"
    ABANDONED = "ABANDONED"


@dataclass
class DecayStatus:
    decay_detected: bool
    recent_scores: List[float]


@dataclass
class FamilyStatus:
    family: str
    decay_detected: bool
    recent_score_count: int
    last_score: float


# ── per-key state ──────────────────────────────────────────────

class _DecayTracker:
    def __init__(self, family: str):
        self.family = family
        self.scores: List[float] = []
        self.last_score = 0.0
        self.decay_detected = False
        self.lock = threading.Lock()


class _AttemptCounter:
    def __init__(self):
        self.count = 0
        self.lock = threading.Lock()


T = TypeVar("T")


class _KeyedStore(Generic[T]):
    """Map of independently lockable entries; the store lock only guards the map."""

    def __init__(self, factory: Callable[[str], T]):
        self._factory = factory
        self._entries: Dict[str, T] = {}
        self._lock = threading.Lock()

    def get_or_create(self, key: str) -> T:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = self._factory(key)
            return entry

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            return self._entries.get(key)

    def pop(self, key: str) -> Optional[T]:
        with self._lock:
            return self._entries.pop(key, None)

    def items(self):
        with self._lock:
            return list(self._entries.items())


# ── scorer ─────────────────────────────────────────────────────

class DeterministicScorer:
    """
    Scores ResponseDeltas against the registry's rules.

    Cross-call state: one decay tracker per mutation family and one attempt
    counter per obstacle. Evaluations for the same obstacle are serialized
    on that obstacle's lock; different obstacles never wait on each other.
    """

    def __init__(self, registry: SignalRuleRegistry, logger=None):
        self.registry = registry
        self.logger = logger or Log(verbose=0)
        self._trackers: _KeyedStore[_DecayTracker] = _KeyedStore(_DecayTracker)
        self._attempts: _KeyedStore[_AttemptCounter] = _KeyedStore(lambda _k: _AttemptCounter())
        self._custom: Dict[str, CustomEvaluator] = {}
        self._warned: set = set()
        self._meta_lock = threading.Lock()

    def register_signal(self, name: str, evaluator: CustomEvaluator):
        """Attach an evaluator for a signal the built-in set does not know."""
        if Signal.lookup(name) is not None:
            raise ValueError(f"{name!r} is a built-in signal")
        with self._meta_lock:
            self._custom = {**self._custom, name: evaluator}

    # ── evaluation ──────────────────────────────────────────────

    def evaluate_delta(self, delta: ResponseDelta, obstacle_id: str,
                       mutation_family: Optional[str] = None) -> ScoreVector:
        ruleset = self.registry.snapshot()
        custom_evaluators = self._custom
        counter = self._attempts.get_or_create(obstacle_id)

        with counter.lock:
            fields: Dict[str, float] = {}
            custom: Dict[str, float] = {}
            for rule in ruleset.rules:
                signal = Signal.lookup(rule.signal)
                if signal is not None:
                    raw = self._evaluate_rule(rule, _READERS[signal](delta))
                    fields[_FIELDS[signal]] = raw * rule.weight
                elif rule.signal in custom_evaluators:
                    try:
                        value = custom_evaluators[rule.signal](delta)
                    except Exception as e:
                        self.logger.warn(f"Custom signal {rule.signal} failed: {e} (scored as 0)")
                        value = 0.0
                    custom[rule.signal] = self._evaluate_rule(rule, value) * rule.weight
                else:
                    self._warn_unknown(rule.signal)

            total = sum(fields.values()) + sum(custom.values())

            decaying = False
            if mutation_family:
                decaying = self._track_decay(
                    mutation_family, total, ruleset.confidence_decay)

            counter.count += 1

        vector = ScoreVector(**fields, weighted_total=total, custom=custom,
                             confidence_decay=decaying)
        self.logger.debug(f"{obstacle_id}: {self.get_score_summary(vector)}")
        return vector

    @staticmethod
    def _evaluate_rule(rule: SignalRule, value: float) -> float:
        if rule.type == RuleType.THRESHOLD.value:
            return 1.0 if value >= (rule.threshold or 0) else 0.0
        return 1.0 if value else 0.0

    def _warn_unknown(self, signal: str):
        with self._meta_lock:
            if signal in self._warned:
                return
            self._warned.add(signal)
        self.logger.warn(f"Unknown signal: {signal} (scored as 0)")

    # ── confidence decay ────────────────────────────────────────

    def _track_decay(self, family: str, score: float, cfg: ConfidenceDecayConfig) -> bool:
        tracker = self._trackers.get_or_create(family)
        window = max(cfg.window_size, 1)
        with tracker.lock:
            tracker.scores.append(score)
            tracker.last_score = score

            if len(tracker.scores) >= window:
                recent = tracker.scores[-window:]
                decaying = self._is_decaying(recent, cfg.decay_threshold)
                if decaying and not tracker.decay_detected:
                    self.logger.decay(family, recent)
                tracker.decay_detected = decaying

                if len(tracker.scores) > window * 2:
                    tracker.scores = tracker.scores[-window:]
            return tracker.decay_detected

    @staticmethod
    def _is_decaying(scores: List[float], threshold: float) -> bool:
        pairs = len(scores) - 1
        if pairs < 1:
            return False
        decreasing = sum(1 for a, b in zip(scores, scores[1:]) if b < a)
        first, last = scores[0], scores[-1]
        drop = (first - last) / first if first > 0 else 0.0
        return decreasing / pairs >= DECREASING_RATIO and drop >= threshold

    def get_confidence_decay_status(self, mutation_family: str) -> DecayStatus:
        tracker = self._trackers.get(mutation_family)
        if tracker is None:
            return DecayStatus(decay_detected=False, recent_scores=[])
        with tracker.lock:
            return DecayStatus(tracker.decay_detected, list(tracker.scores))

    def reset_confidence_decay_tracking(self, mutation_family: str):
        self._trackers.pop(mutation_family)

    def get_all_mutation_family_status(self) -> List[FamilyStatus]:
        out = []
        for family, tracker in self._trackers.items():
            with tracker.lock:
                out.append(FamilyStatus(family, tracker.decay_detected,
                                        len(tracker.scores), tracker.last_score))
        return out

    # ── attempts & decisions ────────────────────────────────────

    def get_attempt_count(self, obstacle_id: str) -> int:
        counter = self._attempts.get(obstacle_id)
        return counter.count if counter else 0

    def reset_attempt_count(self, obstacle_id: str):
        self._attempts.pop(obstacle_id)

    def should_abandon(self, obstacle_id: str) -> bool:
        return self.get_attempt_count(obstacle_id) >= self.registry.get_abandon_threshold()

    def is_making_progress(self, score: float) -> bool:
        return score >= self.registry.get_progress_threshold()

    def is_exploit_confirmed(self, score: float) -> bool:
        return score >= self.registry.get_exploit_confirm_threshold()

    def obstacle_state(self, obstacle_id: str,
                       score: Union[ScoreVector, float, None] = None) -> ObstacleState:
        """Where *obstacle_id* stands given its attempts and latest score."""
        if self.should_abandon(obstacle_id):
            return ObstacleState.ABANDONED
        if score is None or self.get_attempt_count(obstacle_id) == 0:
            return ObstacleState.PROBING
        total = score.weighted_total if isinstance(score, ScoreVector) else score
        if self.is_exploit_confirmed(total):
            return ObstacleState.CONFIRMED
        if self.is_making_progress(total):
            return ObstacleState.PROGRESSING
        return ObstacleState.STAGNANT

    # ── reporting ───────────────────────────────────────────────

    @staticmethod
    def get_score_summary(vector: ScoreVector) -> str:
        labels = [
            ("status", vector.status_changed),
            ("error", vector.error_class_changed),
            ("target", vector.body_contains_target),
            ("timing", vector.timing_delta),
            ("payload", vector.payload_reflected),
            ("length", vector.body_length_delta),
            ("headers", vector.new_headers),
        ] + sorted(vector.custom.items())
        parts = [f"{name}({value:.2f})" for name, value in labels if value > 0]
        head = ", ".join(parts) if parts else "no_signals"
        return f"{head} [total: {vector.weighted_total:.2f}]"
