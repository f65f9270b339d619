"""Signal rule types and the built-in rule set."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class Signal(str, Enum):
    """Built-in signals, each bound to one ResponseDelta field."""
    STATUS_CHANGED = "status_changed"
    ERROR_CLASS_CHANGED = "error_class_changed"
    BODY_CONTAINS_TARGET = "body_contains_target"
    TIMING_DELTA = "timing_delta"
    PAYLOAD_REFLECTED = "payload_reflected"
    BODY_LENGTH_DELTA = "body_length_delta"
    NEW_HEADERS_PRESENT = "new_headers_present"

    @classmethod
    def lookup(cls, name: str) -> Optional["Signal"]:
        try:
            return cls(name)
        except ValueError:
            return None


class RuleType(str, Enum):
    BINARY = "binary"
    THRESHOLD = "threshold"


@dataclass(frozen=True)
class SignalRule:
    signal: str
    weight: float
    type: str = RuleType.BINARY.value
    threshold: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SignalRule":
        return cls(
            signal=raw.get("signal", ""),
            weight=raw.get("weight", -1),
            type=raw.get("type", ""),
            threshold=raw.get("threshold"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"signal": self.signal, "weight": self.weight, "type": self.type}
        if self.threshold is not None:
            out["threshold"] = self.threshold
        return out


@dataclass
class RuleValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)


def _is_number(v) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def validate_rule(rule: SignalRule) -> RuleValidation:
    """Collect every problem with *rule* instead of stopping at the first."""
    errors = []
    if not rule.signal or not isinstance(rule.signal, str):
        errors.append("Signal name is required and must be a string")
    if not _is_number(rule.weight) or rule.weight < 0:
        errors.append("Weight must be a non-negative number")
    if rule.type not in (RuleType.BINARY.value, RuleType.THRESHOLD.value):
        errors.append('Type must be either "binary" or "threshold"')
    if rule.type == RuleType.THRESHOLD.value and (
            not _is_number(rule.threshold) or rule.threshold < 0):
        errors.append("Threshold rules must have a non-negative threshold value")
    return RuleValidation(valid=not errors, errors=errors)


@dataclass(frozen=True)
class Thresholds:
    progress: float = 1.5
    exploit_confirm: float = 5.0
    abandon: int = 8


@dataclass(frozen=True)
class ConfidenceDecayConfig:
    window_size: int = 3
    decay_threshold: float = 0.3    # relative drop, first to last in the window


@dataclass(frozen=True)
class CircuitBreakerConfig:
    max_attempts: int = 12
    cooldown_ms: int = 5000


DEFAULT_RULES: Tuple[SignalRule, ...] = (
    SignalRule(Signal.STATUS_CHANGED.value, 2.0, "binary"),
    SignalRule(Signal.ERROR_CLASS_CHANGED.value, 1.5, "binary"),
    SignalRule(Signal.BODY_CONTAINS_TARGET.value, 5.0, "binary"),
    SignalRule(Signal.TIMING_DELTA.value, 0.8, "threshold", 2.5),
    SignalRule(Signal.PAYLOAD_REFLECTED.value, 1.2, "binary"),
    SignalRule(Signal.BODY_LENGTH_DELTA.value, 0.6, "threshold", 0.15),
    SignalRule(Signal.NEW_HEADERS_PRESENT.value, 0.9, "binary"),
)


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of everything the registry serves."""
    rules: Tuple[SignalRule, ...] = DEFAULT_RULES
    thresholds: Thresholds = Thresholds()
    confidence_decay: ConfidenceDecayConfig = ConfidenceDecayConfig()
    circuit_breaker: CircuitBreakerConfig = CircuitBreakerConfig()

    def get(self, signal: str) -> Optional[SignalRule]:
        for rule in self.rules:
            if rule.signal == signal:
                return rule
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rules": [r.to_dict() for r in self.rules],
            "thresholds": {
                "progress": self.thresholds.progress,
                "exploit_confirm": self.thresholds.exploit_confirm,
                "abandon": self.thresholds.abandon,
            },
            "confidence_decay": {
                "window_size": self.confidence_decay.window_size,
                "decay_threshold": self.confidence_decay.decay_threshold,
            },
            "circuit_breaker": {
                "max_attempts": self.circuit_breaker.max_attempts,
                "cooldown_ms": self.circuit_breaker.cooldown_ms,
            },
        }
