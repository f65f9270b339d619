"""SignalRuleRegistry — configurable signal weights and global thresholds."""

import threading
from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml

from pivot.reporters.console import Log
from pivot.scoring.rules import (
    CircuitBreakerConfig, ConfidenceDecayConfig, RuleSet, RuleType, RuleValidation,
    SignalRule, Thresholds, validate_rule,
)

DEFAULT_RULES_PATH = "configs/signal-rules.yaml"


class RuleFileError(ValueError):
    """The rule file exists but cannot be turned into a RuleSet."""


class SignalRuleRegistry:
    """
    Serves signal rules and thresholds loaded from a YAML rule file.

    Readers always see one complete RuleSet: every write builds a new
    immutable snapshot and swaps the reference under a lock.
    """

    def __init__(self, config_path: str | Path = DEFAULT_RULES_PATH, logger=None):
        self.config_path = Path(config_path)
        self.logger = logger or Log(verbose=0)
        self._lock = threading.Lock()
        self._ruleset = RuleSet()

        try:
            self._ruleset = self._read(self.config_path)
        except FileNotFoundError:
            self.logger.warn(
                f"Signal rules config not found at {self.config_path}, using defaults")
        except (RuleFileError, OSError) as e:
            self.logger.warn(
                f"Error loading signal rules from {self.config_path}: {e}; using defaults")
        else:
            self.logger.info(
                f"Loaded {len(self._ruleset.rules)} signal rules from {self.config_path}")

    # ── loading ─────────────────────────────────────────────────

    def _read(self, path: Path) -> RuleSet:
        text = path.read_text(encoding="utf-8")
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise RuleFileError(f"invalid YAML: {e}") from e
        return self._parse(data)

    def _parse(self, data: Any) -> RuleSet:
        if not isinstance(data, Mapping):
            raise RuleFileError("top level must be a mapping")
        defaults = RuleSet()

        rules = defaults.rules
        if data.get("rules") is not None:
            raw_rules = data["rules"]
            if not isinstance(raw_rules, list):
                raise RuleFileError("'rules' must be a list")
            rules = tuple(self._parse_rules(raw_rules))

        thresholds = _section(data, "thresholds", Thresholds, {
            "progress": float, "exploit_confirm": float, "abandon": int})
        decay = _section(data, "confidence_decay", ConfidenceDecayConfig, {
            "window_size": int, "decay_threshold": float})
        breaker = _section(data, "circuit_breaker", CircuitBreakerConfig, {
            "max_attempts": int, "cooldown_ms": int})
        return RuleSet(rules, thresholds, decay, breaker)

    def _parse_rules(self, raw_rules: List[Any]) -> List[SignalRule]:
        out: dict = {}
        for i, raw in enumerate(raw_rules):
            if not isinstance(raw, Mapping):
                self.logger.warn(f"Skipping rule #{i}: not a mapping")
                continue
            rule = SignalRule.from_dict(raw)
            check = validate_rule(rule)
            if not check.valid:
                self.logger.warn(
                    f"Skipping rule #{i} ({rule.signal or '?'}): {'; '.join(check.errors)}")
                continue
            out[rule.signal] = rule    # last write wins
        return list(out.values())

    def reload(self) -> bool:
        """Re-read the rule file; on any failure keep the current rules."""
        try:
            ruleset = self._read(self.config_path)
        except FileNotFoundError:
            self.logger.warn(f"Reload failed: {self.config_path} not found; keeping current rules")
            return False
        except (RuleFileError, OSError) as e:
            self.logger.warn(f"Reload failed: {e}; keeping current rules")
            return False
        with self._lock:
            self._ruleset = ruleset
        self.logger.info(f"Reloaded {len(ruleset.rules)} signal rules from {self.config_path}")
        return True

    # ── rules ───────────────────────────────────────────────────

    def snapshot(self) -> RuleSet:
        return self._ruleset

    def get_rules(self) -> List[SignalRule]:
        return list(self._ruleset.rules)

    def get_rule(self, signal: str) -> Optional[SignalRule]:
        return self._ruleset.get(signal)

    def get_rule_names(self) -> List[str]:
        return [r.signal for r in self._ruleset.rules]

    def has_rule(self, signal: str) -> bool:
        return self._ruleset.get(signal) is not None

    def get_weight(self, signal: str) -> float:
        rule = self._ruleset.get(signal)
        return rule.weight if rule else 0

    def get_binary_rules(self) -> List[SignalRule]:
        return [r for r in self._ruleset.rules if r.type == RuleType.BINARY.value]

    def get_threshold_rules(self) -> List[SignalRule]:
        return [r for r in self._ruleset.rules if r.type == RuleType.THRESHOLD.value]

    @staticmethod
    def validate_rule(rule: SignalRule) -> RuleValidation:
        return validate_rule(rule)

    def add_rule(self, rule: SignalRule) -> RuleValidation:
        """Insert or replace the rule for ``rule.signal``. Invalid rules are not stored."""
        check = validate_rule(rule)
        if not check.valid:
            self.logger.warn(f"Rejected rule {rule.signal!r}: {'; '.join(check.errors)}")
            return check

        with self._lock:
            current = self._ruleset
            rules = list(current.rules)
            for i, r in enumerate(rules):
                if r.signal == rule.signal:
                    rules[i] = rule
                    verb = "Updated"
                    break
            else:
                rules.append(rule)
                verb = "Added"
            self._ruleset = RuleSet(tuple(rules), current.thresholds,
                                    current.confidence_decay, current.circuit_breaker)
        self.logger.info(f"{verb} rule for signal: {rule.signal}")
        return check

    def remove_rule(self, signal: str) -> bool:
        with self._lock:
            current = self._ruleset
            rules = tuple(r for r in current.rules if r.signal != signal)
            if len(rules) == len(current.rules):
                return False
            self._ruleset = RuleSet(rules, current.thresholds,
                                    current.confidence_decay, current.circuit_breaker)
        self.logger.info(f"Removed rule for signal: {signal}")
        return True

    # ── thresholds ──────────────────────────────────────────────

    def get_progress_threshold(self) -> float:
        return self._ruleset.thresholds.progress

    def get_exploit_confirm_threshold(self) -> float:
        return self._ruleset.thresholds.exploit_confirm

    def get_abandon_threshold(self) -> int:
        return self._ruleset.thresholds.abandon

    def get_confidence_decay_config(self) -> ConfidenceDecayConfig:
        return self._ruleset.confidence_decay

    def get_circuit_breaker_config(self) -> CircuitBreakerConfig:
        return self._ruleset.circuit_breaker

    # ── export ──────────────────────────────────────────────────

    def export_to_yaml(self) -> str:
        return yaml.safe_dump(self._ruleset.to_dict(), sort_keys=False,
                              default_flow_style=False, width=float("inf"))

    def save_to_file(self, path: str | Path | None = None) -> bool:
        target = Path(path) if path else self.config_path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(self.export_to_yaml(), encoding="utf-8")
        except OSError as e:
            self.logger.warn(f"Error saving signal rules to {target}: {e}")
            return False
        self.logger.info(f"Saved {len(self._ruleset.rules)} rules to {target}")
        return True


def _section(data: Mapping, key: str, cls, fields: Mapping[str, type]):
    raw = data.get(key)
    if raw is None:
        return cls()
    if not isinstance(raw, Mapping):
        raise RuleFileError(f"'{key}' must be a mapping")
    values = {}
    for name, kind in fields.items():
        if name not in raw:
            continue
        v = raw[name]
        if isinstance(v, bool) or not isinstance(v, (int, float)) or v < 0:
            raise RuleFileError(f"'{key}.{name}' must be a non-negative number")
        values[name] = kind(v)
    return cls(**values)
