from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml

from pivot.scoring.registry import SignalRuleRegistry
from pivot.scoring.rules import DEFAULT_RULES, SignalRule

SHIPPED_RULES = Path(__file__).resolve().parent.parent / "configs" / "signal-rules.yaml"


def write(tmp_path, text, name="rules.yaml"):
    p = tmp_path / name
    p.write_text(text)
    return p


def test_missing_file_falls_back_to_exact_defaults(tmp_path):
    log = MagicMock()
    reg = SignalRuleRegistry(tmp_path / "nope.yaml", logger=log)

    rules = reg.get_rules()
    assert len(rules) == 7
    assert {r.signal: (r.weight, r.type, r.threshold) for r in rules} == {
        "status_changed": (2.0, "binary", None),
        "error_class_changed": (1.5, "binary", None),
        "body_contains_target": (5.0, "binary", None),
        "timing_delta": (0.8, "threshold", 2.5),
        "payload_reflected": (1.2, "binary", None),
        "body_length_delta": (0.6, "threshold", 0.15),
        "new_headers_present": (0.9, "binary", None),
    }
    assert reg.get_progress_threshold() == 1.5
    assert reg.get_exploit_confirm_threshold() == 5.0
    assert reg.get_abandon_threshold() == 8
    assert reg.get_confidence_decay_config().window_size == 3
    assert reg.get_confidence_decay_config().decay_threshold == 0.3
    assert reg.get_circuit_breaker_config().max_attempts == 12
    assert reg.get_circuit_breaker_config().cooldown_ms == 5000
    log.warn.assert_called_once()


@pytest.mark.parametrize("text", [
    "rules: [unclosed",
    "just a string",
    "rules: 12",
    "thresholds: {progress: fast}",
])
def test_malformed_file_falls_back_to_defaults(tmp_path, text):
    log = MagicMock()
    reg = SignalRuleRegistry(write(tmp_path, text), logger=log)
    assert tuple(reg.get_rules()) == DEFAULT_RULES
    assert reg.get_abandon_threshold() == 8
    log.warn.assert_called_once()


def test_shipped_rule_file_matches_defaults():
    reg = SignalRuleRegistry(SHIPPED_RULES, logger=MagicMock())
    assert tuple(reg.get_rules()) == DEFAULT_RULES
    assert reg.get_progress_threshold() == 1.5


def test_loads_file_and_keeps_section_defaults(tmp_path):
    p = write(tmp_path, """
rules:
  - {signal: status_changed, weight: 3, type: binary}
  - {signal: timing_delta, weight: 1.0, type: threshold, threshold: 3}
thresholds:
  progress: 2.0
  exploit_confirm: 6
  abandon: 3
""")
    reg = SignalRuleRegistry(p, logger=MagicMock())
    assert reg.get_rule_names() == ["status_changed", "timing_delta"]
    assert reg.get_weight("status_changed") == 3
    assert reg.get_weight("body_contains_target") == 0
    assert reg.get_abandon_threshold() == 3
    assert reg.get_confidence_decay_config().window_size == 3
    assert reg.get_circuit_breaker_config().cooldown_ms == 5000


def test_invalid_rules_in_file_are_skipped(tmp_path):
    log = MagicMock()
    p = write(tmp_path, """
rules:
  - {signal: status_changed, weight: 2.0, type: binary}
  - {signal: timing_delta, weight: 1.0, type: threshold}
  - {signal: '', weight: -1, type: fuzzy}
  - not-a-rule
""")
    reg = SignalRuleRegistry(p, logger=log)
    assert reg.get_rule_names() == ["status_changed"]
    assert log.warn.call_count == 3


def test_validate_rule_reports_every_error():
    check = SignalRuleRegistry.validate_rule(SignalRule(signal="", weight=-1, type="fuzzy"))
    assert not check.valid
    assert len(check.errors) == 3

    check = SignalRuleRegistry.validate_rule(SignalRule("timing_delta", 1.0, "threshold", -0.5))
    assert check.errors == ["Threshold rules must have a non-negative threshold value"]

    assert SignalRuleRegistry.validate_rule(SignalRule("x", 0, "binary")).valid


def test_add_rule_upserts_by_signal(tmp_path):
    reg = SignalRuleRegistry(tmp_path / "nope.yaml", logger=MagicMock())
    reg.add_rule(SignalRule("status_changed", 9.0, "binary"))
    assert reg.get_weight("status_changed") == 9.0
    assert len(reg.get_rules()) == 7

    reg.add_rule(SignalRule("sql_banner", 1.0, "binary"))
    assert reg.has_rule("sql_banner")
    assert len(reg.get_rules()) == 8


def test_add_invalid_rule_is_rejected(tmp_path):
    reg = SignalRuleRegistry(tmp_path / "nope.yaml", logger=MagicMock())
    check = reg.add_rule(SignalRule("timing_delta", 1.0, "threshold"))
    assert not check.valid
    assert reg.get_rule("timing_delta").threshold == 2.5


def test_remove_rule(tmp_path):
    reg = SignalRuleRegistry(tmp_path / "nope.yaml", logger=MagicMock())
    assert reg.remove_rule("payload_reflected")
    assert not reg.has_rule("payload_reflected")
    assert not reg.remove_rule("payload_reflected")


def test_partitioned_views(tmp_path):
    reg = SignalRuleRegistry(tmp_path / "nope.yaml", logger=MagicMock())
    assert {r.signal for r in reg.get_threshold_rules()} == {"timing_delta", "body_length_delta"}
    assert len(reg.get_binary_rules()) == 5


def test_export_round_trip(tmp_path):
    reg = SignalRuleRegistry(tmp_path / "nope.yaml", logger=MagicMock())
    reg.add_rule(SignalRule("sql_banner", 0.25, "threshold", 1))
    exported = reg.export_to_yaml()
    data = yaml.safe_load(exported)
    assert set(data) == {"rules", "thresholds", "confidence_decay", "circuit_breaker"}

    again = SignalRuleRegistry(write(tmp_path, exported), logger=MagicMock())
    assert again.get_rules() == reg.get_rules()
    assert again.snapshot() == reg.snapshot()


def test_save_to_file_then_load(tmp_path):
    reg = SignalRuleRegistry(tmp_path / "nope.yaml", logger=MagicMock())
    reg.remove_rule("new_headers_present")
    target = tmp_path / "out" / "rules.yaml"
    assert reg.save_to_file(target)
    assert SignalRuleRegistry(target, logger=MagicMock()).get_rules() == reg.get_rules()


def test_reload_picks_up_changes(tmp_path):
    p = write(tmp_path, "rules:\n  - {signal: status_changed, weight: 1.0, type: binary}\n")
    reg = SignalRuleRegistry(p, logger=MagicMock())
    p.write_text("rules:\n  - {signal: status_changed, weight: 4.0, type: binary}\n")
    assert reg.reload()
    assert reg.get_weight("status_changed") == 4.0


def test_failed_reload_keeps_previous_rules(tmp_path):
    p = write(tmp_path, "rules:\n  - {signal: status_changed, weight: 1.0, type: binary}\n"
                        "thresholds: {progress: 1, exploit_confirm: 2, abandon: 3}\n")
    reg = SignalRuleRegistry(p, logger=MagicMock())
    before = reg.snapshot()

    p.write_text("rules: [broken")
    assert not reg.reload()
    assert reg.snapshot() is before

    p.unlink()
    assert not reg.reload()
    assert reg.get_abandon_threshold() == 3
