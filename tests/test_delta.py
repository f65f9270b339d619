import pytest

from pivot.core.capturer import Capturer
from pivot.core.delta import ResponseDeltaCalculator
from pivot.core.models import ResponseFingerprint, TimingStats


def fp(**kw):
    kw.setdefault("status_code", 200)
    kw.setdefault("body_length", 500)
    kw.setdefault("response_times_ms", [100.0])
    return ResponseFingerprint(**kw)


@pytest.fixture
def calc():
    return ResponseDeltaCalculator()


def test_sql_error_scenario(calc):
    baseline = fp(status_code=200, body_length=500, error_class=None)
    candidate = fp(status_code=500, body_length=520, error_class="SQL_ERROR")
    d = calc.compare(candidate, baseline)
    assert d.status_changed
    assert d.error_class_changed
    assert d.body_length_delta == pytest.approx(0.04)
    assert not d.body_contains_target


def test_identical_fingerprints_have_no_change(calc):
    a = fp(body_hash="abc", headers={"server": "nginx"}, raw_body_sample="same page")
    d = calc.compare(fp(body_hash="abc", headers={"server": "nginx"}, raw_body_sample="same page"), a)
    assert not calc.has_any_change(d)
    assert calc.change_summary(d) == "no_change"
    assert calc.confidence_score(d) == 0.0


def test_null_to_value_error_class_counts_as_change(calc):
    d = calc.compare(fp(error_class="WAF_BLOCK"), fp(error_class=None))
    assert d.error_class_changed


def test_marker_must_be_new_in_candidate(calc):
    baseline = fp(raw_body_sample="search results for: ")
    candidate = fp(raw_body_sample="search results for: <SCRIPT>alert(1)</SCRIPT>")
    assert calc.compare(candidate, baseline, marker="<script>alert(1)</script>").body_contains_target

    already_there = fp(raw_body_sample="docs mention <script>alert(1)</script> as an example")
    assert not calc.compare(candidate, already_there, marker="<script>alert(1)</script>").body_contains_target
    assert not calc.compare(candidate, baseline, marker=None).body_contains_target


def test_timing_delta_uses_baseline_stats(calc):
    stats = TimingStats(mean_response_time_ms=100.0, std_dev_response_time_ms=20.0)
    slow = fp(response_times_ms=[3100.0])
    assert calc.compare(slow, fp(), timing=stats).timing_delta_std == pytest.approx(150.0)

    fast = fp(response_times_ms=[50.0])
    assert calc.compare(fast, fp(), timing=stats).timing_delta_std == 0.0


def test_timing_delta_with_perfectly_stable_baseline(calc):
    stats = TimingStats(mean_response_time_ms=100.0, std_dev_response_time_ms=0.0)
    d = calc.compare(fp(response_times_ms=[105.0]), fp(), timing=stats)
    assert d.timing_delta_std == pytest.approx(5.0)


def test_body_length_delta_on_empty_baseline(calc):
    d = calc.compare(fp(body_length=40), fp(body_length=0))
    assert d.body_length_delta == 40.0


def test_header_set_differences(calc):
    baseline = fp(headers={"server": "nginx", "x-cache": "HIT", "etag": "1"})
    candidate = fp(headers={"server": "nginx", "etag": "2", "x-debug": "on", "set-cookie": "a=b"})
    d = calc.compare(candidate, baseline)
    assert d.headers_added == {"x-debug", "set-cookie"}
    assert d.headers_removed == {"x-cache"}
    assert d.headers_changed == {"etag": ("1", "2")}


def test_profile_baseline_brings_its_own_timing(calc):
    samples = [fp(response_times_ms=[t], headers={"server": "nginx"}) for t in (90.0, 100.0, 110.0)]
    profile = Capturer.build_profile(samples)
    d = calc.compare(fp(response_times_ms=[200.0], headers={"server": "nginx"}), profile)
    assert d.timing_delta_std == pytest.approx(100.0 / profile.timing.std_dev_response_time_ms)
    assert not d.status_changed


def test_token_similarity(calc):
    assert calc.token_similarity("a b c", "a b c") == 1.0
    assert calc.token_similarity("", "x") == 0.0
    assert calc.token_similarity("Hello, world", "hello world again") == pytest.approx(2 / 3)


def test_summary_and_confidence(calc):
    d = calc.compare(fp(status_code=500, body_hash="b", raw_body_sample="boom <x>", headers={"x-err": "1"}),
                     fp(body_hash="a", raw_body_sample="welcome"), marker="<x>")
    summary = calc.change_summary(d)
    assert "status" in summary
    assert "payload_reflected" in summary
    assert "headers_added(1)" in summary
    assert calc.confidence_score(d) == 1.0
