"""Delta — pure comparison of a candidate fingerprint against its baseline."""

import re
from typing import Optional, Set, Union

from pivot.core.models import BaselineProfile, ResponseDelta, ResponseFingerprint, TimingStats

# timing floor (ms) so a perfectly stable baseline cannot blow up the ratio
TIMING_EPSILON_MS = 1.0

_TOKEN_SPLIT = re.compile(r"[\s.,;:!?()\[\]{}'\"`<>|\\/]+")


class ResponseDeltaCalculator:
    """Stateless; safe to share between concurrent probes."""

    def compare(
        self,
        candidate: ResponseFingerprint,
        baseline: Union[ResponseFingerprint, BaselineProfile],
        timing: Optional[TimingStats] = None,
        marker: Optional[str] = None,
    ) -> ResponseDelta:
        """
        Diff *candidate* against *baseline*.

        *baseline* may be a single fingerprint or a BaselineProfile; a profile
        brings its own timing stats. *marker* is the injected payload (or a
        derivative) looked for in the candidate's body sample.
        """
        if isinstance(baseline, BaselineProfile):
            timing = timing or baseline.timing
            baseline = baseline.fingerprint
        if timing is None:
            timing = TimingStats.from_fingerprints([baseline])

        added = frozenset(candidate.headers.keys() - baseline.headers.keys())
        removed = frozenset(baseline.headers.keys() - candidate.headers.keys())
        changed = {
            k: (baseline.headers[k], v)
            for k, v in candidate.headers.items()
            if k in baseline.headers and baseline.headers[k] != v
        }

        return ResponseDelta(
            status_changed=candidate.status_code != baseline.status_code,
            error_class_changed=candidate.error_class != baseline.error_class,
            body_contains_target=self.contains_target(
                candidate.raw_body_sample, baseline.raw_body_sample, marker),
            timing_delta_std=self.timing_delta_std(candidate, timing),
            body_length_delta=(abs(candidate.body_length - baseline.body_length)
                               / max(baseline.body_length, 1)),
            headers_added=added,
            headers_removed=removed,
            body_hash_changed=candidate.body_hash != baseline.body_hash,
            headers_changed=changed,
            raw_body_similarity=self.token_similarity(
                baseline.raw_body_sample, candidate.raw_body_sample),
        )

    @staticmethod
    def contains_target(candidate_body: str, baseline_body: str, marker: Optional[str]) -> bool:
        if not marker:
            return False
        m = marker.lower()
        return m in (candidate_body or "").lower() and m not in (baseline_body or "").lower()

    @staticmethod
    def timing_delta_std(candidate: ResponseFingerprint, timing: TimingStats) -> float:
        slower_by = candidate.mean_response_time_ms - timing.mean_response_time_ms
        if slower_by <= 0:
            return 0.0
        return slower_by / max(timing.std_dev_response_time_ms, TIMING_EPSILON_MS)

    @staticmethod
    def token_similarity(a: str, b: str) -> float:
        """Jaccard similarity of lower-cased word tokens (0.0 .. 1.0)."""
        if a == b:
            return 1.0
        if not a or not b:
            return 0.0
        ta, tb = _tokens(a), _tokens(b)
        if not ta and not tb:
            return 1.0
        if not ta or not tb:
            return 0.0
        return len(ta & tb) / len(ta | tb)

    # ── summaries ───────────────────────────────────────────────

    @staticmethod
    def has_any_change(delta: ResponseDelta) -> bool:
        return (
            delta.status_changed
            or delta.error_class_changed
            or delta.body_hash_changed
            or delta.body_length_delta > 0.01
            or delta.timing_delta_std > 0.5
            or bool(delta.headers_added)
            or bool(delta.headers_removed)
            or bool(delta.headers_changed)
            or delta.body_contains_target
            or delta.raw_body_similarity < 0.95
        )

    @staticmethod
    def change_summary(delta: ResponseDelta) -> str:
        changes = []
        if delta.status_changed:
            changes.append("status")
        if delta.error_class_changed:
            changes.append("error_class")
        if delta.body_hash_changed:
            changes.append("body_hash")
        if delta.body_length_delta > 0.01:
            changes.append(f"body_length({delta.body_length_delta:.2f})")
        if delta.timing_delta_std > 0.5:
            changes.append(f"timing({delta.timing_delta_std:.2f}σ)")
        if delta.headers_added:
            changes.append(f"headers_added({len(delta.headers_added)})")
        if delta.headers_removed:
            changes.append(f"headers_removed({len(delta.headers_removed)})")
        if delta.headers_changed:
            changes.append(f"headers_changed({len(delta.headers_changed)})")
        if delta.body_contains_target:
            changes.append("payload_reflected")
        if delta.raw_body_similarity < 0.95:
            changes.append(f"similarity({delta.raw_body_similarity:.2f})")
        return ", ".join(changes) if changes else "no_change"

    @staticmethod
    def confidence_score(delta: ResponseDelta) -> float:
        """How interesting a delta looks, 0.0 .. 1.0. Independent of the rule set."""
        score = 0.0
        if delta.status_changed:
            score += 0.3
        if delta.error_class_changed:
            score += 0.2
        if delta.body_hash_changed:
            score += 0.15
        if delta.body_contains_target:
            score += 0.5

        if delta.body_length_delta > 0.1:
            score += 0.1
        if delta.body_length_delta > 0.3:
            score += 0.2
        if delta.timing_delta_std > 1.0:
            score += 0.1
        if delta.timing_delta_std > 2.0:
            score += 0.2

        score += 0.05 * len(delta.headers_added)
        score += 0.03 * len(delta.headers_removed)
        score += 0.02 * len(delta.headers_changed)

        if delta.raw_body_similarity < 0.8:
            score += 0.1
        if delta.raw_body_similarity < 0.5:
            score += 0.2
        return min(score, 1.0)


def _tokens(text: str) -> Set[str]:
    return {t for t in _TOKEN_SPLIT.split(text.lower()) if t}

