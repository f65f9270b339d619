"""Capturer — fires real probes and reduces responses to fingerprints."""

import hashlib
import json
import random
import threading
import time
from collections import Counter
from copy import deepcopy
from typing import Dict, List, Sequence, Tuple
from urllib.parse import parse_qsl, quote, urlencode

import httpx

from pivot.checkers.error_class import ErrorClassifier, TIMEOUT, CONNECTION_ERROR
from pivot.core.models import (
    BaselineCapture, BaselineProfile, ExecutionResult, InjectionPoint, RequestOptions,
    ResponseFingerprint, TimingStats, mean_std,
)
from pivot.reporters.console import Log

TIMEOUT_STATUS = 408
_DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; PIVOT-SecurityScanner/1.0)",
    "Accept": "text/html,application/json,*/*",
}


class Capturer:
    def __init__(self, timeout: float = 10, proxy: str | None = None, verify: bool = False,
                 default_headers: Dict[str, str] | None = None, sample_limit: int = 2000,
                 transport: httpx.BaseTransport | None = None, logger=None):
        self.timeout = timeout
        self.sample_limit = sample_limit
        self.logger = logger or Log(verbose=0)
        self.default_headers = {**_DEFAULT_HEADERS, **(default_headers or {})}
        self.classifier = ErrorClassifier()
        self.client = httpx.Client(
            verify=verify, proxy=proxy, follow_redirects=True, timeout=timeout,
            transport=transport)

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ── single probe ────────────────────────────────────────────

    def execute_request(self, url: str, options: RequestOptions | None = None,
                        mutation_payload: str | None = None) -> ExecutionResult:
        """
        Send one request and fingerprint whatever comes back.

        Never raises: timeouts become status 408 / TIMEOUT, every other
        transport failure becomes status 0 / CONNECTION_ERROR.
        """
        options = options or RequestOptions()
        method = (options.method or "GET").upper()
        timeout = options.timeout if options.timeout is not None else self.timeout
        headers = httpx.Headers(self.default_headers)
        headers.update(options.headers)

        self.logger.debug(f"→ {method} {url}")
        if mutation_payload is not None:
            self.logger.debug(
                f"  payload = {self.logger.PAY}{mutation_payload}")

        start = time.perf_counter()
        deadline = start + timeout
        try:
            status, resp_headers, body, history, encoding = self._send_within(
                deadline, method, url, headers, options.body, timeout,
                options.follow_redirects)
        except httpx.TimeoutException as e:
            return self._failure(start, TIMEOUT_STATUS, TIMEOUT, e, mutation_payload)
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError, OSError, ValueError) as e:
            return self._failure(start, 0, CONNECTION_ERROR, e, mutation_payload)
        elapsed_ms = (time.perf_counter() - start) * 1000

        text = self._decode(body, encoding)
        fp = ResponseFingerprint(
            status_code=status,
            body_hash=hashlib.sha256(body).hexdigest(),
            body_length=len(body),
            response_times_ms=[elapsed_ms],
            headers=resp_headers,
            error_class=self.classifier.classify(status, text, resp_headers),
            raw_body_sample=text[:self.sample_limit],
        )
        self.logger.debug(
            f"← HTTP {status} {len(body)}B {elapsed_ms:.0f}ms"
            + (f" [{fp.error_class}]" if fp.error_class else ""))
        return ExecutionResult(fingerprint=fp, raw_body=text, redirect_chain=history,
                               payload=mutation_payload)

    def _send_within(self, deadline: float, *args):
        """
        Run _send on a worker thread and stop waiting at the deadline.

        httpx applies its timeout to connect, write and read separately, so a
        target that stalls just under the limit in each phase would hold the
        caller for several timeouts. The worker keeps the per-phase limits and
        bails out at its next chunk once the deadline has passed.
        """
        outcome = {}

        def run():
            try:
                outcome["value"] = self._send(deadline, *args)
            except Exception as e:  # re-raised on the caller's thread
                outcome["error"] = e

        worker = threading.Thread(target=run, name="pivot-probe", daemon=True)
        worker.start()
        worker.join(max(deadline - time.perf_counter(), 0))
        if worker.is_alive():
            raise httpx.TimeoutException("overall request deadline exceeded")
        if "error" in outcome:
            raise outcome["error"]
        return outcome["value"]

    def _send(self, deadline: float, method: str, url: str, headers: httpx.Headers, body,
              timeout: float, follow_redirects: bool) -> Tuple[int, dict, bytes, List[str], str | None]:
        with self.client.stream(method, url, headers=headers, content=body,
                                timeout=timeout, follow_redirects=follow_redirects) as resp:
            chunks = []
            self._check_deadline(deadline)
            for chunk in resp.iter_bytes():
                chunks.append(chunk)
                self._check_deadline(deadline)
            history = [str(r.url) for r in resp.history]
            if history:
                history.append(str(resp.url))
            resp_headers = {k.lower(): v for k, v in resp.headers.items()}
            return resp.status_code, resp_headers, b"".join(chunks), history, resp.charset_encoding

    @staticmethod
    def _check_deadline(deadline: float):
        if time.perf_counter() > deadline:
            raise httpx.ReadTimeout("overall request deadline exceeded")

    @staticmethod
    def _decode(body: bytes, encoding: str | None) -> str:
        try:
            return body.decode(encoding or "utf-8", errors="replace")
        except LookupError:
            # unknown charset label in Content-Type
            return body.decode("utf-8", errors="replace")

    def _failure(self, start: float, status: int, error_class: str, exc: Exception,
                 payload: str | None) -> ExecutionResult:
        elapsed_ms = (time.perf_counter() - start) * 1000
        msg = str(exc) or exc.__class__.__name__
        self.logger.debug(f"← {error_class}: {msg}")
        fp = ResponseFingerprint(
            status_code=status,
            response_times_ms=[elapsed_ms],
            error_class=error_class,
        )
        return ExecutionResult(fingerprint=fp, error=msg, payload=payload)

    # ── baseline ────────────────────────────────────────────────

    def capture_baseline(self, url: str, options: RequestOptions | None = None,
                         sample_count: int = 5) -> BaselineCapture:
        """Sequential clean samples with 100-200ms jitter between them."""
        self.logger.info(f"Baseline {url} ({sample_count} samples)")
        fingerprints: List[ResponseFingerprint] = []
        for i in range(sample_count):
            if i > 0:
                time.sleep(random.uniform(0.1, 0.2))
            fingerprints.append(self.execute_request(url, options).fingerprint)

        stats = self.compute_timing_stats(fingerprints)
        self.logger.info(
            f"Baseline {url}: {stats.mean_response_time_ms:.1f}ms "
            f"± {stats.std_dev_response_time_ms:.1f}ms")
        return BaselineCapture(fingerprints, stats, self.build_profile(fingerprints))

    @staticmethod
    def compute_timing_stats(fingerprints: Sequence[ResponseFingerprint]) -> TimingStats:
        return TimingStats.from_fingerprints(fingerprints)

    @classmethod
    def build_profile(cls, fingerprints: Sequence[ResponseFingerprint]) -> BaselineProfile:
        """
        Consensus fingerprint over baseline samples.

        Transport failures (TIMEOUT / CONNECTION_ERROR sentinels) are ignored
        whenever at least one sample got a real response. Status is the most
        common one, earliest sample winning ties; hash, length, body sample and
        error class all come from the first sample carrying that status.
        Headers are the names every sample returned, since values such as
        date or set-cookie change per response.
        """
        if not fingerprints:
            return BaselineProfile(fingerprint=ResponseFingerprint(), timing=TimingStats())

        pool = [fp for fp in fingerprints if fp.error_class not in (TIMEOUT, CONNECTION_ERROR)]
        pool = pool or list(fingerprints)
        status = Counter(fp.status_code for fp in pool).most_common(1)[0][0]
        rep = next(fp for fp in pool if fp.status_code == status)
        names = set(rep.headers).intersection(*(fp.headers for fp in pool))
        mean_len, std_len = mean_std([fp.body_length for fp in pool])

        consensus = ResponseFingerprint(
            status_code=status,
            body_hash=rep.body_hash,
            body_length=rep.body_length,
            response_times_ms=[t for fp in pool for t in fp.response_times_ms],
            headers={k: v for k, v in rep.headers.items() if k in names},
            error_class=rep.error_class,
            raw_body_sample=rep.raw_body_sample,
        )
        return BaselineProfile(
            fingerprint=consensus,
            timing=cls.compute_timing_stats(pool),
            mean_body_length=mean_len,
            std_dev_body_length=std_len,
            sample_count=len(fingerprints),
        )

    # ── payload injection ───────────────────────────────────────

    def execute_with_payload(self, url: str, payload: str, injection_point,
                             param_name: str, base_options: RequestOptions | None = None) -> ExecutionResult:
        point = InjectionPoint(injection_point)
        options = deepcopy(base_options) if base_options else RequestOptions()
        target = url

        if point is InjectionPoint.QUERY:
            target = str(httpx.URL(url).copy_set_param(param_name, payload))
        elif point is InjectionPoint.BODY:
            options.method = options.method or "POST"
            options.body, options.headers = self._inject_body(
                options.body, options.headers, param_name, payload)
        elif point is InjectionPoint.HEADER:
            options.headers = {k: v for k, v in options.headers.items()
                               if k.lower() != param_name.lower()}
            options.headers[param_name] = payload
        elif point is InjectionPoint.PATH:
            target = url.replace("{" + param_name + "}", quote(payload, safe=""))

        return self.execute_request(target, options, mutation_payload=payload)

    @staticmethod
    def _inject_body(body, headers: dict, param: str, payload: str):
        ctype_key = next((k for k in headers if k.lower() == "content-type"), None)
        ctype = headers[ctype_key] if ctype_key else "application/x-www-form-urlencoded"

        if "application/json" in ctype.lower():
            try:
                existing = json.loads(body) if body else {}
            except (TypeError, ValueError):
                existing = None
            if not isinstance(existing, dict):
                existing = {}
            existing[param] = payload
            new_body = json.dumps(existing)
        else:
            if isinstance(body, bytes):
                body = body.decode("utf-8", errors="replace")
            pairs = [(k, v) for k, v in parse_qsl(body or "", keep_blank_values=True) if k != param]
            pairs.append((param, payload))
            new_body = urlencode(pairs)

        new_headers = dict(headers)
        if ctype_key is None:
            new_headers["Content-Type"] = ctype
        return new_body, new_headers

