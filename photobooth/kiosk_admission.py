"""
Per-kiosk moving-window admission control.

Admission is backed by the ``limits`` library: one
``MovingWindowRateLimiter`` over in-process ``MemoryStorage``, with the
kiosk identifier as the rate-limit key.  A request is admitted when the
kiosk has had fewer than ``maximum_requests_per_window`` admissions in
the trailing window; otherwise it is rejected with the number of seconds
until the oldest admission leaves the window.  The storage expires idle
keys on its own.

Kiosks never share window state.  A request without a kiosk header is
accounted to the ``unknown`` bucket, and an unregistered identifier gets
a bucket of its own, so a misconfigured client only throttles itself.

``MovingWindowRateLimiter.hit`` checks and records in one call, so two
near-simultaneous requests for the same kiosk cannot both pass a check
that should admit only one.

Bypass identifier
-----------------
Automated end-to-end tests need to submit bursts without waiting out the
window.  When ``bypass_kiosk_identifier`` is configured, requests bearing
exactly that identifier are admitted before the limiter is consulted.
The bypass is disabled by default, configuration refuses a value that
collides with a production kiosk identifier, and every bypassed admission
is logged.
"""

import dataclasses
import math
import time

import limits
import limits.storage
import limits.strategies
import structlog

logger = structlog.get_logger()

UNKNOWN_KIOSK_BUCKET = "unknown"


@dataclasses.dataclass(frozen=True)
class AdmissionDecision:
    """
    Outcome of one admission check.

    Attributes:
        allowed: Whether the request may proceed to the generation queue.
        kiosk_identifier: The bucket the request was accounted to.
        reason: ``"admitted"``, ``"bypassed"`` or ``"rate_limited"``.
        retry_after_seconds: Whole seconds until the bucket next admits;
            0 when allowed.
        remaining: Admissions left in the current window after this one.
    """

    allowed: bool
    kiosk_identifier: str
    reason: str
    retry_after_seconds: int = 0
    remaining: int = 0


class KioskAdmissionController:
    """
    Admits or rejects kiosk requests before any work is queued.

    Args:
        window_seconds: Duration of the moving window (W).  ``limits``
            counts windows in whole seconds, so fractions are rounded up.
        maximum_requests_per_window: Admissions allowed per kiosk inside
            any trailing window of duration W (M).
        bypass_kiosk_identifier: Identifier exempt from accounting, or
            ``None`` to disable the bypass.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        maximum_requests_per_window: int = 5,
        bypass_kiosk_identifier: str | None = None,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive.")
        if maximum_requests_per_window < 1:
            raise ValueError("maximum_requests_per_window must be at least 1.")
        self._window_seconds = math.ceil(window_seconds)
        self._maximum_requests_per_window = maximum_requests_per_window
        self._bypass_kiosk_identifier = bypass_kiosk_identifier

        self._storage = limits.storage.MemoryStorage()
        self._rate_limiter = limits.strategies.MovingWindowRateLimiter(self._storage)
        self._rate_limit_item = limits.RateLimitItemPerSecond(maximum_requests_per_window, self._window_seconds)

        if bypass_kiosk_identifier is not None:
            logger.warning(
                "kiosk_admission_bypass_enabled",
                bypass_kiosk_identifier=bypass_kiosk_identifier,
            )

    @property
    def window_seconds(self) -> int:
        """Window length in whole seconds, as enforced by the limiter."""
        return self._window_seconds

    @property
    def maximum_requests_per_window(self) -> int:
        """Admissions allowed per kiosk inside one window."""
        return self._maximum_requests_per_window

    def admit(self, kiosk_identifier: str | None) -> AdmissionDecision:
        """
        Check the kiosk's window and, when it has room, record the admission.

        Args:
            kiosk_identifier: The identifier the request declared, or
                ``None``/empty when the header was missing.

        Returns:
            An ``AdmissionDecision``.  Rejections carry a retry-after of
            at least one second.
        """
        bucket = kiosk_identifier or UNKNOWN_KIOSK_BUCKET

        if self._bypass_kiosk_identifier is not None and bucket == self._bypass_kiosk_identifier:
            logger.info("kiosk_admission_bypassed", kiosk_identifier=bucket)
            return AdmissionDecision(
                allowed=True,
                kiosk_identifier=bucket,
                reason="bypassed",
                remaining=self._maximum_requests_per_window,
            )

        admitted = self._rate_limiter.hit(self._rate_limit_item, bucket)
        window_stats = self._rate_limiter.get_window_stats(self._rate_limit_item, bucket)

        if not admitted:
            retry_after_seconds = max(1, math.ceil(window_stats.reset_time - time.time()))
            logger.warning(
                "kiosk_admission_rejected",
                kiosk_identifier=bucket,
                retry_after_seconds=retry_after_seconds,
                window_seconds=self._window_seconds,
                maximum_requests_per_window=self._maximum_requests_per_window,
            )
            return AdmissionDecision(
                allowed=False,
                kiosk_identifier=bucket,
                reason="rate_limited",
                retry_after_seconds=retry_after_seconds,
            )

        return AdmissionDecision(
            allowed=True,
            kiosk_identifier=bucket,
            reason="admitted",
            remaining=max(0, window_stats.remaining),
        )

    def reset(self) -> None:
        """Forget every kiosk's admission history."""
        self._storage.reset()
