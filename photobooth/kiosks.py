"""
The fixed kiosk population served by one photo booth backend.

A booth deployment has a small, known set of physical kiosks.  One of
them may be designated the priority ("VIP") kiosk: its generation work is
queued with an elevated priority class and its callers are given a longer
response timeout.  An optional bypass identifier, intended for automated
testing, is treated as a registered kiosk for bookkeeping but skips rate
accounting in ``kiosk_admission``.
"""

import dataclasses


@dataclasses.dataclass(frozen=True)
class KioskRegistry:
    """
    Immutable description of the kiosks this backend accepts work from.

    Attributes:
        kiosk_identifiers: Production kiosk identifiers, in display order.
        priority_kiosk_identifier: The kiosk whose work is dequeued ahead
            of ordinary kiosks, or ``None`` when no kiosk is privileged.
        default_priority: Priority class for ordinary kiosks.
        elevated_priority: Priority class for the priority kiosk.
        default_response_timeout_seconds: How long an ordinary kiosk's
            request waits for its generation result.
        priority_response_timeout_seconds: The same, for the priority kiosk.
        bypass_kiosk_identifier: Test-only identifier that is exempt from
            admission rate limiting, or ``None`` when disabled.
    """

    kiosk_identifiers: tuple[str, ...]
    priority_kiosk_identifier: str | None = None
    default_priority: int = 0
    elevated_priority: int = 1
    default_response_timeout_seconds: float = 120.0
    priority_response_timeout_seconds: float = 180.0
    bypass_kiosk_identifier: str | None = None

    def __post_init__(self) -> None:
        if not self.kiosk_identifiers:
            raise ValueError("At least one kiosk identifier must be registered.")
        if len(set(self.kiosk_identifiers)) != len(self.kiosk_identifiers):
            raise ValueError("Kiosk identifiers must be unique.")
        if (
            self.priority_kiosk_identifier is not None
            and self.priority_kiosk_identifier not in self.kiosk_identifiers
        ):
            raise ValueError(
                f"The priority kiosk '{self.priority_kiosk_identifier}' is not a registered kiosk.",
            )
        if self.bypass_kiosk_identifier is not None and self.bypass_kiosk_identifier in self.kiosk_identifiers:
            raise ValueError(
                "The admission bypass identifier must not match a production kiosk identifier.",
            )

    @property
    def provisioned_identifiers(self) -> tuple[str, ...]:
        """Identifiers that get pre-provisioned counters (kiosks plus bypass)."""
        if self.bypass_kiosk_identifier is None:
            return self.kiosk_identifiers
        return (*self.kiosk_identifiers, self.bypass_kiosk_identifier)

    def is_known(self, kiosk_identifier: str | None) -> bool:
        return kiosk_identifier is not None and kiosk_identifier in self.provisioned_identifiers

    def is_priority_kiosk(self, kiosk_identifier: str | None) -> bool:
        return kiosk_identifier is not None and kiosk_identifier == self.priority_kiosk_identifier

    def priority_for(self, kiosk_identifier: str | None) -> int:
        """Return the queue priority class for work submitted by this kiosk."""
        if self.is_priority_kiosk(kiosk_identifier):
            return self.elevated_priority
        return self.default_priority

    def response_timeout_for(self, kiosk_identifier: str | None) -> float:
        """Return how long this kiosk's request waits for its result."""
        if self.is_priority_kiosk(kiosk_identifier):
            return self.priority_response_timeout_seconds
        return self.default_response_timeout_seconds
