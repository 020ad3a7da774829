"""Process-wide validation counters."""

from collections import deque
from dataclasses import dataclass, field
from typing import Any

MOVING_AVERAGE_WINDOW = 100


@dataclass
class ValidationMetricsCollector:
    """Counts validation outcomes.

    The average validation time covers the most recent 100 samples.
    """

    total_validations: int = 0
    successful_validations: int = 0
    failed_validations: int = 0
    security_violations: int = 0
    _times: deque = field(default_factory=lambda: deque(maxlen=MOVING_AVERAGE_WINDOW))

    def record_validation(
        self, success: bool, time_ms: float, security_violation: bool = False
    ) -> None:
        self.total_validations += 1
        self._times.append(time_ms)
        if success:
            self.successful_validations += 1
        else:
            self.failed_validations += 1
        if security_violation:
            self.security_violations += 1

    @property
    def average_validation_time_ms(self) -> float:
        if not self._times:
            return 0.0
        return sum(self._times) / len(self._times)

    def get_metrics(self) -> dict[str, Any]:
        return {
            "total_validations": self.total_validations,
            "successful_validations": self.successful_validations,
            "failed_validations": self.failed_validations,
            "security_violations": self.security_violations,
            "average_validation_time_ms": self.average_validation_time_ms,
        }

    def reset(self) -> None:
        self.total_validations = 0
        self.successful_validations = 0
        self.failed_validations = 0
        self.security_violations = 0
        self._times.clear()


validation_metrics = ValidationMetricsCollector()
