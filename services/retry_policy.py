from dataclasses import dataclass
from datetime import timedelta
from flask import current_app


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_seconds: int = 60
    factor: int = 2
    max_seconds: int = 6 * 3600

    @classmethod
    def from_config(cls, config=None):
        config = config if config is not None else current_app.config
        return cls(
            max_attempts=config.get('AUTOMATION_MAX_ATTEMPTS', 5),
            base_seconds=config.get('AUTOMATION_RETRY_BASE_SECONDS', 60),
            max_seconds=config.get('AUTOMATION_RETRY_MAX_SECONDS', 6 * 3600),
        )

    def backoff(self, failures):
        seconds = self.base_seconds * (self.factor ** max(failures - 1, 0))
        return timedelta(seconds=min(seconds, self.max_seconds))

    def exhausted(self, failures):
        return failures >= self.max_attempts

    def next_attempt_at(self, failures, now):
        if self.exhausted(failures):
            return None
        return now + self.backoff(failures)
