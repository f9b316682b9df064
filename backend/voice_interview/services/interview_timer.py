import math
import time
from typing import Callable

TIME_UP_MESSAGE = (
    "Thank you so much for your time today. We've reached the end of our scheduled interview time. "
    "It was great learning about your background and experience. We'll be in touch with next steps soon."
)

class InterviewTimer:
    """Wall-clock interview limit with a one-shot warning before the end"""

    def __init__(self, max_duration_minutes: int = 15, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.start_time = clock()
        self.max_duration_minutes = max_duration_minutes
        self.warn_threshold_minutes = max_duration_minutes - 2
        self.has_warned = False

    def elapsed_seconds(self) -> float:
        return self._clock() - self.start_time

    def elapsed_minutes(self) -> float:
        return self.elapsed_seconds() / 60

    def remaining_minutes(self) -> float:
        return max(0.0, self.max_duration_minutes - self.elapsed_minutes())

    def has_exceeded_time(self) -> bool:
        return self.elapsed_minutes() >= self.max_duration_minutes

    def should_warn(self) -> bool:
        """True only on the first call made at or past the warning threshold"""
        if self.has_warned:
            return False
        if self.elapsed_minutes() >= self.warn_threshold_minutes:
            self.has_warned = True
            return True
        return False

    def time_warning_message(self) -> str:
        remaining = math.ceil(self.remaining_minutes())
        return (
            f"We have about {remaining} minutes remaining in our interview. "
            "Let me ask you a few final questions to wrap up."
        )

    def time_up_message(self) -> str:
        return TIME_UP_MESSAGE

    def formatted_elapsed(self) -> str:
        """MM:SS for log lines"""
        total_seconds = int(self.elapsed_seconds())
        minutes, seconds = divmod(total_seconds, 60)
        return f"{minutes:02d}:{seconds:02d}"
