"""
Numeric, time-ordered job identifiers.

Format: TTTTTTTTTTTTTSSSSSS (19 digits)
- First 13 digits: creation timestamp in milliseconds since the epoch
- Last 6 digits: per-millisecond sequence, seeded randomly each millisecond
"""

import random
import re
import threading
import time

from webanalyzer.core.exceptions import InvalidJobIdError

JOB_ID_LENGTH = 19
TIMESTAMP_DIGITS = 13
SEQUENCE_MODULUS = 1_000_000

# 2000-01-01T00:00:00Z and 2100-01-01T00:00:00Z in milliseconds
MIN_TIMESTAMP_MS = 946_684_800_000
MAX_TIMESTAMP_MS = 4_102_444_800_000

_JOB_ID_PATTERN = re.compile(rf"[0-9]{{{JOB_ID_LENGTH}}}")


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class JobIdGenerator:
    """
    Allocates unique 19-digit job ids.

    All state lives on the instance and is only touched under ``_lock``, so a
    single generator can be shared between threads and coroutines.
    """

    def __init__(self, clock=_now_ms, rng: random.Random | None = None):
        self._clock = clock
        self._rng = rng or random.SystemRandom()
        self._lock = threading.Lock()
        self._last_timestamp = 0
        self._sequence = 0
        self._seed = 0

    def allocate(self) -> str:
        """Return a new job id, strictly greater than any previously returned."""
        with self._lock:
            timestamp = self._clock()

            # Hold the last timestamp if the wall clock moved backwards
            if timestamp < self._last_timestamp:
                timestamp = self._last_timestamp

            if timestamp == self._last_timestamp:
                self._sequence = (self._sequence + 1) % SEQUENCE_MODULUS

                if self._sequence == self._seed:
                    # Every sequence value for this millisecond is used up
                    while timestamp <= self._last_timestamp:
                        timestamp = self._clock()
                    self._reseed()
            else:
                self._reseed()

            self._last_timestamp = timestamp
            return f"{timestamp:0{TIMESTAMP_DIGITS}d}{self._sequence:06d}"

    def _reseed(self) -> None:
        self._seed = self._rng.randrange(SEQUENCE_MODULUS)
        self._sequence = self._seed


# Process-wide allocator
job_id_generator = JobIdGenerator()


def generate_job_id() -> str:
    """Allocate a job id from the process-wide generator."""
    return job_id_generator.allocate()


def get_timestamp_from_job_id(job_id: str) -> int:
    """Extract the embedded millisecond timestamp from a job id."""
    if not isinstance(job_id, str) or len(job_id) < TIMESTAMP_DIGITS:
        raise InvalidJobIdError()

    prefix = job_id[:TIMESTAMP_DIGITS]
    if not (prefix.isascii() and prefix.isdigit()):
        raise InvalidJobIdError(details="Invalid timestamp in job ID")

    return int(prefix)


def is_valid_job_id(job_id: object) -> bool:
    """Check shape (19 digits) and that the embedded timestamp is plausible."""
    if not isinstance(job_id, str) or not _JOB_ID_PATTERN.fullmatch(job_id):
        return False

    timestamp = get_timestamp_from_job_id(job_id)
    return MIN_TIMESTAMP_MS <= timestamp <= MAX_TIMESTAMP_MS
