import logging

from dataclasses import dataclass, asdict
from enum import Enum

from wrowrecord.errors import ConfigError

logger = logging.getLogger(__name__)

# SESSION DEFAULTS
HANDSHAKE_TIMEOUT = 2.0         # Seconds to wait for _WR_ after writing USB
HANDSHAKE_RETRIES = 3           # Further attempts after the first handshake times out
SINK_QUEUE_CAPACITY = 256       # Samples buffered between the aggregator and the CSV writer
SINK_PUT_TIMEOUT = 0.5          # Longest stall of the reading thread when the sink queue is full
SINK_RETRY_DELAY = 0.2          # Pause before the single retry of a failed row write
MAX_FRAME_LENGTH = 64           # Longest S4 line is IDT + address + 6 digits; anything near this is noise
POLL_INTERVAL = 0.025           # The delay inserted between successive register requests written to the S4
FINISH_STALL_READS = 8        # Unchanged S4 clock readings in a row (about 2.5s of polling) that end the workout


class SamplingPolicy(str, Enum):
    ON_SECOND = "on_second"
    ON_STROKE = "on_stroke"


@dataclass
class SessionConfig:
    sampling_policy: SamplingPolicy | str = SamplingPolicy.ON_SECOND
    handshake_timeout: float = HANDSHAKE_TIMEOUT
    handshake_retries: int = HANDSHAKE_RETRIES
    sink_queue_capacity: int = SINK_QUEUE_CAPACITY
    sink_put_timeout: float = SINK_PUT_TIMEOUT
    sink_retry_delay: float = SINK_RETRY_DELAY
    max_frame_length: int = MAX_FRAME_LENGTH
    poll_interval: float = POLL_INTERVAL
    reset_on_start: bool = False
    wait_for_first_stroke: bool = False
    finish_after_stalls: int = FINISH_STALL_READS

    def validate(self) -> "SessionConfig":
        """
        Check the configuration before a session starts.
        Returns:
            SessionConfig: self, with sampling_policy normalised to a SamplingPolicy member.
        Raises:
            ConfigError: If any setting is out of range or the sampling policy is unknown.
        """
        try:
            self.sampling_policy = SamplingPolicy(self.sampling_policy)
        except ValueError:
            choices = ", ".join(p.value for p in SamplingPolicy)
            raise ConfigError(f"Invalid sampling policy {self.sampling_policy!r}. Must be one of: {choices}") from None

        if self.handshake_timeout <= 0:
            raise ConfigError(f"handshake_timeout must be positive, got {self.handshake_timeout}")
        if self.handshake_retries < 0:
            raise ConfigError(f"handshake_retries cannot be negative, got {self.handshake_retries}")
        if self.sink_queue_capacity < 1:
            raise ConfigError(f"sink_queue_capacity must be at least 1, got {self.sink_queue_capacity}")
        if self.sink_put_timeout < 0 or self.sink_retry_delay < 0:
            raise ConfigError("sink_put_timeout and sink_retry_delay cannot be negative")
        if self.max_frame_length < 8:
            raise ConfigError(f"max_frame_length {self.max_frame_length} is shorter than an S4 memory frame")
        if self.poll_interval < 0:
            raise ConfigError(f"poll_interval cannot be negative, got {self.poll_interval}")
        if self.finish_after_stalls < 0:
            raise ConfigError(f"finish_after_stalls cannot be negative, got {self.finish_after_stalls}")

        logger.debug(f"Session configuration validated: {self.describe()}")
        return self

    def describe(self) -> dict:
        values = asdict(self)
        values['sampling_policy'] = getattr(self.sampling_policy, 'value', self.sampling_policy)
        return values
