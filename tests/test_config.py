import pytest

from wrowrecord.config import SessionConfig, SamplingPolicy
from wrowrecord.errors import ConfigError, WRowRecordError


def test_defaults_are_valid():
    config = SessionConfig().validate()
    assert config.sampling_policy == SamplingPolicy.ON_SECOND
    assert config.handshake_retries == 3


def test_policy_given_as_text_is_normalised():
    config = SessionConfig(sampling_policy="on_stroke").validate()
    assert config.sampling_policy is SamplingPolicy.ON_STROKE
    assert config.describe()['sampling_policy'] == "on_stroke"


@pytest.mark.parametrize("settings", [
    {'sampling_policy': "hourly"},
    {'handshake_timeout': 0},
    {'handshake_retries': -1},
    {'sink_queue_capacity': 0},
    {'sink_put_timeout': -0.1},
    {'sink_retry_delay': -1},
    {'max_frame_length': 4},
    {'poll_interval': -0.5},
    {'finish_after_stalls': -1},
])
def test_invalid_settings_raise_config_error(settings):
    with pytest.raises(ConfigError):
        SessionConfig(**settings).validate()


def test_config_error_is_a_wrowrecord_error():
    assert issubclass(ConfigError, WRowRecordError)


def test_finish_detection_can_be_disabled():
    config = SessionConfig(finish_after_stalls=0, wait_for_first_stroke=True).validate()
    assert config.describe()['finish_after_stalls'] == 0
    assert config.describe()['wait_for_first_stroke'] is True
