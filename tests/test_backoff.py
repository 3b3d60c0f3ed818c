import random

import pytest

from snaprelay.utils.backoff import BackoffConfig, ExponentialBackoff
from snaprelay.utils.errors import ConfigError


def test_backoff_doubles_until_cap_without_jitter() -> None:
    b = ExponentialBackoff(BackoffConfig(base_s=1.0, max_s=10.0, factor=2.0, jitter=0.0))
    delays = [b.next_delay_s() for _ in range(6)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
    assert b.failures == 6


def test_backoff_strictly_increases_with_jitter_below_cap() -> None:
    b = ExponentialBackoff(BackoffConfig(base_s=0.5, max_s=1e6, factor=2.0, jitter=0.3), rng=random.Random(7))
    delays = [b.next_delay_s() for _ in range(12)]
    assert all(later > earlier for earlier, later in zip(delays, delays[1:]))
    assert all(d <= 1e6 for d in delays)


class _ScriptedRandom(random.Random):
    def __init__(self, values: list) -> None:
        super().__init__(0)
        self._values = list(values)

    def random(self) -> float:
        return self._values.pop(0)


def test_step_into_cap_never_shrinks_delay() -> None:
    cfg = BackoffConfig.from_dict({"base_s": 1.0, "max_s": 5.0, "jitter": 0.4})
    b = ExponentialBackoff(cfg, rng=_ScriptedRandom([0.0, 0.0, 0.0, 0.999, 0.999, 0.0]))
    delays = [b.next_delay_s() for _ in range(6)]
    assert delays[:3] == [1.0, 2.0, 4.0]
    # unclamped, full jitter on the capped step would give 5 * 0.6 = 3
    assert 4.0 < delays[3] <= 5.0
    assert delays[3] <= delays[4] <= 5.0
    assert delays[5] == 5.0


def test_capped_delays_never_decrease_across_seeds() -> None:
    cfg = BackoffConfig(base_s=1.0, max_s=5.0, factor=2.0, jitter=0.4)
    for seed in range(50):
        b = ExponentialBackoff(cfg, rng=random.Random(seed))
        delays = [b.next_delay_s() for _ in range(8)]
        assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
        assert all(later > earlier for earlier, later in zip(delays[:4], delays[1:4]))
        assert max(delays) <= 5.0


def test_backoff_reset_returns_to_base() -> None:
    b = ExponentialBackoff(BackoffConfig(base_s=2.0, max_s=60.0, jitter=0.0))
    for _ in range(4):
        b.next_delay_s()
    b.reset()
    assert b.failures == 0
    assert b.next_delay_s() == 2.0


def test_backoff_config_rejects_jitter_that_breaks_growth() -> None:
    with pytest.raises(ConfigError):
        BackoffConfig.from_dict({"factor": 1.5, "jitter": 0.5})
    with pytest.raises(ConfigError):
        BackoffConfig.from_dict({"base_s": 5.0, "max_s": 1.0})
