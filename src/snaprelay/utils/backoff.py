from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

from snaprelay.utils.errors import ConfigError


@dataclass(frozen=True)
class BackoffConfig:
    base_s: float = 1.0
    max_s: float = 60.0
    factor: float = 2.0
    jitter: float = 0.2

    @staticmethod
    def from_dict(d: Dict[str, Any], defaults: Optional["BackoffConfig"] = None) -> "BackoffConfig":
        dflt = defaults or BackoffConfig()
        cfg = BackoffConfig(
            base_s=float(d.get("base_s", dflt.base_s)),
            max_s=float(d.get("max_s", dflt.max_s)),
            factor=float(d.get("factor", dflt.factor)),
            jitter=float(d.get("jitter", dflt.jitter)),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.base_s <= 0.0:
            raise ConfigError("backoff.base_s must be > 0")
        if self.max_s < self.base_s:
            raise ConfigError("backoff.max_s must be >= backoff.base_s")
        if not 0.0 <= self.jitter < 1.0:
            raise ConfigError("backoff.jitter must be in [0, 1)")
        # jitter only ever shortens a delay, so growth must outpace it
        if self.factor * (1.0 - self.jitter) <= 1.0:
            raise ConfigError("backoff.factor * (1 - backoff.jitter) must be > 1")


class ExponentialBackoff:
    """Doubling delay with downward jitter, capped at `max_s`.

    Each delay falls in `[floor, nominal]` where `floor` is the jittered lower
    bound raised to the previous delay, so consecutive delays never shrink and
    keep growing until they reach the cap.
    """

    def __init__(self, cfg: BackoffConfig, rng: Optional[random.Random] = None) -> None:
        self._cfg = cfg
        self._rng = rng or random.Random()
        self._failures = 0
        self._last_delay = 0.0

    @property
    def failures(self) -> int:
        return self._failures

    def nominal_delay_s(self, failures: Optional[int] = None) -> float:
        n = self._failures if failures is None else int(failures)
        if n <= 0:
            return 0.0
        # clamp the exponent so long outages never overflow
        exp = min(n - 1, 64)
        return float(min(self._cfg.max_s, self._cfg.base_s * (self._cfg.factor ** exp)))

    def next_delay_s(self) -> float:
        self._failures += 1
        nominal = self.nominal_delay_s()
        # the step into the cap could otherwise land below the previous delay
        floor = min(nominal, max(nominal * (1.0 - self._cfg.jitter), self._last_delay))
        delay = nominal - (nominal - floor) * self._rng.random()
        self._last_delay = delay
        return delay

    def reset(self) -> None:
        self._failures = 0
        self._last_delay = 0.0
