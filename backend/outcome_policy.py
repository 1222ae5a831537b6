"""
Outcome Policy - Fault injection for the simulated collaborators.

The DigiLocker, UIDAI, OTP and conversion services never talk to a real
network. Every pass/fail or score they produce is drawn from an OutcomePolicy:

- RandomOutcomePolicy: seeded (or unseeded) random draws, the demo behaviour
- FixedOutcomePolicy: deterministic answers, optionally scripted per outcome name

Simulated latency goes through simulate_latency() and is off unless
SIMULATE_LATENCY is set.
"""

import asyncio
import logging
import random
from typing import Any, Dict, List, Optional, Sequence

from config.settings import settings

logger = logging.getLogger(__name__)


class OutcomePolicy:
    """Source of every randomized decision a collaborator makes."""

    def chance(self, name: str, probability: float) -> bool:
        raise NotImplementedError

    def randint(self, name: str, low: int, high: int) -> int:
        raise NotImplementedError

    def choice(self, name: str, options: Sequence[Any]) -> Any:
        raise NotImplementedError


class RandomOutcomePolicy(OutcomePolicy):
    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self._rng = random.Random(seed)

    def chance(self, name: str, probability: float) -> bool:
        return self._rng.random() < probability

    def randint(self, name: str, low: int, high: int) -> int:
        return self._rng.randint(low, high)

    def choice(self, name: str, options: Sequence[Any]) -> Any:
        return self._rng.choice(list(options))


class FixedOutcomePolicy(OutcomePolicy):
    """
    Deterministic outcomes.

    With succeed=True every chance() passes and every randint() returns the top
    of its range; with succeed=False chance() fails and randint() returns the
    bottom. Individual outcome names can be pinned with overrides. A list value
    is a script: each draw consumes the next entry, the last entry repeats.

    Example:
        FixedOutcomePolicy(overrides={"digilocker.issuer_verified": [False, True]})
    """

    def __init__(self, succeed: bool = True, overrides: Optional[Dict[str, Any]] = None):
        self.succeed = succeed
        self._overrides: Dict[str, Any] = {}
        for name, value in (overrides or {}).items():
            self._overrides[name] = list(value) if isinstance(value, (list, tuple)) else value
        self.draws: List[str] = []

    def _pinned(self, name: str):
        if name not in self._overrides:
            return False, None
        value = self._overrides[name]
        if isinstance(value, list):
            return True, value.pop(0) if len(value) > 1 else value[0]
        return True, value

    def chance(self, name: str, probability: float) -> bool:
        self.draws.append(name)
        pinned, value = self._pinned(name)
        return bool(value) if pinned else self.succeed

    def randint(self, name: str, low: int, high: int) -> int:
        self.draws.append(name)
        pinned, value = self._pinned(name)
        if pinned:
            return int(value)
        return high if self.succeed else low

    def choice(self, name: str, options: Sequence[Any]) -> Any:
        self.draws.append(name)
        pinned, value = self._pinned(name)
        if pinned:
            return value
        return list(options)[0]


def default_policy() -> OutcomePolicy:
    return RandomOutcomePolicy(settings.OUTCOME_SEED)


async def simulate_latency(policy: OutcomePolicy, name: str, low_ms: int, high_ms: Optional[int] = None) -> None:
    """Sleep for a policy-drawn delay when latency simulation is enabled."""
    if not settings.SIMULATE_LATENCY:
        return
    delay_ms = low_ms if high_ms is None else policy.randint(f"{name}.latency", low_ms, high_ms)
    delay = delay_ms / 1000 * settings.LATENCY_SCALE
    logger.debug(f"[Latency] {name}: {delay:.2f}s")
    await asyncio.sleep(delay)
