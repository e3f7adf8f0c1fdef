"""
Password Gate - decides which connections get a fake password prompt.

One gate is owned by the listener and shared by every connection, so the
random source is seeded once. Tests inject a seeded ``random.Random`` (or
a stub) to force either outcome.
"""
from __future__ import annotations

import random
import threading
from typing import Optional


class PasswordGate:
    """Bernoulli draw over a shared, lock-guarded random source."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self.draws = 0
        self.challenged = 0

    def decide(self, probability: float) -> bool:
        """
        Draw the password decision for one connection.

        ``probability`` is validated at startup; 0.0 never challenges and
        1.0 always does.
        """
        with self._lock:
            sample = self._rng.random()
            decision = sample < probability
            self.draws += 1
            if decision:
                self.challenged += 1
        return decision
