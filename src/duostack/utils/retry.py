# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0


def backoff_delay(attempt: int, *, base: float, factor: float = 2.0, cap: float | None = None) -> float:
    """Delay before retry number `attempt` (1-based): base * factor**(attempt-1), optionally capped."""
    delay = base * (factor ** (attempt - 1))
    return min(delay, cap) if cap is not None else delay
