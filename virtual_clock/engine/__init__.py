"""Time engine: clock state, boundary events, rate-aware timers, request guard."""
