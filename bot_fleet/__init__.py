"""Rule-driven trading bot fleet: tick engine, strategy evaluator and session manager."""

__version__ = "0.1.0"
