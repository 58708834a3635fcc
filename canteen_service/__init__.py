"""College canteen ordering service: stock reservation, pickup tokens and live updates."""

__version__ = "0.1.0"
