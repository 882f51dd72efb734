"""Commissioning engine for Pico FIDO security keys."""

__version__ = "0.3.0"
