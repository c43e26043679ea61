"""Crypto -> fiat rate synthesis."""

from tracker.synthesis.synthesizer import RateSynthesizer

__all__ = ["RateSynthesizer"]
