"""Resonance: state-aware next-song selection and listening-effect learning."""

__version__ = "0.1.0"
