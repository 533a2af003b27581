"""monolink - serialosc discovery and device sessions over OSC/UDP."""

__version__ = "0.1.0"
