"""SwapHub: battery-swap station inventory and swap lifecycle."""

__version__ = "0.1.0"
