"""tentmap: crowdsourced street-report map with a daily vote tally."""

__version__ = "0.1.0"
