"""CoView - mirror a live page from a leader browser to remote viewers."""

__version__ = "0.1.0"
