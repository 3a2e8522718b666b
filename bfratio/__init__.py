"""State-space models of soil bacteria:fungi abundance ratios."""

__version__ = "0.1.0"
