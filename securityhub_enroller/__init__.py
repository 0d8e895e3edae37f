"""Keep every AWS Organization account enrolled as a Security Hub member."""

__version__ = "1.0.0"
