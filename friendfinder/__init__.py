"""Contact normalization and friend discovery over phone-number hashes."""

__version__ = "1.0.0"
