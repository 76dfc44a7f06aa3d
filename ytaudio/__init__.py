"""YouTube audio proxy: fallback-chain extraction, TTL cache and range responses."""

__version__ = "1.0.0"
