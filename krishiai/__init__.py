"""KrishiAI backend: crop diagnosis, crop guides, mandi prices and weather for farmers."""

__version__ = "0.1.0"
