"""Chat-driven container image sync service for WeChat Work and GitHub Actions."""

__version__ = "0.1.0"
