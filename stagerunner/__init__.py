"""stagerunner: a sequential CI/CD stage runner."""

__version__ = "0.3.0"
