"""Security gate evaluator for container image and IaC scan results."""

__version__ = "0.1.0"
