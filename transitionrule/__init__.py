"""Pod transition rules: stage registration, rule processing, pod check states and status reconciliation."""

__version__ = "0.1.0"