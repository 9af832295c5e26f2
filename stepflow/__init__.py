"""stepflow: step-sequence workflows and custom commands with lazily resolved template dependencies."""

__version__ = "0.1.0"
