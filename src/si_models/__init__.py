"""si-models: local registry of model artifacts downloaded from a model hub."""

__version__ = "0.1.0"
