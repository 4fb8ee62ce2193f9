"""
Shared pieces for the target compiler, uploader and backend:
data model, error taxonomy, YAML config, JSON logging, small helpers.
"""
