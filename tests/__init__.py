"""
WebAR Target Pipeline Test Suite

This package contains tests for target-image compilation (resampling, feature
extraction, descriptor export) and the asset upload pipeline.

Structure:
- unit/: Unit tests for individual components
- integration/: Integration tests against the FastAPI backend
"""
