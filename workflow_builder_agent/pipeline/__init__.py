"""Workflow generation pipeline: stages, coordinator and shared records."""
