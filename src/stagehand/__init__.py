"""Stagehand — workflow orchestration engine for staged agent pipelines."""

__version__ = "0.1.0"
