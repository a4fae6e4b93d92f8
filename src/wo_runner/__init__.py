"""Autonomous work-order runner driving an LLM through a tool-use loop."""

__version__ = "0.1.0"
