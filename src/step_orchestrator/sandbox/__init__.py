"""Isolated code execution for model-generated scripts."""
