"""
Core modules for shell-ai.

This package contains cost estimation, token usage tracking and the
streaming response decoder.
"""
