"""
shell-ai: ask a language model from your terminal.
"""

__version__ = "0.1.0"
