"""
codepilot — runtime core of a coding assistant: token budgets, context
truncation and optimization, and multi-step agent execution.
"""

__version__ = "0.1.0"
