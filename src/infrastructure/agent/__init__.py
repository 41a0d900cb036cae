"""Agent infrastructure module.

This module contains the context budgeting and compaction engine used to
keep agent conversations inside the model's context window.
"""
