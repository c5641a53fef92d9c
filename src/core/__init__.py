"""Core domain package for groupscope.

Core contains rate limiting, session rotation, staleness, locking, analysis
orchestration, recovery and delivery logic without any Telegram or
storage-specific code, keeping the orchestration portable and testable.
"""
