"""
Core business logic package for AdEarn.

core.engine holds the headless AdWatchEngine (session controller);
core.errors holds the error taxonomy shared with the sync and tracking
packages. Zero UI dependencies.
"""
