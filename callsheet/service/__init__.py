"""
Service layer around the extraction engine.

Configuration loading, admission control (global and per-user concurrency
caps), the injectable result cache, and the command-line interface.
"""
