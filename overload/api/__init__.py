"""
HTTP API for launching and monitoring ramp runs.
"""
