"""
Job listing extraction pipeline.

Fetches a job posting once, caches it by content hash, and walks a confidence
cascade (vendor API, AI, HTML heuristics) until one result is good enough to
write to the job record. Every attempt is an auditable state machine with an
ordered event trail, and failed attempts are retried from the step that broke.
"""

__version__ = "1.0.0"
