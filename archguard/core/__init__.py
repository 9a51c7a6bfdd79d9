"""ArchGuard core ingestion pipeline components.

This package contains the antivirus scan gateway and its implementations,
bomb-safe archive extraction, text decoding, PII pattern registry and
validators, the detection engine, and the job orchestrator with its queue and
progress channel.
"""
