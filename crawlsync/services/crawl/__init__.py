"""Ingestion subsystem.

Structure:
- base.py: RawPage/CachedPage records, hashing helpers, ingestor protocols
- validator.py / robots.py: fetchability and politeness policy
- ingestors/: http, rate-limited, validated and social fetch strategies
- site_crawler.py: breadth-first same-host discovery
- pipeline.py: content-addressed page cache
- runner.py: CLI entrypoint for workers and manual runs
"""
