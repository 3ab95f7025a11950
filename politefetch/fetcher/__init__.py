"""Politeness-aware fetch scheduling.

- ``robots`` parses robots.txt into allow/disallow rules and a crawl delay
- ``grouping`` builds the host reference (grouping key) for each URL
- ``buffer`` admits grouped batches, one active batch per reference
- ``manager`` pumps batches from per-host queues into the buffer
"""
