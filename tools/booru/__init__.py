"""
Booru Crawler – bulk download posts and metadata from donmai image boards.

Supports:
  • Month-by-month crawls of danbooru and safebooru searches
  • Top-N "gather" runs with caption files rendered from a tag template
  • Deduplication of posts seen by several overlapping queries
  • Bounded-concurrency downloads with atomic file promotion
  • Resumable operation via per-month metadata files and path-existence skips
"""
