"""
Venue deduplication engine.

Leaves first:
  similarity    one normalized fuzzy name metric for the whole engine
  thresholds    distance band -> required similarity
  exclusions    reviewer-declared "not a duplicate" pairs
  candidates    spatial / same-city candidate query
  search        ranked curation search, insert-time best match
  pairs         city-wide pair review and clusters
  merge         transactional merge with audit snapshot
  name_quality  authoritative-name drift assessment and safe rename

Public API:
    from services.dedup.resolution.search import DuplicateSearch
    from services.dedup.resolution.merge import MergeOrchestrator
    from services.dedup.resolution.name_quality import NameQualityAssessor
"""
