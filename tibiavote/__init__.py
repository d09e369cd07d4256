"""
Media service for the TibiaVote weapon proficiency site.

This package mirrors wiki-hosted game images into owned object storage,
deduplicated by content hash, proxies the images that are not mirrored yet,
and provides the bulk backfill job that migrates legacy image URLs.
"""
