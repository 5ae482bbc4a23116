"""Catalog synchronization pipeline: source client, decoder, change detection, upserts, scheduling."""
