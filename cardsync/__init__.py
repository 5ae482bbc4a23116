"""Card Catalog Sync — catalog synchronization pipeline for trading-card datasets."""
