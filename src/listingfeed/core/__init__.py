"""Core domain package for listingfeed.

Core contains text normalization, classification, pricing, deduplication and
trust scoring without any Telegram or storage-specific code, keeping the
business logic portable across sources.
"""
