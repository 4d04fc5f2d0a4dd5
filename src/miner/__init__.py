"""Core domain package for catalog-miner.

The core holds grouping, batching, run coordination, and product assembly
logic without any chat-provider, HTTP, or storage-specific code, keeping the
pipeline portable and testable with fakes.
"""
