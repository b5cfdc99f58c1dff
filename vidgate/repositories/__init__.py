"""
Repository package for data access layers.

- videos: `VideoStore` (upload sessions + video records)
"""
