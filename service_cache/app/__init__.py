"""
Edge cache service.

Tiered caching and request governance behind a small FastAPI surface.
"""
