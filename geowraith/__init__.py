"""
GeoWraith - local image geolocation by embedding retrieval.
"""

__version__ = "0.3.0"
