"""OpenStreetMap vector data (Overpass API)."""

from osm.overpass import OverpassClient, OverpassQueryResult, OverpassResponse

__all__ = ['OverpassClient', 'OverpassQueryResult', 'OverpassResponse']
