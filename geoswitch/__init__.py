"""GeoSwitch - reverse-proxy gateway with per-request selectable network exits."""

__version__ = "0.1.0"
