#!/usr/bin/env python3
"""CLI entry point for GeoSwitch.

Runs the gateway in development or inside a container. For production ASGI
deployment, use geoswitch.app:create_app_from_settings instead.
"""

from geoswitch.main import main

if __name__ == "__main__":
    main()
