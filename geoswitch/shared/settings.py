"""Centralized process settings for GeoSwitch, read from the environment."""

import os
from typing import Optional
from functools import lru_cache


class Settings:
    """Settings class with all environment variables."""

    # Server Configuration
    HOST: str = os.getenv('GEOSWITCH_HOST', '0.0.0.0')
    PORT: int = int(os.getenv('GEOSWITCH_PORT', '8080'))
    CONFIG_PATH: str = os.getenv('GEOSWITCH_CONFIG', 'config.yaml')
    EXIT_HEADER: str = os.getenv('GEOSWITCH_EXIT_HEADER', 'X-GeoSwitch-Exit')
    SHUTDOWN_TIMEOUT: float = float(os.getenv('GEOSWITCH_SHUTDOWN_TIMEOUT', '30'))

    # Logging
    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO').upper()
    LOG_FORMAT: str = os.getenv('LOG_FORMAT', 'console')

    # Upstream Configuration
    PROXY_REQUEST_TIMEOUT: int = int(os.getenv('PROXY_REQUEST_TIMEOUT', '120'))
    PROXY_CONNECT_TIMEOUT: int = int(os.getenv('PROXY_CONNECT_TIMEOUT', '30'))
    # Upstream TLS certificate verification
    PROXY_VERIFY_TLS: bool = os.getenv('PROXY_VERIFY_TLS', 'true').lower() == 'true'

    # Gluetun Provider Configuration
    DOCKER_HOST: Optional[str] = os.getenv('DOCKER_HOST')
    NETWORK: str = os.getenv('GEOSWITCH_NETWORK', 'geoswitch-net')
    GLUETUN_IMAGE: str = os.getenv('GEOSWITCH_GLUETUN_IMAGE', 'qmcgaw/gluetun:v3.41.0')
    PROXY_PORT: int = int(os.getenv('GEOSWITCH_PROXY_PORT', '8888'))
    HEALTH_TIMEOUT: float = float(os.getenv('GEOSWITCH_HEALTH_TIMEOUT', '60'))
    HEALTH_INTERVAL: float = float(os.getenv('GEOSWITCH_HEALTH_INTERVAL', '1'))
    STOP_TIMEOUT: int = int(os.getenv('GEOSWITCH_STOP_TIMEOUT', '10'))

    # VPN credentials handed to every gluetun container
    VPN_SERVICE_PROVIDER: str = os.getenv('VPN_SERVICE_PROVIDER', '')
    OPENVPN_USER: str = os.getenv('OPENVPN_USER', '')
    OPENVPN_PASSWORD: str = os.getenv('OPENVPN_PASSWORD', '')

    @classmethod
    def validate(cls) -> None:
        """Validate required settings values."""
        errors = []

        if not cls.HOST:
            errors.append("GEOSWITCH_HOST is required")

        if not (1 <= cls.PORT <= 65535):
            errors.append(f"GEOSWITCH_PORT must be between 1 and 65535, got {cls.PORT}")

        if not (1 <= cls.PROXY_PORT <= 65535):
            errors.append(f"GEOSWITCH_PROXY_PORT must be between 1 and 65535, got {cls.PROXY_PORT}")

        if not cls.EXIT_HEADER.strip():
            errors.append("GEOSWITCH_EXIT_HEADER must not be empty")

        if cls.HEALTH_INTERVAL <= 0:
            errors.append("GEOSWITCH_HEALTH_INTERVAL must be positive")

        if cls.HEALTH_INTERVAL >= cls.HEALTH_TIMEOUT:
            errors.append("GEOSWITCH_HEALTH_INTERVAL must be less than GEOSWITCH_HEALTH_TIMEOUT")

        if cls.PROXY_CONNECT_TIMEOUT >= cls.PROXY_REQUEST_TIMEOUT:
            errors.append("PROXY_CONNECT_TIMEOUT must be less than PROXY_REQUEST_TIMEOUT")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")


@lru_cache()
def get_settings() -> Settings:
    """Get validated settings instance."""
    Settings.validate()
    return Settings()
