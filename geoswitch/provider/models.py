"""Gluetun provider models and data structures."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from ..shared.settings import Settings


class GluetunProviderConfig(BaseModel):
    """Construction options for the gluetun exit provider."""

    network: str = Field("gluetun", description="Docker network shared by gateway and exit containers")
    image: str = Field("qmcgaw/gluetun:latest", description="Gluetun image reference")
    container_prefix: str = Field("gluetun-", description="Prefix of exit container names")
    proxy_port: int = Field(8888, description="Port of gluetun's HTTP forward proxy")
    health_interval: float = Field(1.0, description="Seconds between health polls")
    health_timeout: float = Field(60.0, description="Seconds a container has to become healthy")
    stop_timeout: int = Field(10, description="Seconds docker waits before killing a stopped container")
    docker_host: Optional[str] = Field(None, description="Docker host URL (defaults to DOCKER_HOST)")
    vpn_service_provider: str = Field("", description="Gluetun VPN_SERVICE_PROVIDER")
    openvpn_user: str = Field("", description="Gluetun OPENVPN_USER")
    openvpn_password: str = Field("", description="Gluetun OPENVPN_PASSWORD")
    labels: Dict[str, str] = Field(
        default_factory=lambda: {"managed-by": "geoswitch"},
        description="Labels put on every exit container"
    )

    @field_validator('proxy_port')
    @classmethod
    def validate_proxy_port(cls, v):
        """Validate forward proxy port range."""
        if not (1 <= v <= 65535):
            raise ValueError(f"Proxy port must be between 1 and 65535: {v}")
        return v

    @field_validator('health_interval', 'health_timeout')
    @classmethod
    def validate_positive(cls, v):
        """Validate health check timings."""
        if v <= 0:
            raise ValueError("Health check timings must be positive")
        return v

    @classmethod
    def from_settings(cls) -> "GluetunProviderConfig":
        """Build provider options from process settings."""
        return cls(
            network=Settings.NETWORK,
            image=Settings.GLUETUN_IMAGE,
            proxy_port=Settings.PROXY_PORT,
            health_interval=Settings.HEALTH_INTERVAL,
            health_timeout=Settings.HEALTH_TIMEOUT,
            stop_timeout=Settings.STOP_TIMEOUT,
            docker_host=Settings.DOCKER_HOST,
            vpn_service_provider=Settings.VPN_SERVICE_PROVIDER,
            openvpn_user=Settings.OPENVPN_USER,
            openvpn_password=Settings.OPENVPN_PASSWORD,
        )


@dataclass
class ExitRuntime:
    """Live state of one provisioned exit.

    ``handler`` stays None while the container is still being health-gated.
    """

    container_id: str
    container_name: str
    handler: Optional[Any] = None
    log_stream: Optional[Any] = None
