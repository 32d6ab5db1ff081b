"""Exit handler providers."""

# base must load first: the proxy package imports it while this package initializes
from .base import ExitHandler, ExitHandlerProvider
from .models import ExitRuntime, GluetunProviderConfig
from .static import DirectProvider, ProviderRouter, StaticProvider
from .gluetun import ContainerLogStream, GluetunProvider

__all__ = [
    'ExitHandler',
    'ExitHandlerProvider',
    'ExitRuntime',
    'GluetunProviderConfig',
    'DirectProvider',
    'ProviderRouter',
    'StaticProvider',
    'ContainerLogStream',
    'GluetunProvider',
]
