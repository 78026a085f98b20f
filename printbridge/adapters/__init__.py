"""Adapter modules for external integrations."""

from .mqtt import MQTTClient, MQTTConnectionError, default_client_id

__all__ = [
    "MQTTClient",
    "MQTTConnectionError",
    "default_client_id",
]
