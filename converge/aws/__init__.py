"""AWS provider implementations."""

from .instance_client import EC2InstanceClient

__all__ = ["EC2InstanceClient"]
