"""Resource drivers and the registry that dispatches to them."""

from .base import BaseDriver, ProviderResult
from .registry import DriverRegistry, REQUIRED_CAPABILITIES
from .memory import InMemoryDriver
from .aws import S3BucketDriver, DynamoDBTableDriver, register_aws_drivers

__all__ = [
    'BaseDriver',
    'ProviderResult',
    'DriverRegistry',
    'REQUIRED_CAPABILITIES',
    'InMemoryDriver',
    'S3BucketDriver',
    'DynamoDBTableDriver',
    'register_aws_drivers',
]
