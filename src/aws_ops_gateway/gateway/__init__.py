"""AWS resource access on behalf of managed accounts."""

from aws_ops_gateway.gateway.operations import AVAILABLE_REGIONS, ResourceGateway

__all__ = ["AVAILABLE_REGIONS", "ResourceGateway"]
