"""
Discovery projections of the registry and the usage counters

Both builders are pure: they read the current state and format it.
"""

from collections.abc import Mapping
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from gateway.plugin_system.registry import RegistryService
from gateway.usage import UsageSnapshot, most_used_key


class ApiEntry(BaseModel):
    """One plugin as shown in the API listing"""

    name: str
    description: str
    endpoint: str
    category: str


class ApiListResponse(BaseModel):
    """Response model for the API listing"""

    apis: List[ApiEntry]
    config: Dict[str, Any]


class MostUsed(BaseModel):
    name: str
    category: str


class StatsResponse(BaseModel):
    """Response model for aggregate usage statistics"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_requests: int
    most_used_today: MostUsed


NOT_AVAILABLE = MostUsed(name="N/A", category="N/A")


def build_api_list(registry: RegistryService, config: Mapping, api_prefix: str = "/api") -> ApiListResponse:
    """List every registered plugin together with the static configuration."""
    prefix = api_prefix.strip("/")
    apis = [
        ApiEntry(
            name=meta["name"],
            description=meta["description"],
            endpoint=f"{prefix}{meta['endpoint']}",
            category=meta["category"],
        )
        for meta in registry.list()
    ]
    config_dict = config.to_dict() if hasattr(config, "to_dict") else dict(config)
    return ApiListResponse(apis=apis, config=config_dict)


def build_stats(snapshot: UsageSnapshot, registry: RegistryService) -> StatsResponse:
    """Total request count and the most used plugin."""
    key = most_used_key(snapshot)

    if key is None:
        most_used = NOT_AVAILABLE
    else:
        descriptor = registry.lookup_key(key)
        if descriptor is not None:
            most_used = MostUsed(name=descriptor.name, category=descriptor.category or "Unknown")
        else:
            most_used = MostUsed(name=key, category="Unknown")

    return StatsResponse(total_requests=snapshot.total_requests, most_used_today=most_used)
