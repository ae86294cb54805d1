############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# fleet_config.py: Fleet file loading and validation
#
############################################################

"""Load the fleet definition (nodes, configured backends, fallbacks).

Any problem with the file is a ``ConfigInvalid`` naming the offending
entry; the service refuses to start on it.
"""

import ipaddress
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from fleetrouter.core.routing.catalog import remote_fallback
from fleetrouter.core.schemas import FleetFile, NodeEntry
from fleetrouter.core.telemetry.models import (
    BackendKind,
    BackendRole,
    ModelBackend,
    Node,
    NodeCapabilities,
)
from fleetrouter.errors import ConfigInvalid
from fleetrouter.logging_config import get_logger
from fleetrouter.settings import Settings, get_settings

logger = get_logger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

LOCAL_ADDRESSES = ("localhost", "127.0.0.1", "::1")


@dataclass
class FleetDefinition:
    """Validated fleet definition ready for the registry and router."""

    nodes: List[Node] = field(default_factory=list)
    backends: List[ModelBackend] = field(default_factory=list)
    fallbacks: List[ModelBackend] = field(default_factory=list)
    lan_networks: List[IPNetwork] = field(default_factory=list)


def parse_lan_ranges(ranges: List[str]) -> List[IPNetwork]:
    networks = []
    for cidr in ranges:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as e:
            raise ConfigInvalid(f"invalid LAN range: {e}", entry=cidr) from e
    return networks


def default_fallback(settings: Settings) -> ModelBackend:
    return remote_fallback(settings.remote_fallback_model)


def _entry_label(raw: Dict[str, Any], loc: tuple) -> Optional[str]:
    """Best human label for the entry a validation error points at."""
    if len(loc) >= 2 and isinstance(loc[1], int):
        section = raw.get(loc[0])
        if isinstance(section, list) and loc[1] < len(section):
            item = section[loc[1]]
            if isinstance(item, dict):
                label = item.get("name") or item.get("id") or item.get("model")
                if label:
                    return f"{loc[0]}[{loc[1]}] {label}"
            return f"{loc[0]}[{loc[1]}]"
    return ".".join(str(part) for part in loc) or None


def _is_local(entry: NodeEntry, settings: Settings) -> bool:
    if entry.local:
        return True
    if settings.local_node_name and entry.name == settings.local_node_name:
        return True
    return entry.address in LOCAL_ADDRESSES


def build_definition(raw: Dict[str, Any], settings: Optional[Settings] = None) -> FleetDefinition:
    """Validate a raw fleet document and build the fleet definition."""
    settings = settings or get_settings()

    if not isinstance(raw, dict):
        raise ConfigInvalid("fleet file must contain a JSON object")

    try:
        fleet = FleetFile.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        raise ConfigInvalid(
            f"{first['msg']}",
            entry=_entry_label(raw, tuple(first["loc"])),
        ) from e

    definition = FleetDefinition()

    seen = set()
    for entry in fleet.nodes:
        if entry.name in seen:
            raise ConfigInvalid("duplicate node name", entry=entry.name)
        seen.add(entry.name)

        capabilities = (
            entry.capabilities.to_capabilities()
            if entry.capabilities
            else NodeCapabilities()
        )
        definition.nodes.append(
            Node(
                name=entry.name,
                address=entry.address,
                port=entry.port or settings.agent_port,
                role=entry.role,
                capabilities=capabilities,
                priority=entry.priority,
                lan=entry.lan,
                capability_url=entry.capability_url,
                is_local=_is_local(entry, settings),
            )
        )

    if sum(1 for n in definition.nodes if n.is_local) > 1:
        raise ConfigInvalid(
            "more than one node is marked local",
            entry=", ".join(n.name for n in definition.nodes if n.is_local),
        )

    backend_ids = set()
    for entry in fleet.backends:
        if entry.node not in seen:
            raise ConfigInvalid("backend references an unknown node", entry=entry.node)
        backend_id = entry.id or f"{entry.kind.value.lower()}:{entry.node}:{entry.model}"
        if backend_id in backend_ids:
            raise ConfigInvalid("duplicate backend", entry=backend_id)
        backend_ids.add(backend_id)
        definition.backends.append(
            ModelBackend(
                id=backend_id,
                kind=entry.kind,
                model=entry.model,
                node_name=entry.node,
                role=BackendRole(entry.role),
                tokens_per_sec=entry.tokens_per_sec,
                cost_tier=entry.cost_tier,
                priority=entry.priority,
                endpoint=entry.endpoint,
            )
        )

    for entry in fleet.remote_fallbacks:
        backend_id = entry.id or f"remote:{entry.model}"
        if backend_id in backend_ids:
            raise ConfigInvalid("duplicate backend", entry=backend_id)
        backend_ids.add(backend_id)
        definition.fallbacks.append(
            ModelBackend(
                id=backend_id,
                kind=BackendKind.REMOTE_API,
                model=entry.model,
                role=BackendRole.FALLBACK,
                cost_tier=entry.cost_tier,
                priority=entry.priority,
                endpoint=entry.endpoint,
            )
        )
    if not definition.fallbacks:
        definition.fallbacks.append(default_fallback(settings))

    ranges = fleet.lan_ranges if fleet.lan_ranges is not None else settings.lan_ranges
    definition.lan_networks = parse_lan_ranges(ranges)

    return definition


def load_fleet_file(path: Union[str, Path], settings: Optional[Settings] = None) -> FleetDefinition:
    """Read and validate a JSON fleet file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigInvalid(f"cannot read fleet file: {e.strerror}", entry=str(path)) from e

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigInvalid(f"malformed JSON at line {e.lineno}: {e.msg}", entry=str(path)) from e

    definition = build_definition(raw, settings)
    logger.info(
        "fleet_file_loaded",
        path=str(path),
        nodes=len(definition.nodes),
        backends=len(definition.backends),
        fallbacks=len(definition.fallbacks),
    )
    return definition
