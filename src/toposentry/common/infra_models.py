#!/usr/bin/env python3
"""
Infrastructure Graph Models for TopoSentry

Typed records produced by the fact extractors and the node/edge graph
assembled from them. Every object here is built fresh for one collection
pass and discarded afterwards.
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

# Fixed node ids
INTERNET_NODE_ID = "internet"
REVERSE_PROXY_NODE_ID = "nginx"
HOST_NETWORK_NODE_ID = "host_network"

# Backend value for vhosts that serve files instead of proxying
STATIC_BACKEND = "static"

DEFAULT_LISTEN_PORT = "80"
DEFAULT_SHORT_ID_LENGTH = 12


class NodeType(Enum):
    """Node types of the infrastructure graph (values are the wire format)"""
    INTERNET = "internet"
    REVERSE_PROXY = "nginx"
    VIRTUAL_HOST = "vhost"
    HOST_PORT = "hostport"
    CONTAINER = "container"
    CONTAINER_NETWORK = "dockernetwork"
    HOST_NETWORK = "hostnetwork"


class NodeStatus(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class EdgeType(Enum):
    ROUTES_TO = "routes_to"
    OUTBOUND = "outbound"
    SERVES = "serves"
    PROXIES_TO = "proxies_to"
    NAT = "nat"
    CONNECTED_TO = "connected_to"
    DIRECT_ACCESS = "direct_access"
    PORT_MAPPING = "port_mapping"


def vhost_node_id(name: str) -> str:
    return f"vhost:{name}"


def container_node_id(name: str) -> str:
    return f"container:{name}"


def network_node_id(name: str) -> str:
    return f"network:{name}"


def host_port_node_id(port: str) -> str:
    return f"hostport:{port}"


@dataclass
class PortMapping:
    """A host port published by one container"""
    host_ip: str
    host_port: str
    container_port: str
    protocol: str = "tcp"


@dataclass
class VirtualHost:
    """An nginx site configuration"""
    name: str
    enabled: bool
    server_name: str
    listen_port: str = DEFAULT_LISTEN_PORT
    ssl_enabled: bool = False
    root_path: str = ""
    backend: str = STATIC_BACKEND

    @property
    def proxies(self) -> bool:
        return self.backend != STATIC_BACKEND


@dataclass
class Container:
    """A container as reported by the runtime's process listing"""
    id: str
    name: str
    image: str
    state: str
    # Resource usage is not sampled on the graph path
    cpu_percent: float = 0.0
    memory_usage: int = 0
    memory_limit: int = 0
    ports: List[PortMapping] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return self.state == "running"

    def short_id(self, length: int = DEFAULT_SHORT_ID_LENGTH) -> str:
        """Leading characters of the id; the whole id when it is shorter"""
        return self.id[:length]


@dataclass
class ContainerNetwork:
    """A container network and the members the runtime reports for it"""
    id: str
    name: str
    driver: str
    scope: str
    subnet: Optional[str] = None
    containers: List[str] = field(default_factory=list)


@dataclass
class GraphNode:
    id: str
    label: str
    node_type: NodeType
    status: NodeStatus
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "node_type": self.node_type.value,
            "status": self.status.value,
            "metadata": self.metadata
        }


@dataclass
class GraphEdge:
    """Directed edge; several edges may join the same pair of nodes"""
    source: str
    target: str
    edge_type: EdgeType
    label: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "edge_type": self.edge_type.value,
            "label": self.label,
            "metadata": self.metadata
        }


@dataclass
class InfraSummary:
    total_containers: int = 0
    running_containers: int = 0
    total_vhosts: int = 0
    enabled_vhosts: int = 0
    nginx_status: str = "stopped"
    total_volumes: int = 0
    total_networks: int = 0

    @classmethod
    def from_records(cls, containers: List[Container], vhosts: List[VirtualHost],
                     nginx_running: bool, networks: List[ContainerNetwork],
                     volume_count: int = 0) -> 'InfraSummary':
        """Reduce the records of one pass into summary counts"""
        return cls(
            total_containers=len(containers),
            running_containers=sum(1 for c in containers if c.is_running),
            total_vhosts=len(vhosts),
            enabled_vhosts=sum(1 for v in vhosts if v.enabled),
            nginx_status="running" if nginx_running else "stopped",
            total_volumes=volume_count,
            total_networks=len(networks)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_containers": self.total_containers,
            "running_containers": self.running_containers,
            "total_vhosts": self.total_vhosts,
            "enabled_vhosts": self.enabled_vhosts,
            "nginx_status": self.nginx_status,
            "total_volumes": self.total_volumes,
            "total_networks": self.total_networks
        }


@dataclass
class InfrastructureGraph:
    """One snapshot of the host topology"""
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)
    summary: InfraSummary = field(default_factory=InfraSummary)

    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def edges_of_type(self, edge_type: EdgeType) -> List[GraphEdge]:
        return [edge for edge in self.edges if edge.edge_type == edge_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "summary": self.summary.to_dict()
        }
