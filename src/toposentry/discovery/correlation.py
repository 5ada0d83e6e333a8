#!/usr/bin/env python3
"""
Correlation Engine for TopoSentry

Derives cross-layer relationships from records already collected in a pass.
Matching is heuristic string containment/prefix matching and can both
over-match and under-match; the rules below are kept deliberately loose.
No remote calls are made here and no edges are deduplicated.
"""

import logging
from typing import Dict, Iterator, List, Tuple

from toposentry.common.infra_models import (
    Container,
    ContainerNetwork,
    EdgeType,
    GraphEdge,
    GraphNode,
    NodeStatus,
    NodeType,
    PortMapping,
    INTERNET_NODE_ID,
    DEFAULT_SHORT_ID_LENGTH,
    STATIC_BACKEND,
    container_node_id,
    host_port_node_id,
    network_node_id,
)

logger = logging.getLogger("Correlation")


def backend_matches_container(backend: str, container: Container,
                              short_id_length: int = DEFAULT_SHORT_ID_LENGTH) -> bool:
    """True when a proxy backend names the container or its short id"""
    if backend == STATIC_BACKEND:
        return False
    return container.name in backend or container.short_id(short_id_length) in backend


def network_has_member(network: ContainerNetwork, container: Container,
                       short_id_length: int = DEFAULT_SHORT_ID_LENGTH) -> bool:
    """True when the network lists the container by name or by short id prefix"""
    if container.name in network.containers:
        return True
    short_id = container.short_id(short_id_length)
    return any(member.startswith(short_id) for member in network.containers)


def correlate_vhosts_to_containers(backends: Dict[str, str], containers: List[Container],
                                   short_id_length: int = DEFAULT_SHORT_ID_LENGTH) -> List[GraphEdge]:
    """
    Draw proxies_to edges from vhost nodes to the containers they forward to

    Args:
        backends: vhost node id -> backend target string
        containers: Containers of the pass

    Returns:
        One edge per matching (vhost, container) pair
    """
    edges = []
    for vhost_id, backend in sorted(backends.items()):
        if backend == STATIC_BACKEND:
            continue

        for container in containers:
            if backend_matches_container(backend, container, short_id_length):
                edges.append(GraphEdge(
                    source=vhost_id,
                    target=container_node_id(container.name),
                    edge_type=EdgeType.PROXIES_TO,
                    label=backend,
                    metadata={"backend": backend}
                ))

    logger.debug(f"Correlated {len(edges)} proxy edges")
    return edges


def correlate_containers_to_networks(networks: List[ContainerNetwork], containers: List[Container],
                                     short_id_length: int = DEFAULT_SHORT_ID_LENGTH) -> List[GraphEdge]:
    """Draw connected_to edges from containers to the networks listing them"""
    edges = []
    for network in networks:
        for container in containers:
            if network_has_member(network, container, short_id_length):
                edges.append(GraphEdge(
                    source=container_node_id(container.name),
                    target=network_node_id(network.name),
                    edge_type=EdgeType.CONNECTED_TO
                ))

    logger.debug(f"Correlated {len(edges)} network membership edges")
    return edges


def host_port_node(mapping: PortMapping) -> GraphNode:
    return GraphNode(
        id=host_port_node_id(mapping.host_port),
        label=f"Port :{mapping.host_port}",
        node_type=NodeType.HOST_PORT,
        status=NodeStatus.RUNNING,
        metadata={
            "host_ip": mapping.host_ip,
            "host_port": mapping.host_port,
            "container_port": mapping.container_port,
            "protocol": mapping.protocol
        }
    )


def iter_port_mappings(containers: List[Container]) -> Iterator[Tuple[Container, PortMapping]]:
    for container in containers:
        for mapping in container.ports:
            yield container, mapping


def correlate_port_mappings(containers: List[Container]) -> Tuple[List[GraphNode], List[GraphEdge]]:
    """
    Model ingress that bypasses the reverse proxy

    Every published port becomes a HostPort node reached directly from the
    internet and mapped onto its container. A host port published by several
    bindings (IPv4 and IPv6, or tcp and udp) is emitted as a single node, but
    each binding still contributes its own direct_access and port_mapping edge.

    Returns:
        (host port nodes, direct_access and port_mapping edges)
    """
    nodes: Dict[str, GraphNode] = {}
    edges = []

    for container, mapping in iter_port_mappings(containers):
        node_id = host_port_node_id(mapping.host_port)

        if node_id not in nodes:
            nodes[node_id] = host_port_node(mapping)

        edges.append(GraphEdge(
            source=INTERNET_NODE_ID,
            target=node_id,
            edge_type=EdgeType.DIRECT_ACCESS,
            label=f":{mapping.host_port}"
        ))

        edges.append(GraphEdge(
            source=node_id,
            target=container_node_id(container.name),
            edge_type=EdgeType.PORT_MAPPING,
            label=f"→ :{mapping.container_port}",
            metadata={"protocol": mapping.protocol}
        ))

    return list(nodes.values()), edges
