#!/usr/bin/env python3
"""
Infrastructure Graph Manager for TopoSentry

This module reconstructs a snapshot of a managed host's networking and
container topology: internet ingress, the nginx reverse proxy and its
virtual hosts, containers, container networks and directly published ports.
The result is a node/edge graph with per-node status and summary counts,
ready to be served to an operations dashboard.

A collection pass is all-or-nothing: a missing command channel or a failed
container/network inventory aborts the pass with a GraphCollectionError,
while individual probes that fail degrade to default values.
"""

import sys
import json
import time
import logging
import argparse
import threading
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional, Any, Tuple, Union

import redis
import networkx as nx

from toposentry.common.command_executor import (
    CommandExecutor,
    LocalCommandExecutor,
    SSHCommandExecutor,
    ExecutionError,
    GraphCollectionError,
    CancellationToken,
)
from toposentry.common.configuration_manager import (
    ConfigurationError,
    load_configuration,
    validate_against_schema,
    create_default_config,
)
from toposentry.common.infra_models import (
    EdgeType,
    GraphEdge,
    GraphNode,
    InfraSummary,
    InfrastructureGraph,
    NodeStatus,
    NodeType,
    HOST_NETWORK_NODE_ID,
    INTERNET_NODE_ID,
    REVERSE_PROXY_NODE_ID,
    container_node_id,
    network_node_id,
    vhost_node_id,
)
from toposentry.discovery.fact_extractors import FactExtractor
from toposentry.discovery.correlation import (
    correlate_containers_to_networks,
    correlate_port_mappings,
    correlate_vhosts_to_containers,
)

logger = logging.getLogger("InfraGraphManager")

# Wire format of the graph handed to the dashboard
GRAPH_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["nodes", "edges", "summary"],
    "properties": {
        "nodes": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "label", "node_type", "status", "metadata"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "label": {"type": "string"},
                    "node_type": {"enum": [t.value for t in NodeType]},
                    "status": {"enum": [s.value for s in NodeStatus]},
                    "metadata": {"type": "object"}
                }
            }
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["source", "target", "edge_type", "label", "metadata"],
                "properties": {
                    "source": {"type": "string"},
                    "target": {"type": "string"},
                    "edge_type": {"enum": [t.value for t in EdgeType]},
                    "label": {"type": ["string", "null"]},
                    "metadata": {"type": ["object", "null"]}
                }
            }
        },
        "summary": {
            "type": "object",
            "required": [
                "total_containers", "running_containers", "total_vhosts",
                "enabled_vhosts", "nginx_status", "total_volumes", "total_networks"
            ],
            "properties": {
                "total_containers": {"type": "integer", "minimum": 0},
                "running_containers": {"type": "integer", "minimum": 0},
                "total_vhosts": {"type": "integer", "minimum": 0},
                "enabled_vhosts": {"type": "integer", "minimum": 0},
                "nginx_status": {"enum": ["running", "stopped"]},
                "total_volumes": {"type": "integer", "minimum": 0},
                "total_networks": {"type": "integer", "minimum": 0}
            }
        }
    }
}


class _GraphBuilder:
    """Append-only node and edge accumulation for one pass"""

    def __init__(self):
        self.nodes: List[GraphNode] = []
        self.edges: List[GraphEdge] = []
        self._ids = set()

    def add_node(self, node: GraphNode) -> bool:
        if node.id in self._ids:
            logger.warning(f"Node {node.id} already present, keeping the first one")
            return False
        self._ids.add(node.id)
        self.nodes.append(node)
        return True

    def add_edge(self, edge: GraphEdge):
        self.edges.append(edge)

    def add_edges(self, edges: List[GraphEdge]):
        self.edges.extend(edges)


class InfrastructureGraphManager:
    """
    Builds infrastructure graphs of a managed host.

    Features:
    - One-shot collection passes over a shared command channel
    - Heuristic correlation of vhosts, containers, networks and ports
    - Structural validation and statistics with networkx
    - Optional publication of snapshots to Redis
    """

    def __init__(self, executor: Optional[CommandExecutor] = None,
                 config_path: Optional[Union[str, Path]] = None,
                 config: Optional[Dict[str, Any]] = None):
        """
        Initialize the graph manager

        Args:
            executor: Command channel to the managed host
            config_path: Path to configuration file
            config: Values overriding the file configuration
        """
        self.executor = executor
        self.config = load_configuration(config_path, config)

        self.short_id_length = self.config.get("short_id_length", 12)
        self.collection_timeout = self.config.get("collection_timeout")

        # Passes hold the command channel exclusively
        self.collection_lock = threading.Lock()

        self.redis_client = None
        if self.config.get("redis_enabled", False):
            self.redis_client = self._init_redis_client()

        logger.info("Infrastructure Graph Manager initialized")

    def _init_redis_client(self) -> Optional[redis.Redis]:
        """Initialize Redis client"""
        try:
            client = redis.Redis(
                host=self.config.get("redis_host", "localhost"),
                port=self.config.get("redis_port", 6379),
                password=self.config.get("redis_password"),
                db=self.config.get("redis_db", 0),
                decode_responses=True
            )

            # Test connection
            client.ping()
            logger.info("Connected to Redis")
            return client

        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            return None

    def close(self):
        if self.redis_client:
            self.redis_client.close()
        if self.executor:
            self.executor.close()

    def build_graph(self, timeout: Optional[float] = None,
                    cancel_token: Optional[CancellationToken] = None) -> InfrastructureGraph:
        """
        Run one collection pass and assemble the infrastructure graph

        Args:
            timeout: Seconds allowed for the whole pass, counted once any
                earlier pass has finished; defaults to collection_timeout
            cancel_token: Token the caller may cancel to abort the pass

        Returns:
            The assembled graph

        Raises:
            GraphCollectionError: if the pass cannot produce a trustworthy graph
        """
        if self.executor is None or not self.executor.is_connected():
            logger.error("Cannot build graph: not connected to server")
            raise GraphCollectionError("not connected to server")

        with self.collection_lock:
            # The pass deadline starts once the command channel is ours
            if cancel_token is None:
                cancel_token = CancellationToken(timeout if timeout is not None else self.collection_timeout)

            start_time = time.time()
            logger.info("Starting infrastructure graph collection")

            try:
                graph = self._collect(FactExtractor(self.executor, self.config, cancel_token))
            except GraphCollectionError as e:
                logger.error(str(e))
                raise

            is_valid, errors = self.validate_graph(graph)
            if not is_valid:
                for error in errors:
                    logger.error(f"Graph validation: {error}")

            logger.info(
                f"Infrastructure graph collected in {time.time() - start_time:.2f}s: "
                f"{len(graph.nodes)} nodes, {len(graph.edges)} edges"
            )
            return graph

    def _collect(self, extractor: FactExtractor) -> InfrastructureGraph:
        """Assemble the graph layer by layer"""
        builder = _GraphBuilder()

        # Layer 1: internet
        builder.add_node(GraphNode(
            id=INTERNET_NODE_ID,
            label="Internet",
            node_type=NodeType.INTERNET,
            status=NodeStatus.HEALTHY,
            metadata={"description": "External network"}
        ))

        # Layer 2: reverse proxy
        nginx_running, nginx_version = extractor.check_nginx()
        builder.add_node(GraphNode(
            id=REVERSE_PROXY_NODE_ID,
            label=f"Nginx {nginx_version}" if nginx_version else "Nginx (unknown version)",
            node_type=NodeType.REVERSE_PROXY,
            status=NodeStatus.RUNNING if nginx_running else NodeStatus.STOPPED,
            metadata={
                "version": nginx_version,
                "running": nginx_running
            }
        ))
        builder.add_edge(GraphEdge(
            source=INTERNET_NODE_ID,
            target=REVERSE_PROXY_NODE_ID,
            edge_type=EdgeType.ROUTES_TO,
            label="80/443"
        ))

        # Layer 3: host network
        interface = extractor.get_host_interface()
        builder.add_node(GraphNode(
            id=HOST_NETWORK_NODE_ID,
            label=f"Host ({interface})",
            node_type=NodeType.HOST_NETWORK,
            status=NodeStatus.RUNNING,
            metadata={
                "interface": interface,
                "type": "host"
            }
        ))
        builder.add_edge(GraphEdge(
            source=HOST_NETWORK_NODE_ID,
            target=INTERNET_NODE_ID,
            edge_type=EdgeType.OUTBOUND,
            label="NAT"
        ))

        # Layer 4: virtual hosts
        vhosts = extractor.get_vhosts()
        backends: Dict[str, str] = {}

        for vhost in vhosts:
            vhost_id = vhost_node_id(vhost.name)
            builder.add_node(GraphNode(
                id=vhost_id,
                label=vhost.server_name,
                node_type=NodeType.VIRTUAL_HOST,
                status=NodeStatus.HEALTHY if vhost.enabled else NodeStatus.STOPPED,
                metadata={
                    "name": vhost.name,
                    "server_name": vhost.server_name,
                    "enabled": vhost.enabled,
                    "ssl": vhost.ssl_enabled,
                    "listen_port": vhost.listen_port,
                    "root_path": vhost.root_path,
                    "backend": vhost.backend
                }
            ))
            builder.add_edge(GraphEdge(
                source=REVERSE_PROXY_NODE_ID,
                target=vhost_id,
                edge_type=EdgeType.SERVES,
                label=vhost.listen_port
            ))
            backends[vhost_id] = vhost.backend

        # Layer 5: containers
        containers = extractor.get_containers()

        for container in containers:
            builder.add_node(GraphNode(
                id=container_node_id(container.name),
                label=container.name,
                node_type=NodeType.CONTAINER,
                status=NodeStatus.RUNNING if container.is_running else NodeStatus.STOPPED,
                metadata={
                    "id": container.id,
                    "image": container.image,
                    "state": container.state
                }
            ))

        builder.add_edges(correlate_vhosts_to_containers(backends, containers, self.short_id_length))

        # Layer 6: container networks
        networks = extractor.get_networks()

        for network in networks:
            network_id = network_node_id(network.name)
            builder.add_node(GraphNode(
                id=network_id,
                label=f"{network.name} ({network.driver})",
                node_type=NodeType.CONTAINER_NETWORK,
                status=NodeStatus.HEALTHY,
                metadata={
                    "id": network.id,
                    "driver": network.driver,
                    "scope": network.scope,
                    "subnet": network.subnet,
                    "containers": list(network.containers),
                    "container_count": len(network.containers)
                }
            ))
            builder.add_edge(GraphEdge(
                source=network_id,
                target=HOST_NETWORK_NODE_ID,
                edge_type=EdgeType.NAT,
                label="masquerade"
            ))

        builder.add_edges(correlate_containers_to_networks(networks, containers, self.short_id_length))

        # Layer 7: ports published straight to the host
        for container in containers:
            container.ports = extractor.get_container_ports(container.name)

        port_nodes, port_edges = correlate_port_mappings(containers)
        for node in port_nodes:
            builder.add_node(node)
        builder.add_edges(port_edges)

        # Layer 8: summary
        volume_count = extractor.count_volumes() if self.config.get("count_volumes", True) else 0
        summary = InfraSummary.from_records(containers, vhosts, nginx_running, networks, volume_count)

        return InfrastructureGraph(nodes=builder.nodes, edges=builder.edges, summary=summary)

    def to_networkx(self, graph: InfrastructureGraph) -> nx.MultiDiGraph:
        """Load the graph into a networkx multigraph; dangling edges are dropped"""
        g = nx.MultiDiGraph()
        for node in graph.nodes:
            g.add_node(node.id, node_type=node.node_type.value, status=node.status.value)

        for edge in graph.edges:
            if edge.source in g and edge.target in g:
                g.add_edge(edge.source, edge.target, edge_type=edge.edge_type.value, label=edge.label)

        return g

    def validate_graph(self, graph: InfrastructureGraph) -> Tuple[bool, List[str]]:
        """
        Check structural invariants and the wire format of a graph

        Args:
            graph: Graph to validate

        Returns:
            Tuple of (is_valid, error_messages)
        """
        errors = []

        counts = Counter(graph.node_ids())
        for node_id, count in sorted(counts.items()):
            if count > 1:
                errors.append(f"Duplicate node id {node_id} ({count} nodes)")

        g = self.to_networkx(graph)
        for edge in graph.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in g:
                    errors.append(
                        f"Edge {edge.source} -> {edge.target} ({edge.edge_type.value}) "
                        f"references unknown node {endpoint}"
                    )

        _, schema_errors = validate_against_schema(graph.to_dict(), GRAPH_SCHEMA)
        errors.extend(schema_errors)

        return not errors, errors

    def compute_graph_statistics(self, graph: InfrastructureGraph) -> Dict[str, Any]:
        """
        Compute statistics about an infrastructure graph

        Returns:
            Dictionary with statistics
        """
        g = self.to_networkx(graph)

        reachable = set()
        if INTERNET_NODE_ID in g:
            reachable = nx.descendants(g, INTERNET_NODE_ID) | {INTERNET_NODE_ID}

        return {
            "node_count": g.number_of_nodes(),
            "edge_count": g.number_of_edges(),
            "nodes_by_type": dict(Counter(node.node_type.value for node in graph.nodes)),
            "edges_by_type": dict(Counter(edge.edge_type.value for edge in graph.edges)),
            "connected_components": nx.number_weakly_connected_components(g) if g.number_of_nodes() else 0,
            "density": nx.density(g),
            "isolated_nodes": sorted(nx.isolates(g)),
            "unreachable_from_internet": sorted(n for n in g.nodes if n not in reachable)
        }

    def export_graph(self, graph: InfrastructureGraph, output_path: Union[str, Path]):
        """Write the graph as JSON"""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            json.dump(graph.to_dict(), f, indent=2)

        logger.info(f"Exported infrastructure graph to {output_path}")

    def publish_graph(self, graph: InfrastructureGraph) -> bool:
        """
        Store the snapshot in Redis and notify subscribers

        Returns:
            True if the snapshot was published, False otherwise
        """
        if not self.redis_client:
            logger.warning("Redis is not available, graph not published")
            return False

        namespace = self.config.get("redis_namespace", "toposentry")
        try:
            self.redis_client.set(f"{namespace}:infrastructure_graph", json.dumps(graph.to_dict()))
            self.redis_client.publish(
                f"{namespace}:topology_updates",
                json.dumps({
                    "type": "infrastructure_graph_updated",
                    "timestamp": time.time(),
                    "summary": graph.summary.to_dict()
                })
            )
            logger.info("Published infrastructure graph to Redis")
            return True

        except redis.RedisError as e:
            logger.error(f"Error publishing infrastructure graph to Redis: {e}")
            return False

    @staticmethod
    def create_default_config(output_path: Union[str, Path]):
        create_default_config(output_path)


def configure_logging(config: Dict[str, Any]):
    """Send log records to the configured file and to the console"""
    handlers = [logging.StreamHandler()]
    if config.get("log_file"):
        handlers.append(logging.FileHandler(config["log_file"]))

    logging.basicConfig(
        level=getattr(logging, config.get("log_level", "INFO")),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def create_executor(args: argparse.Namespace, config: Dict[str, Any]) -> CommandExecutor:
    """Build the command channel selected on the command line"""
    if args.ssh_host:
        return SSHCommandExecutor.connect(
            host=args.ssh_host,
            port=args.ssh_port,
            username=args.ssh_user,
            key_file=args.ssh_key,
            timeout=float(config.get("command_timeout", 30))
        )
    return LocalCommandExecutor()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="TopoSentry Infrastructure Graph")
    parser.add_argument("--config", help="Path to configuration file")
    parser.add_argument("--create-config", help="Create default configuration file")
    parser.add_argument("--local", action="store_true", help="Inspect the local host")
    parser.add_argument("--ssh-host", help="Inspect a remote host over SSH")
    parser.add_argument("--ssh-port", type=int, default=22, help="SSH port")
    parser.add_argument("--ssh-user", help="SSH user name")
    parser.add_argument("--ssh-key", help="SSH private key file")
    parser.add_argument("--timeout", type=float, help="Seconds allowed for the whole collection")
    parser.add_argument("--output", help="Write the graph to a JSON file")
    parser.add_argument("--stats", action="store_true", help="Show graph statistics")
    parser.add_argument("--validate", action="store_true", help="Validate the collected graph")
    parser.add_argument("--publish", action="store_true", help="Publish the graph to Redis")
    args = parser.parse_args(argv)

    # Create default configuration file if requested
    if args.create_config:
        InfrastructureGraphManager.create_default_config(args.create_config)
        print(f"Created default configuration at {args.create_config}")
        return 0

    if not args.local and not args.ssh_host:
        parser.error("one of --local or --ssh-host is required")

    try:
        config = load_configuration(args.config)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_logging(config)

    try:
        executor = create_executor(args, config)
    except ExecutionError as e:
        print(f"could not build graph: {e.message}", file=sys.stderr)
        return 1

    manager = InfrastructureGraphManager(executor=executor, config=config)

    try:
        graph = manager.build_graph(timeout=args.timeout)

        if args.output:
            manager.export_graph(graph, args.output)
            print(f"Exported infrastructure graph to {args.output}")
        else:
            print(json.dumps(graph.to_dict(), indent=2))

        if args.stats:
            print(json.dumps(manager.compute_graph_statistics(graph), indent=2))

        if args.validate:
            is_valid, errors = manager.validate_graph(graph)
            print("Graph is valid" if is_valid else "Graph is invalid:")
            for error in errors:
                print(f"  {error}")

        if args.publish and not manager.publish_graph(graph):
            return 1

        return 0

    except GraphCollectionError as e:
        print(str(e), file=sys.stderr)
        return 1

    finally:
        manager.close()


if __name__ == "__main__":
    sys.exit(main())
