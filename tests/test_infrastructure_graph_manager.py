import json
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import redis

from fake_executor import FakeExecutor, WEB_ID, scenario_responses
from toposentry.common.command_executor import (
    CancellationToken,
    CollectionCancelledError,
    ExecutionError,
    GraphCollectionError,
)
from toposentry.common.infra_models import (
    EdgeType,
    GraphEdge,
    InfrastructureGraph,
    NodeStatus,
)
from toposentry.common.infrastructure_graph_manager import InfrastructureGraphManager, main


def edge_set(graph):
    return {(e.source, e.target, e.edge_type.value) for e in graph.edges}


class TestBuildGraph(unittest.TestCase):
    def make_manager(self, responses=None, **config):
        executor = FakeExecutor(scenario_responses() if responses is None else responses)
        config.setdefault("log_file", None)
        return InfrastructureGraphManager(executor=executor, config=config), executor

    def test_end_to_end_scenario(self):
        manager, _ = self.make_manager()
        graph = manager.build_graph()

        self.assertEqual(set(graph.node_ids()), {
            "internet", "nginx", "host_network", "vhost:shop",
            "container:web", "network:appnet", "hostport:8080",
        })
        self.assertEqual(edge_set(graph), {
            ("internet", "nginx", "routes_to"),
            ("host_network", "internet", "outbound"),
            ("nginx", "vhost:shop", "serves"),
            ("vhost:shop", "container:web", "proxies_to"),
            ("network:appnet", "host_network", "nat"),
            ("container:web", "network:appnet", "connected_to"),
            ("internet", "hostport:8080", "direct_access"),
            ("hostport:8080", "container:web", "port_mapping"),
        })
        self.assertEqual(len(graph.edges), 8)

    def test_node_details(self):
        manager, _ = self.make_manager()
        graph = manager.build_graph()

        nginx = graph.get_node("nginx")
        self.assertEqual(nginx.label, "Nginx 1.24.0")
        self.assertEqual(nginx.status, NodeStatus.RUNNING)

        host = graph.get_node("host_network")
        self.assertEqual(host.metadata["interface"], "ens3")

        vhost = graph.get_node("vhost:shop")
        self.assertEqual(vhost.label, "shop.example.com")
        self.assertEqual(vhost.status, NodeStatus.HEALTHY)
        self.assertEqual(vhost.metadata["backend"], "http://web:80")

        container = graph.get_node("container:web")
        self.assertEqual(container.metadata["id"], WEB_ID)
        self.assertEqual(container.status, NodeStatus.RUNNING)

        network = graph.get_node("network:appnet")
        self.assertEqual(network.status, NodeStatus.HEALTHY)
        self.assertEqual(network.metadata["subnet"], "172.18.0.0/16")

        serves = graph.edges_of_type(EdgeType.SERVES)[0]
        self.assertEqual(serves.label, "80")

    def test_summary(self):
        manager, _ = self.make_manager()
        summary = manager.build_graph().summary.to_dict()

        self.assertEqual(summary, {
            "total_containers": 1,
            "running_containers": 1,
            "total_vhosts": 1,
            "enabled_vhosts": 1,
            "nginx_status": "running",
            "total_volumes": 1,
            "total_networks": 1,
        })

    def test_volume_count_can_be_disabled(self):
        manager, executor = self.make_manager(count_volumes=False)
        self.assertEqual(manager.build_graph().summary.total_volumes, 0)
        self.assertFalse(executor.ran("docker volume ls"))

    def test_ids_unique_and_no_dangling_edges(self):
        responses = scenario_responses()
        responses["docker ps"] = (
            f"{WEB_ID}|web|nginx:alpine|running\n"
            "1111111111112222|api|api:1|running\n"
            "3333333333334444|old|api:0|exited\n"
        )
        responses["docker port web"] = "80/tcp -> 0.0.0.0:8080\n80/tcp -> [::]:8080\n"
        responses["docker port api"] = "3000/tcp -> 0.0.0.0:8080\n"
        manager, _ = self.make_manager(responses)

        graph = manager.build_graph()
        ids = graph.node_ids()

        self.assertEqual(len(ids), len(set(ids)))
        for edge in graph.edges:
            self.assertIn(edge.source, ids)
            self.assertIn(edge.target, ids)
        self.assertEqual(graph.get_node("container:old").status, NodeStatus.STOPPED)
        self.assertEqual(manager.validate_graph(graph), (True, []))

    def test_idempotent_passes(self):
        manager, _ = self.make_manager()
        first = manager.build_graph()
        second = manager.build_graph()

        self.assertEqual(
            {json.dumps(n.to_dict(), sort_keys=True) for n in first.nodes},
            {json.dumps(n.to_dict(), sort_keys=True) for n in second.nodes}
        )
        self.assertEqual(edge_set(first), edge_set(second))
        self.assertEqual(first.summary, second.summary)

    def test_static_vhost_has_no_proxy_edge(self):
        responses = scenario_responses()
        responses["cat /etc/nginx/sites-available/shop"] = "listen 80;\nserver_name web.example.com;\nroot /srv/web;\n"
        manager, _ = self.make_manager(responses)

        graph = manager.build_graph()
        self.assertEqual(graph.edges_of_type(EdgeType.PROXIES_TO), [])

    def test_disabled_vhost_is_stopped(self):
        responses = scenario_responses()
        responses["ls -1 /etc/nginx/sites-enabled/"] = "default\n"
        manager, _ = self.make_manager(responses)

        graph = manager.build_graph()
        self.assertEqual(graph.get_node("vhost:shop").status, NodeStatus.STOPPED)
        self.assertEqual(graph.summary.enabled_vhosts, 0)

    def test_degraded_probes_keep_the_graph(self):
        responses = scenario_responses()
        for fragment in ("systemctl is-active nginx", "nginx -v", "ip route", "docker port web", "docker volume ls"):
            responses[fragment] = ExecutionError("failed", 1)
        manager, _ = self.make_manager(responses)

        graph = manager.build_graph()

        self.assertEqual(graph.get_node("nginx").status, NodeStatus.STOPPED)
        self.assertEqual(graph.get_node("nginx").label, "Nginx (unknown version)")
        self.assertEqual(graph.get_node("host_network").metadata["interface"], "eth0")
        self.assertIsNone(graph.get_node("hostport:8080"))
        self.assertEqual(graph.summary.nginx_status, "stopped")
        self.assertEqual(graph.summary.total_volumes, 0)

    def test_no_executor_is_fatal(self):
        manager = InfrastructureGraphManager(config={"log_file": None})
        with self.assertRaises(GraphCollectionError) as ctx:
            manager.build_graph()
        self.assertEqual(str(ctx.exception), "could not build graph: not connected to server")

    def test_disconnected_executor_is_fatal(self):
        manager = InfrastructureGraphManager(executor=FakeExecutor(connected=False), config={"log_file": None})
        with self.assertRaises(GraphCollectionError):
            manager.build_graph()

    def test_container_listing_failure_is_fatal(self):
        responses = scenario_responses()
        responses["docker ps"] = ExecutionError("docker: command not found", 127)
        manager, _ = self.make_manager(responses)

        with self.assertRaises(GraphCollectionError) as ctx:
            manager.build_graph()
        self.assertIn("list containers", str(ctx.exception))

    def test_network_listing_failure_is_fatal(self):
        responses = scenario_responses()
        responses["docker network ls"] = ExecutionError("permission denied", 1)
        manager, _ = self.make_manager(responses)

        with self.assertRaises(GraphCollectionError):
            manager.build_graph()

    def test_cancelled_pass_is_fatal(self):
        manager, executor = self.make_manager()
        token = CancellationToken()
        token.cancel()

        with self.assertRaises(CollectionCancelledError):
            manager.build_graph(cancel_token=token)
        self.assertEqual(executor.commands, [])

    def test_cancel_during_pass(self):
        manager, executor = self.make_manager()
        token = CancellationToken()
        original = executor.execute

        def cancel_after_containers(command, timeout=None, cancel_token=None):
            output = original(command, timeout, cancel_token)
            if command.startswith("docker ps"):
                token.cancel()
            return output

        executor.execute = cancel_after_containers

        with self.assertRaises(CollectionCancelledError):
            manager.build_graph(cancel_token=token)
        self.assertFalse(executor.ran("docker network ls"))

    def test_passes_are_serialized(self):
        manager, executor = self.make_manager()
        active = []
        overlaps = []
        original = executor.execute

        def tracking_execute(command, timeout=None, cancel_token=None):
            active.append(threading.get_ident())
            if len(set(active)) > 1:
                overlaps.append(command)
            try:
                return original(command, timeout, cancel_token)
            finally:
                active.pop()

        executor.execute = tracking_execute
        threads = [threading.Thread(target=manager.build_graph) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(overlaps, [])

    def test_timeout_excludes_wait_for_running_pass(self):
        manager, _ = self.make_manager()
        outcome = {}

        def queued_pass():
            try:
                outcome["graph"] = manager.build_graph(timeout=0.2)
            except GraphCollectionError as e:
                outcome["error"] = e

        with manager.collection_lock:
            thread = threading.Thread(target=queued_pass)
            thread.start()
            time.sleep(0.4)
        thread.join()

        self.assertNotIn("error", outcome)
        self.assertEqual(len(outcome["graph"].nodes), 7)


class TestGraphTools(unittest.TestCase):
    def setUp(self):
        self.manager = InfrastructureGraphManager(
            executor=FakeExecutor(scenario_responses()),
            config={"log_file": None}
        )
        self.graph = self.manager.build_graph()

    def test_validate_detects_dangling_edges(self):
        broken = InfrastructureGraph(
            nodes=list(self.graph.nodes),
            edges=self.graph.edges + [GraphEdge("vhost:shop", "container:ghost", EdgeType.PROXIES_TO)],
            summary=self.graph.summary
        )
        is_valid, errors = self.manager.validate_graph(broken)

        self.assertFalse(is_valid)
        self.assertTrue(any("container:ghost" in error for error in errors))

    def test_validate_detects_duplicate_ids(self):
        broken = InfrastructureGraph(
            nodes=self.graph.nodes + [self.graph.nodes[0]],
            edges=list(self.graph.edges),
            summary=self.graph.summary
        )
        is_valid, errors = self.manager.validate_graph(broken)

        self.assertFalse(is_valid)
        self.assertIn("Duplicate node id internet (2 nodes)", errors)

    def test_statistics(self):
        stats = self.manager.compute_graph_statistics(self.graph)

        self.assertEqual(stats["node_count"], 7)
        self.assertEqual(stats["edge_count"], 8)
        self.assertEqual(stats["connected_components"], 1)
        self.assertEqual(stats["nodes_by_type"]["container"], 1)
        self.assertEqual(stats["edges_by_type"]["proxies_to"], 1)
        self.assertEqual(stats["isolated_nodes"], [])
        self.assertEqual(stats["unreachable_from_internet"], [])

    def test_export(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "out" / "graph.json"
            self.manager.export_graph(self.graph, path)

            with open(path) as f:
                data = json.load(f)

        self.assertEqual(data, self.graph.to_dict())
        self.assertEqual(data["nodes"][0]["node_type"], "internet")

    def test_publish_without_redis(self):
        self.assertFalse(self.manager.publish_graph(self.graph))

    @patch("toposentry.common.infrastructure_graph_manager.redis.Redis")
    def test_publish_to_redis(self, redis_cls):
        client = MagicMock()
        redis_cls.return_value = client
        manager = InfrastructureGraphManager(
            executor=FakeExecutor(scenario_responses()),
            config={"log_file": None, "redis_enabled": True, "redis_namespace": "ops"}
        )

        self.assertTrue(manager.publish_graph(self.graph))

        key, payload = client.set.call_args[0]
        self.assertEqual(key, "ops:infrastructure_graph")
        self.assertEqual(json.loads(payload), self.graph.to_dict())
        channel, message = client.publish.call_args[0]
        self.assertEqual(channel, "ops:topology_updates")
        self.assertEqual(json.loads(message)["type"], "infrastructure_graph_updated")

    @patch("toposentry.common.infrastructure_graph_manager.redis.Redis")
    def test_unreachable_redis_disables_publishing(self, redis_cls):
        redis_cls.return_value.ping.side_effect = redis.ConnectionError("refused")
        manager = InfrastructureGraphManager(
            executor=FakeExecutor(scenario_responses()),
            config={"log_file": None, "redis_enabled": True}
        )

        self.assertIsNone(manager.redis_client)
        self.assertFalse(manager.publish_graph(self.graph))


class TestCommandLine(unittest.TestCase):
    @patch("toposentry.common.infrastructure_graph_manager.configure_logging")
    @patch("toposentry.common.infrastructure_graph_manager.LocalCommandExecutor")
    def test_local_run_exports_graph(self, executor_cls, _):
        executor_cls.return_value = FakeExecutor(scenario_responses())

        with tempfile.TemporaryDirectory() as tmp:
            output = Path(tmp) / "graph.json"
            self.assertEqual(main(["--local", "--output", str(output)]), 0)
            with open(output) as f:
                data = json.load(f)

        self.assertEqual(data["summary"]["total_containers"], 1)

    @patch("toposentry.common.infrastructure_graph_manager.configure_logging")
    @patch("toposentry.common.infrastructure_graph_manager.LocalCommandExecutor")
    def test_fatal_failure_exit_code(self, executor_cls, _):
        responses = scenario_responses()
        responses["docker ps"] = ExecutionError("daemon down", 1)
        executor_cls.return_value = FakeExecutor(responses)

        self.assertEqual(main(["--local"]), 1)

    def test_create_config(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "toposentry.yaml"
            self.assertEqual(main(["--create-config", str(path)]), 0)
            self.assertTrue(path.exists())


if __name__ == "__main__":
    unittest.main()
