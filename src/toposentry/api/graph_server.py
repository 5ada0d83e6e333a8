#!/usr/bin/env python3
"""
Graph Server for TopoSentry

Serves infrastructure graph snapshots to the operations dashboard over HTTP.
Each request runs one full collection pass in a worker thread.
"""

import sys
import asyncio
import logging
import argparse
from typing import List, Optional

from aiohttp import web

from toposentry.common.command_executor import ExecutionError, GraphCollectionError
from toposentry.common.configuration_manager import ConfigurationError, load_configuration
from toposentry.common.infrastructure_graph_manager import (
    InfrastructureGraphManager,
    configure_logging,
    create_executor,
)

logger = logging.getLogger("GraphServer")

MANAGER_KEY = web.AppKey("manager", InfrastructureGraphManager)


async def graph_handler(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]

    timeout = None
    if "timeout" in request.query:
        try:
            timeout = float(request.query["timeout"])
        except ValueError:
            return web.json_response({"error": "timeout must be a number"}, status=400)
        if timeout <= 0:
            return web.json_response({"error": "timeout must be positive"}, status=400)

    loop = asyncio.get_running_loop()
    try:
        graph = await loop.run_in_executor(None, lambda: manager.build_graph(timeout=timeout))
    except GraphCollectionError as e:
        logger.error(f"Graph request failed: {e}")
        return web.json_response({"error": str(e)}, status=503)

    return web.json_response(graph.to_dict())


async def health_handler(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    connected = manager.executor is not None and manager.executor.is_connected()
    return web.json_response({"status": "ok", "connected": connected})


async def _close_manager(app: web.Application):
    app[MANAGER_KEY].close()


def create_app(manager: InfrastructureGraphManager) -> web.Application:
    app = web.Application()
    app[MANAGER_KEY] = manager
    app.router.add_get('/api/infrastructure-graph', graph_handler)
    app.router.add_get('/health', health_handler)
    app.on_cleanup.append(_close_manager)
    return app


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="TopoSentry Graph Server")
    parser.add_argument("--config", help="Path to configuration file")
    parser.add_argument("--ssh-host", help="Inspect a remote host over SSH (default: local host)")
    parser.add_argument("--ssh-port", type=int, default=22, help="SSH port")
    parser.add_argument("--ssh-user", help="SSH user name")
    parser.add_argument("--ssh-key", help="SSH private key file")
    parser.add_argument("--host", help="Address to listen on")
    parser.add_argument("--port", type=int, help="Port to listen on")
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args.config)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_logging(config)

    try:
        executor = create_executor(args, config)
    except ExecutionError as e:
        logger.error(f"Cannot open command channel: {e}")
        return 1

    manager = InfrastructureGraphManager(executor=executor, config=config)
    web.run_app(
        create_app(manager),
        host=args.host or config.get("server_host", "0.0.0.0"),
        port=args.port or config.get("server_port", 5000)
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
