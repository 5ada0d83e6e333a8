#!/usr/bin/env python3
"""
Fact Extractors for TopoSentry

This module turns the output of diagnostic commands run on the managed host
into typed records: nginx state, host network identity, virtual hosts,
containers, container networks and published ports. Extractors do no
correlation between layers.

Two failure policies apply, chosen per call site:
- _run() propagates: the pass is aborted with a GraphCollectionError
- _probe() degrades: the failure is logged and a default value returned
"""

import shlex
import logging
from typing import Dict, List, Optional, Tuple, Any

from toposentry.common.command_executor import (
    CommandExecutor,
    ExecutionError,
    GraphCollectionError,
    CancellationToken,
)
from toposentry.common.infra_models import (
    Container,
    ContainerNetwork,
    PortMapping,
    VirtualHost,
    DEFAULT_LISTEN_PORT,
    STATIC_BACKEND,
)

logger = logging.getLogger("FactExtractors")

NGINX_STATUS_COMMAND = "systemctl is-active nginx 2>/dev/null || echo 'inactive'"
NGINX_VERSION_COMMAND = "nginx -v 2>&1 | cut -d'/' -f2"
DEFAULT_ROUTE_COMMAND = "ip route | grep default | awk '{print $5}' | head -1"
CONTAINER_LIST_COMMAND = "docker ps --format '{{.ID}}|{{.Names}}|{{.Image}}|{{.State}}' --no-trunc"
NETWORK_LIST_COMMAND = "docker network ls --format '{{.ID}}|{{.Name}}|{{.Driver}}|{{.Scope}}'"
VOLUME_LIST_COMMAND = "docker volume ls -q"

NETWORK_MEMBERS_FORMAT = "'{{range .Containers}}{{.Name}},{{end}}'"
NETWORK_SUBNET_FORMAT = "'{{(index .IPAM.Config 0).Subnet}}'"

# Pseudo-networks without addressable members
SKIPPED_NETWORKS = ("null", "host")

SSL_CERTIFICATE_DIRECTIVE = "ssl_certificate"


# ---------------------------------------------------------------------------
# Text parsers
# ---------------------------------------------------------------------------

def extract_directive(content: str, keyword: str) -> Optional[str]:
    """
    Return the argument text of the first line starting with a directive

    The argument is everything after the first space of the trimmed line,
    without the trailing ';'. Comments are not recognised, so a commented
    directive still matches when the keyword opens the line.

    Args:
        content: Raw configuration text
        keyword: Directive name, e.g. "listen"

    Returns:
        Argument text, or None when no line carries the directive
    """
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line.startswith(keyword):
            continue

        start = line.find(' ')
        if start == -1:
            continue

        return line[start:].strip().rstrip(';').strip()

    return None


def _first_token(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    tokens = value.split()
    return tokens[0] if tokens else None


def extract_server_name(content: str) -> Optional[str]:
    return _first_token(extract_directive(content, "server_name"))


def extract_listen_port(content: str) -> Optional[str]:
    return _first_token(extract_directive(content, "listen"))


def extract_root_path(content: str) -> Optional[str]:
    return _first_token(extract_directive(content, "root"))


def extract_proxy_target(content: str) -> str:
    """Backend of the first proxy_pass directive, or "static" without one"""
    target = extract_directive(content, "proxy_pass")
    return target if target else STATIC_BACKEND


def parse_vhost(name: str, content: str, enabled: bool) -> VirtualHost:
    """Build a VirtualHost record from one site configuration file"""
    return VirtualHost(
        name=name,
        enabled=enabled,
        server_name=extract_server_name(content) or name,
        listen_port=extract_listen_port(content) or DEFAULT_LISTEN_PORT,
        ssl_enabled=SSL_CERTIFICATE_DIRECTIVE in content,
        root_path=extract_root_path(content) or "",
        backend=extract_proxy_target(content)
    )


def parse_listing(output: str) -> List[str]:
    """Non-empty lines of a one-entry-per-line listing"""
    return [line.strip() for line in output.splitlines() if line.strip()]


def parse_container_listing(output: str) -> List[Container]:
    """Parse `docker ps` output formatted as id|name|image|state"""
    containers = []
    for line in output.splitlines():
        if not line.strip():
            continue

        parts = [part.strip() for part in line.split('|')]
        if len(parts) < 4:
            logger.debug(f"Skipping malformed container line: {line!r}")
            continue

        containers.append(Container(
            id=parts[0],
            name=parts[1],
            image=parts[2],
            state=parts[3]
        ))

    return containers


def parse_network_listing(output: str) -> List[Tuple[str, str, str, str]]:
    """Parse `docker network ls` output into (id, name, driver, scope) rows"""
    rows = []
    for line in output.splitlines():
        if not line.strip():
            continue

        parts = [part.strip() for part in line.split('|')]
        if len(parts) < 4:
            logger.debug(f"Skipping malformed network line: {line!r}")
            continue

        rows.append((parts[0], parts[1], parts[2], parts[3]))

    return rows


def parse_network_members(output: str) -> List[str]:
    """Parse the comma-terminated member list of a network inspect"""
    return [member.strip() for member in output.strip().rstrip(',').split(',') if member.strip()]


def parse_port_line(line: str) -> Optional[PortMapping]:
    """
    Parse one `docker port` line such as "80/tcp -> 0.0.0.0:8080"

    Returns:
        PortMapping, or None when the line has no usable host port
    """
    parts = line.split("->")
    if len(parts) != 2:
        return None

    container_side = parts[0].strip()
    host_binding = parts[1].strip()

    port_parts = container_side.split('/')
    container_port = port_parts[0].strip()
    protocol = port_parts[1].strip() if len(port_parts) > 1 and port_parts[1].strip() else "tcp"

    host_port = host_binding.split(':')[-1].strip()
    if not host_port:
        return None

    if ':' in host_binding:
        host_ip = host_binding.rsplit(':', 1)[0].strip('[]') or "0.0.0.0"
    else:
        host_ip = "0.0.0.0"

    return PortMapping(
        host_ip=host_ip,
        host_port=host_port,
        container_port=container_port,
        protocol=protocol
    )


def parse_port_listing(output: str) -> List[PortMapping]:
    mappings = []
    for line in output.splitlines():
        mapping = parse_port_line(line)
        if mapping is None:
            if line.strip():
                logger.debug(f"Skipping unparseable port line: {line!r}")
            continue
        mappings.append(mapping)
    return mappings


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------

class FactExtractor:
    """
    Gathers infrastructure facts from the managed host for one pass.

    All commands go through the same executor and honour the pass's
    cancellation token.
    """

    def __init__(self, executor: CommandExecutor, config: Dict[str, Any],
                 token: Optional[CancellationToken] = None):
        """
        Initialize the extractor

        Args:
            executor: Command channel to the managed host
            config: Merged manager configuration
            token: Cancellation token for the pass
        """
        self.executor = executor
        self.config = config
        self.token = token or CancellationToken()

        self.command_timeout = float(config.get("command_timeout", 30))
        self.sites_available = config.get("nginx_sites_available", "/etc/nginx/sites-available").rstrip('/')
        self.sites_enabled = config.get("nginx_sites_enabled", "/etc/nginx/sites-enabled").rstrip('/')
        self.default_site_name = config.get("default_site_name", "default")
        self.default_interface = config.get("default_interface", "eth0")
        self.include_stopped = config.get("include_stopped_containers", False)

    def _execute(self, command: str) -> str:
        self.token.check()

        timeout = self.command_timeout
        remaining = self.token.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)

        output = self.executor.execute(command, timeout=timeout, cancel_token=self.token)
        # A cancel that lands while the command finishes still stops the pass
        self.token.check()
        return output

    def _run(self, command: str, description: str) -> str:
        """Run a command whose failure aborts the pass"""
        try:
            return self._execute(command)
        except ExecutionError as e:
            self.token.check()
            logger.error(f"Failed to {description}: {e}")
            raise GraphCollectionError(f"failed to {description}: {e.message}") from e

    def _probe(self, command: str, default: str = "") -> str:
        """Run a best-effort command; failure yields the default"""
        try:
            return self._execute(command)
        except ExecutionError as e:
            self.token.check()
            logger.debug(f"Probe failed, using default: {command}: {e}")
            return default

    def check_nginx(self) -> Tuple[bool, str]:
        """
        Check whether nginx is running and which version is installed

        Returns:
            (running, version); version is "" when it could not be read
        """
        status = self._probe(NGINX_STATUS_COMMAND, default="inactive")
        running = status.strip() == "active"

        version = self._probe(NGINX_VERSION_COMMAND).strip()
        if not version:
            logger.warning("Could not determine nginx version")

        logger.debug(f"nginx running={running} version={version!r}")
        return running, version

    def get_host_interface(self) -> str:
        """Outbound interface of the default route"""
        interface = self._probe(DEFAULT_ROUTE_COMMAND).strip()
        if not interface:
            logger.warning(f"No default route found, assuming interface {self.default_interface}")
            return self.default_interface
        return interface

    def get_vhosts(self) -> List[VirtualHost]:
        """Discover nginx sites from the available and enabled directories"""
        available = parse_listing(self._probe(f"ls -1 {shlex.quote(self.sites_available)}/ 2>/dev/null"))
        enabled = set(parse_listing(self._probe(f"ls -1 {shlex.quote(self.sites_enabled)}/ 2>/dev/null")))

        vhosts = []
        for name in available:
            if name == self.default_site_name:
                continue

            path = f"{self.sites_available}/{name}"
            content = self._probe(f"cat {shlex.quote(path)}")
            if not content:
                logger.warning(f"Could not read configuration for site {name}")

            vhosts.append(parse_vhost(name, content, name in enabled))

        logger.info(f"Discovered {len(vhosts)} virtual hosts ({sum(1 for v in vhosts if v.enabled)} enabled)")
        return vhosts

    def get_containers(self) -> List[Container]:
        """List containers; failure of the listing aborts the pass"""
        command = CONTAINER_LIST_COMMAND
        if self.include_stopped:
            command = command.replace("docker ps ", "docker ps -a ", 1)

        containers = parse_container_listing(self._run(command, "list containers"))
        logger.info(f"Discovered {len(containers)} containers")
        return containers

    def get_networks(self) -> List[ContainerNetwork]:
        """List container networks with their members and primary subnet"""
        rows = parse_network_listing(self._run(NETWORK_LIST_COMMAND, "list networks"))

        networks = []
        for network_id, name, driver, scope in rows:
            if name in SKIPPED_NETWORKS:
                continue

            quoted_id = shlex.quote(network_id)
            members = parse_network_members(
                self._probe(f"docker network inspect {quoted_id} --format {NETWORK_MEMBERS_FORMAT}")
            )
            subnet = self._probe(f"docker network inspect {quoted_id} --format {NETWORK_SUBNET_FORMAT}").strip()

            networks.append(ContainerNetwork(
                id=network_id,
                name=name,
                driver=driver,
                scope=scope,
                subnet=subnet or None,
                containers=members
            ))

        logger.info(f"Discovered {len(networks)} container networks")
        return networks

    def get_container_ports(self, container_name: str) -> List[PortMapping]:
        """Published ports of one container; failure yields no mappings"""
        output = self._probe(f"docker port {shlex.quote(container_name)}")
        return parse_port_listing(output)

    def count_volumes(self) -> int:
        return len(parse_listing(self._probe(VOLUME_LIST_COMMAND)))
