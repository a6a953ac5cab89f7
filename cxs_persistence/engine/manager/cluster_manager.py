import logging
from typing import Any, Dict, List

from cxs_data_model.data_models import ClusterNode

logger = logging.getLogger(__name__)

ATTRIBUTE_PREFIX = "contextserver."


class ClusterManager:
    """
    Builds the cluster-node inventory from engine node info and stats. Context
    server addresses are read from the ``contextserver.*`` node attributes; a node
    without them (typically a single local node) advertises the local configuration.
    """

    def __init__(self, client, contextserver_settings):
        self.client = client
        self.contextserver = contextserver_settings

    def get_cluster_nodes(self) -> List[ClusterNode]:
        info = self.client.nodes.info()
        stats = self.client.nodes.stats(metric="os,process,jvm")
        node_stats: Dict[str, Any] = stats.get("nodes", {})

        nodes = []
        for node_id, node in info.get("nodes", {}).items():
            attributes = node.get("attributes", {})
            roles = node.get("roles", [])
            cluster_node = ClusterNode(
                hostName=node.get("host"),
                publicHostAddress=attributes.get(ATTRIBUTE_PREFIX + "address", self.contextserver.address),
                publicPort=int(attributes.get(ATTRIBUTE_PREFIX + "port", self.contextserver.port)),
                secureHostAddress=attributes.get(ATTRIBUTE_PREFIX + "secureAddress",
                                                 self.contextserver.secure_address),
                securePort=int(attributes.get(ATTRIBUTE_PREFIX + "securePort", self.contextserver.secure_port)),
                master="master" in roles,
                data=any(role == "data" or role.startswith("data_") for role in roles),
            )
            self._apply_stats(cluster_node, node_stats.get(node_id, {}))
            nodes.append(cluster_node)
        logger.debug(f"Cluster inventory holds {len(nodes)} nodes")
        return nodes

    @staticmethod
    def _apply_stats(cluster_node: ClusterNode, node_stats: Dict[str, Any]) -> None:
        os_stats = node_stats.get("os", {})
        cpu = os_stats.get("cpu", {})
        process_cpu = node_stats.get("process", {}).get("cpu", {})
        cluster_node.cpuLoad = process_cpu.get("percent", cpu.get("percent"))
        load_average = cpu.get("load_average", {})
        cluster_node.loadAverage = [load_average[k] for k in ("1m", "5m", "15m") if k in load_average]
        cluster_node.uptime = node_stats.get("jvm", {}).get("uptime_in_millis")
