"""
Multi-hop routing for the relay node.
Selects and validates chains of relay nodes for double and triple VPN.
"""
import time
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, Iterable, List, Optional

from common.errors import (
    ChainTimeoutError, GeographicDiversityError, InsufficientNodesError,
    NodeNotFoundError, NodeUnhealthyError
)
from node.models import HopChain, NodeStatus, SessionStatus, VPNNode, utcnow
from node.storage import Repository

logger = logging.getLogger("multihop")

MIN_HOPS = 2
MAX_HOPS = 4
HOP_OVERHEAD_MS = 5
HIGH_LATENCY_MS = 200

SPEED_REDUCTION = {
    2: 0.70,
    3: 0.50,
    4: 0.35,
}
DEFAULT_SPEED_REDUCTION = 0.70

# Entry/exit countries used for privacy-first routes (Switzerland -> Iceland)
PRIVACY_ROUTE = ("CH", "IS")


@dataclass
class MultiHopPreferences:
    """What a user asked for when requesting a recommended route"""
    priority: str = ""
    entry_country: str = ""
    exit_country: str = ""
    max_latency: int = 0
    min_speed: float = 0.0


def estimate_speed_reduction(hops: int) -> float:
    """
    Fraction of single-hop throughput expected for a chain

    Args:
        hops: Number of nodes in the chain

    Returns:
        0.70 for 2 hops, 0.50 for 3, 0.35 for 4 and 0.70 otherwise
    """
    return SPEED_REDUCTION.get(hops, DEFAULT_SPEED_REDUCTION)


def calculate_chain_latency(chain: HopChain) -> int:
    """Sum of node latencies plus 5 ms of overhead per hop"""
    return sum(node.latency for node in chain.nodes) + chain.hop_count * HOP_OVERHEAD_MS


class MultiHopRouter:
    """
    Builds hop chains from the online, active, multi-hop capable nodes.

    Construction is synchronous and bounded by a per-call timeout; a chain is
    only returned once it has passed validation.
    """

    def __init__(self, repository: Repository, chain_timeout: float = 5.0):
        """
        Initialize the router

        Args:
            repository: Node and session store
            chain_timeout: Default deadline in seconds for building one chain
        """
        self.repository = repository
        self.chain_timeout = chain_timeout

    def _pool(self) -> List[VPNNode]:
        return self.repository.list_nodes(status=NodeStatus.ONLINE, is_active=True,
                                          supports_multihop=True)

    @staticmethod
    def _in_country(node: VPNNode, country: str) -> bool:
        return (node.country_code.upper() == country.upper()
                or node.country.lower() == country.lower())

    def _select(self, country: str, exclude: Iterable[str], role: str) -> VPNNode:
        """Lowest load score node in a country, skipping ids already chosen"""
        excluded = set(exclude)
        candidates = [node for node in self._pool()
                      if self._in_country(node, country) and node.id not in excluded]
        if not candidates:
            raise InsufficientNodesError(f"no available {role} node in {country}")
        return min(candidates, key=lambda node: node.load_score)

    def _check_deadline(self, deadline: float, step: str) -> None:
        if time.monotonic() > deadline:
            raise ChainTimeoutError(f"chain construction timed out before {step}")

    def create_chain(self, user_id: str, countries: List[str],
                     timeout: Optional[float] = None) -> HopChain:
        """
        Build and validate a chain through the given countries, entry first

        Args:
            user_id: Owner of the chain
            countries: Country codes (or names), 2 to 4 entries
            timeout: Deadline in seconds (defaults to the router's chain timeout)

        Returns:
            Validated hop chain

        Raises:
            ValueError: For an unsupported number of hops
            InsufficientNodesError: If a country has no eligible node
            NodeUnhealthyError: If a selected node fails its health check
            GeographicDiversityError: If two nodes share a country or city
            ChainTimeoutError: If the deadline passes
        """
        if not MIN_HOPS <= len(countries) <= MAX_HOPS:
            raise ValueError(f"a chain needs {MIN_HOPS} to {MAX_HOPS} countries, got {len(countries)}")

        deadline = time.monotonic() + (self.chain_timeout if timeout is None else timeout)
        logger.info(f"Creating {len(countries)}-hop chain: {' -> '.join(countries)}")

        selected: List[VPNNode] = []
        for index, country in enumerate(countries):
            if index == 0:
                role = "entry"
            elif index == len(countries) - 1:
                role = "exit"
            else:
                role = "middle"
            self._check_deadline(deadline, f"{role} selection")
            selected.append(self._select(country, (node.id for node in selected), role))

        chain = HopChain(
            user_id=user_id,
            entry_node=selected[0],
            middle_nodes=selected[1:-1],
            exit_node=selected[-1],
            status=SessionStatus.ACTIVE,
        )

        self._check_deadline(deadline, "validation")
        self.validate_chain(chain)

        logger.info(f"Chain {chain.id} created: "
                    f"{' -> '.join(f'{n.name} ({n.country})' for n in chain.nodes)}")
        return chain

    def create_double_hop(self, user_id: str, entry_country: str, exit_country: str,
                          timeout: Optional[float] = None) -> HopChain:
        return self.create_chain(user_id, [entry_country, exit_country], timeout)

    def create_triple_hop(self, user_id: str, countries: List[str],
                          timeout: Optional[float] = None) -> HopChain:
        if len(countries) != 3:
            raise ValueError("triple VPN requires exactly 3 countries")
        return self.create_chain(user_id, countries, timeout)

    def create_optimal_route(self, user_id: str, target_country: str,
                             timeout: Optional[float] = None) -> HopChain:
        """
        Lowest-latency entry node, exit node in the target country

        Raises:
            InsufficientNodesError: If fewer than two nodes are eligible or the
                target country has no other node
        """
        deadline = time.monotonic() + (self.chain_timeout if timeout is None else timeout)
        nodes = sorted(self._pool(), key=lambda node: (node.latency, node.load_score))
        if len(nodes) < 2:
            raise InsufficientNodesError("insufficient nodes for multi-hop (need at least 2)")

        exit_node = next((node for node in nodes if self._in_country(node, target_country)), None)
        if exit_node is None:
            raise InsufficientNodesError(f"no suitable exit node found in {target_country}")

        # Fastest entry outside the exit's location
        entry_node = next((node for node in nodes
                           if node.id != exit_node.id and node.country != exit_node.country), None)
        if entry_node is None:
            raise GeographicDiversityError("insufficient geographic diversity: "
                                           f"no entry node outside {exit_node.country}")

        chain = HopChain(user_id=user_id, entry_node=entry_node, exit_node=exit_node,
                         status=SessionStatus.ACTIVE)
        self._check_deadline(deadline, "validation")
        self.validate_chain(chain)
        return chain

    def create_recommended_route(self, user_id: str, preferences: MultiHopPreferences,
                                 timeout: Optional[float] = None) -> HopChain:
        """
        Route chosen by priority: privacy -> CH -> IS, performance -> optimal
        route to the exit country, anything else -> double hop as requested
        """
        if preferences.priority == "privacy":
            return self.create_double_hop(user_id, *PRIVACY_ROUTE, timeout=timeout)
        if preferences.priority == "performance":
            return self.create_optimal_route(user_id, preferences.exit_country, timeout)
        return self.create_double_hop(user_id, preferences.entry_country,
                                      preferences.exit_country, timeout)

    def validate_chain(self, chain: HopChain, now: Optional[datetime] = None) -> None:
        """
        Check that a chain may be used

        Raises:
            NodeUnhealthyError: If any node is unhealthy
            GeographicDiversityError: If any two nodes share a country or a city
        """
        now = now or utcnow()
        roles = ["entry"] + ["middle"] * len(chain.middle_nodes) + ["exit"]

        for role, node in zip(roles, chain.nodes):
            if not node.is_healthy(now):
                raise NodeUnhealthyError(f"{role} node {node.name or node.id} is not healthy")

        nodes = chain.nodes
        for i, first in enumerate(nodes):
            for second in nodes[i + 1:]:
                same_country = first.country.lower() == second.country.lower()
                same_city = first.city.lower() == second.city.lower()
                if same_country or same_city:
                    raise GeographicDiversityError(
                        "insufficient geographic diversity: "
                        f"{first.name or first.id} ({first.city}, {first.country}) and "
                        f"{second.name or second.id} ({second.city}, {second.country})"
                    )

        latency = calculate_chain_latency(chain)
        if latency > HIGH_LATENCY_MS:
            logger.warning(f"High latency in multi-hop chain {chain.id}: {latency}ms")

    def get_statistics(self, user_id: str) -> Dict[str, Any]:
        """
        Multi-hop usage of one user

        Returns:
            Total multi-hop sessions and the five most used entry/exit country pairs
        """
        sessions = [s for s in self.repository.list_sessions(user_id=user_id) if s.is_multihop]
        countries: Dict[str, str] = {}

        def country_of(node_id: Optional[str]) -> Optional[str]:
            if node_id not in countries:
                try:
                    countries[node_id] = self.repository.get_node(node_id).country if node_id else None
                except NodeNotFoundError:
                    countries[node_id] = None
            return countries[node_id]

        routes = Counter()
        for session in sessions:
            entry, exit_country = country_of(session.node_id), country_of(session.next_hop_node_id)
            if entry and exit_country:
                routes[(entry, exit_country)] += 1

        return {
            "total_multihop_sessions": len(sessions),
            "popular_routes": [
                {"entry_country": entry, "exit_country": exit_country, "count": count}
                for (entry, exit_country), count in routes.most_common(5)
            ],
        }
