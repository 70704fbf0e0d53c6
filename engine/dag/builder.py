"""
Rollup DAG Builder

Builds and validates the interval dependency graph used by the rollup engine.
Each target interval is derived from exactly one source interval; the builder
performs cycle detection and computes the order in which targets are rolled up.
"""

from typing import Dict, List, Set
import logging

from dataflow.candle_aggregation.clock import INTERVALS
from dataflow.errors import UnknownIntervalMapping

logger = logging.getLogger(__name__)


# Canonical target -> source mapping. 10-minute candles derive from 5-minute rows.
ROLLUP_SOURCES: Dict[int, int] = {
    3: 1,
    5: 1,
    10: 5,
    15: 5,
    30: 15,
    60: 30,
    240: 60,
    1440: 240,
    10080: 1440,
}


class DAGBuilder:
    """
    Builds and validates the rollup DAG from a target -> source mapping.

    The builder:
    1. Validates every interval is a supported bucket width
    2. Validates each target bucket is made of whole source buckets
    3. Detects cycles (using DFS)
    4. Computes rollup order (using Kahn's algorithm) so that a target is
       always rolled up after its own source

    Example usage:
        builder = DAGBuilder({3: 1, 5: 1, 15: 5})
        builder.build()

        print(builder.topo_order)       # [3, 5, 15]
        print(builder.source_for(15))   # 5
        print(builder.get_dependents(5))  # {15}
    """

    def __init__(self, sources: Dict[int, int]):
        """
        Initialize builder with the rollup mapping.

        Args:
            sources: Mapping of target interval -> source interval (minutes)
        """
        self.sources: Dict[int, int] = dict(sources)
        self.reverse_deps: Dict[int, Set[int]] = {}
        self.topo_order: List[int] = []

        logger.debug(f"Initialized DAGBuilder with {len(self.sources)} rollup targets")

    def build(self) -> None:
        """
        Build DAG: validate mapping, detect cycles, compute order.

        Raises:
            ValueError: If the mapping contains unknown intervals, targets that
                        do not nest over their source, or cycles
        """
        self._validate_intervals()
        self._build_reverse_deps()
        self._validate_no_cycles()
        self._compute_topo_order()
        logger.info(f"Rollup DAG built: order {self.topo_order}, base {self.base_intervals}")

    @property
    def base_intervals(self) -> List[int]:
        """Intervals that feed rollups but are not derived themselves"""
        return sorted(set(self.sources.values()) - set(self.sources.keys()))

    def _validate_intervals(self) -> None:
        for target, source in self.sources.items():
            for interval in (target, source):
                if interval not in INTERVALS:
                    raise ValueError(f"Unsupported interval in rollup graph: {interval}")
            if target <= source or target % source != 0:
                raise ValueError(
                    f"{target}-minute candles cannot be built from {source}-minute candles"
                )

    def _build_reverse_deps(self) -> None:
        self.reverse_deps = {}
        for target, source in self.sources.items():
            self.reverse_deps.setdefault(source, set()).add(target)

    def _validate_no_cycles(self) -> None:
        """
        Detect cycles by walking each target's source chain.

        Raises:
            ValueError: If a cycle is detected
        """
        for start in self.sources:
            path = [start]
            current = start
            while current in self.sources:
                current = self.sources[current]
                if current in path:
                    cycle = path[path.index(current):] + [current]
                    raise ValueError(
                        f"Cycle detected in rollup graph: {' <- '.join(str(i) for i in cycle)}"
                    )
                path.append(current)

    def _compute_topo_order(self) -> None:
        """
        Compute rollup order using Kahn's algorithm.

        Starts from the base intervals and releases a target once its source
        has been processed. Smaller intervals are released first.
        """
        queue = list(self.base_intervals)
        order: List[int] = []

        while queue:
            queue.sort()
            interval = queue.pop(0)
            for dependent in sorted(self.reverse_deps.get(interval, set())):
                order.append(dependent)
                queue.append(dependent)

        if len(order) != len(self.sources):
            missing = set(self.sources) - set(order)
            raise ValueError(f"Rollup graph has unreachable targets: {sorted(missing)}")

        self.topo_order = order

    def source_for(self, target: int) -> int:
        """
        Get the source interval of a rollup target.

        Raises:
            UnknownIntervalMapping: If target has no configured source
        """
        try:
            return self.sources[target]
        except KeyError:
            raise UnknownIntervalMapping(target) from None

    def get_dependents(self, interval: int) -> Set[int]:
        """Targets rolled up directly from this interval"""
        return self.reverse_deps.get(interval, set())

    def get_all_transitive_dependents(self, interval: int) -> Set[int]:
        """
        Get all targets that transitively derive from an interval.

        Args:
            interval: Source interval in minutes

        Returns:
            Set of every downstream target interval
        """
        transitive = set()

        def collect_deps(current: int):
            for dep in self.get_dependents(current):
                if dep not in transitive:
                    transitive.add(dep)
                    collect_deps(dep)

        collect_deps(interval)
        return transitive
